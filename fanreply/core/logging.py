# fanreply/core/logging.py
import logging

from fanreply.core.config import settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def setup_logging(level: str | None = None) -> None:
    logging.basicConfig(level=(level or settings.log_level).upper(), format=LOG_FORMAT)
    # httpx logs every request URL at INFO, which would include OAuth codes
    logging.getLogger("httpx").setLevel(logging.WARNING)


def preview(text: str | None, limit: int = 50) -> str:
    """Shorten user content before it goes into a log line."""
    if not text:
        return ""
    return text if len(text) <= limit else text[:limit] + "..."
