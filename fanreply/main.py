# fanreply/main.py
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from fanreply.api.admin.ai import router as ai_router
from fanreply.api.admin.chats import router as chats_router
from fanreply.api.admin.creators import router as creators_router
from fanreply.api.extension import router as extension_router
from fanreply.api.platforms.fanvue_api import router as fanvue_router
from fanreply.connectors.fanvue import webhook as fanvue_webhook
from fanreply.core.config import settings
from fanreply.core.logging import setup_logging
from fanreply.deps import get_scheduler

logger = logging.getLogger("fanreply.main")


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("Starting fanreply (env=%s, auto_reply_runner=%s)", settings.env, settings.auto_reply_runner)
    if not settings.fanvue_webhook_secret:
        logger.warning("FANVUE_WEBHOOK_SECRET is not set; webhook signatures will NOT be verified")

    scheduler = None
    if settings.auto_reply_runner == "inline":
        scheduler = get_scheduler()
        scheduler.start(settings.auto_reply_interval_seconds)
    else:
        logger.info("Inline auto-reply worker disabled (runner=%s)", settings.auto_reply_runner)
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()


app = FastAPI(title="fanreply API", version="0.1.0", lifespan=lifespan)
app.include_router(fanvue_webhook.router)
app.include_router(fanvue_router)
app.include_router(creators_router)
app.include_router(chats_router)
app.include_router(ai_router)
app.include_router(extension_router)


@app.get("/health")
async def health():
    scheduler = get_scheduler()
    return {
        "status": "ok",
        "auto_reply": {
            "runner": settings.auto_reply_runner,
            "running": scheduler.is_running,
            "ticks_started": scheduler.ticks_started,
            "ticks_completed": scheduler.ticks_completed,
            "ticks_skipped": scheduler.ticks_skipped,
        },
    }
