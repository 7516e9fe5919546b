# fanreply/tasks/celery_app.py
from celery import Celery
from ..core.config import settings

celery = Celery(
    "fanreply_tasks",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=[
        "fanreply.tasks.worker_tasks",
    ],
)

celery.conf.task_default_queue = "fanreply_default"

# Used when AUTO_REPLY_RUNNER=celery. Run a single worker process
# (`celery -A fanreply.tasks.celery_app worker -B --concurrency 1`): dedup and
# cooldown state is per process.
celery.conf.beat_schedule = {
    "auto-reply-sweep": {
        "task": "auto_reply_sweep",
        "schedule": float(settings.auto_reply_interval_seconds),
        # a sweep that is still queued when the next one is due is dropped
        "options": {"expires": float(settings.auto_reply_interval_seconds)},
    },
}
