# fanreply/tasks/worker_tasks.py
import asyncio
import logging

from fanreply.tasks.celery_app import celery

logger = logging.getLogger("fanreply.celery.tasks")


def _run_coro_on_new_loop(coro):
    # Celery workers are synchronous; each task gets a fresh event loop
    loop = asyncio.new_event_loop()
    try:
        asyncio.set_event_loop(loop)
        return loop.run_until_complete(coro)
    finally:
        loop.run_until_complete(loop.shutdown_asyncgens())
        loop.close()
        asyncio.set_event_loop(None)


async def _sweep() -> int:
    from fanreply.db.session import engine
    from fanreply.deps import get_scheduler

    try:
        return await get_scheduler().tick()
    finally:
        # pooled connections are bound to this task's loop
        await engine.dispose()


@celery.task(name="auto_reply_sweep")
def auto_reply_sweep() -> int:
    """One auto-reply tick. Scheduler state lives in this worker process across tasks."""
    replies = _run_coro_on_new_loop(_sweep())
    logger.info("auto_reply_sweep sent %d replies", replies)
    return replies
