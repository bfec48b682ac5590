import asyncio
from datetime import datetime, timezone

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from kodi.core.config import settings
from kodi.core.logging_config import configure_logging
from kodi.core.scheduler_decorators import SCHEDULED_TASKS
from kodi.workers import discover_plugin_workers

logger = structlog.get_logger(__name__)
_scheduler_started = False


def build_scheduler() -> AsyncIOScheduler:
    """Register every decorated actor as an APScheduler job that enqueues it."""
    scheduler = AsyncIOScheduler(timezone=settings.TIMEZONE)

    for task in SCHEDULED_TASKS:
        func = task["func"]
        trigger = task["trigger"]
        trigger_args = task["trigger_args"]

        # Dramatiq actor is the .send() method
        job_func = lambda f=func: f.send()
        func_name = getattr(func, "actor_name", None) or getattr(func, "__name__", str(func))

        scheduler.add_job(
            job_func,
            trigger=trigger,
            name=func_name,
            coalesce=True,
            misfire_grace_time=600,
            max_instances=1,
            **trigger_args,
        )
        logger.info("job_registered", job=func_name, trigger=trigger, trigger_args=trigger_args)

    return scheduler


async def start_scheduler():
    """Scan plugins, load scheduled tasks, and start APScheduler."""
    global _scheduler_started
    if _scheduler_started:
        logger.warning("scheduler_already_running")
        return
    _scheduler_started = True

    configure_logging()
    discover_plugin_workers()  # ensure all plugins loaded & decorators registered
    scheduler = build_scheduler()
    scheduler.start()

    for job in scheduler.get_jobs():
        next_run = job.next_run_time.strftime("%Y-%m-%d %H:%M:%S") if job.next_run_time else "-"
        logger.info(
            "job_scheduled",
            job=job.name,
            next_run=next_run,
            now=datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
        )

    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit):
        scheduler.shutdown()
        logger.info("scheduler_stopped")


if __name__ == "__main__":
    asyncio.run(start_scheduler())
