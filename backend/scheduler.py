# /backend/scheduler.py

import asyncio
import logging
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flowbot.config.settings import settings
from flowbot.dependencies.context import build_context
from flowbot.jobs.session_jobs import expire_stale_sessions, resume_due_sessions, sweep_pending_webhook_records
from flowbot.utils.logging import setup_logging

logger = logging.getLogger("SchedulerService")


async def main():
    setup_logging()
    context = build_context(settings)
    await context.audit.start_worker()

    scheduler = AsyncIOScheduler(timezone="UTC")

    # Job 1: Re-enter sessions parked on delay nodes every 30 seconds
    scheduler.add_job(
        resume_due_sessions,
        'interval',
        seconds=30,
        args=[context],
        id="resume_due_sessions_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled job: resume_due_sessions (every 30 seconds).")

    # Job 2: Consume webhook records whose request-time task never ran
    scheduler.add_job(
        sweep_pending_webhook_records,
        'interval',
        minutes=1,
        args=[context],
        id="sweep_pending_webhook_records_job",
        max_instances=1,
        coalesce=True,
    )
    logger.info("Scheduled job: sweep_pending_webhook_records (every minute).")

    # Job 3: Time out idle sessions
    scheduler.add_job(
        expire_stale_sessions,
        'interval',
        minutes=5,
        args=[context],
        id="expire_stale_sessions_job",
        replace_existing=True,
    )
    logger.info("Scheduled job: expire_stale_sessions (every 5 minutes).")

    scheduler.start()
    logger.info("Scheduler started successfully. Press Ctrl+C to exit.")

    # This loop keeps the script running forever
    try:
        while True:
            await asyncio.sleep(3600)
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        scheduler.shutdown()
        await context.audit.stop_worker()
        await context.close()

if __name__ == "__main__":
    asyncio.run(main())
