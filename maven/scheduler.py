import logging
from datetime import datetime

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config.settings import SWEEP_INTERVAL_MINUTES, TIMEZONE
from maven.notifications import NotificationDispatcher, StoreError, SweepReport

logger = logging.getLogger(__name__)


def run_sweep(dispatcher: NotificationDispatcher, now: datetime | None = None) -> SweepReport | None:
    """Fire due reminders. Store failures are logged; the next sweep retries."""
    now = now or datetime.now(TIMEZONE)
    try:
        report = dispatcher.sweep(now)
    except StoreError as e:
        logger.error(f"Notification sweep failed: {e}")
        return None

    if report.delivered or report.failed or report.dropped:
        logger.info(
            f"Sweep at {now.isoformat()}: {len(report.delivered)} sent, "
            f"{len(report.failed)} to retry, {len(report.dropped)} dropped, "
            f"{len(report.kept)} pending"
        )
    return report


def setup_scheduler(dispatcher: NotificationDispatcher) -> AsyncIOScheduler:
    """Set up APScheduler for the periodic notification sweep.

    The job is a plain function, so the asyncio executor runs it in a worker
    thread and blocking deliveries don't stall the bot.
    """
    scheduler = AsyncIOScheduler(timezone=TIMEZONE)
    scheduler.add_job(
        run_sweep,
        trigger="interval",
        minutes=SWEEP_INTERVAL_MINUTES,
        args=[dispatcher],
        id="notification_sweep",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    return scheduler
