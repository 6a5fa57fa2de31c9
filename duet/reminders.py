import asyncio
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger

from . import db
from .notifications import REMINDER_SET, REMINDER_SOLVE, NotificationFanout

logger = logging.getLogger(__name__)

REMINDERS = {"set": REMINDER_SET, "solve": REMINDER_SOLVE}


async def run_reminder_sweep(fanout: NotificationFanout, now: Optional[datetime] = None) -> List[str]:
    """Notify every user who still owes today's puzzle, once each.

    Running the sweep again re-evaluates the query, so users who set or
    solved their puzzle in the meantime are not reminded twice.
    """
    logger.info("Reminder sweep running")
    pending = await asyncio.to_thread(db.users_to_remind, now)
    if not pending:
        logger.info("No users to remind right now")
        return []

    reminded: List[str] = []
    by_reason: Dict[str, List[str]] = {}
    for user_id, reason in pending:
        if user_id in reminded:
            continue
        reminded.append(user_id)
        by_reason.setdefault(reason, []).append(user_id)

    await asyncio.gather(
        *[fanout.notify_many(user_ids, *REMINDERS[reason]) for reason, user_ids in by_reason.items()]
    )

    logger.info("Reminders sent to %d users", len(reminded))
    return reminded


class ReminderScheduler:
    def __init__(self, fanout_factory: Callable[[], NotificationFanout]) -> None:
        self.fanout_factory = fanout_factory
        # Hourly, so each timezone's reminder hour is hit exactly once
        self.scheduler = AsyncIOScheduler()
        self.scheduler.add_job(
            self._sweep,
            CronTrigger(minute=0, second=0, timezone="UTC"),
            id="reminder_sweep",
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    async def _sweep(self) -> None:
        try:
            await run_reminder_sweep(self.fanout_factory())
        except Exception as ex:
            logger.error("Reminder sweep failed: %s", ex, exc_info=ex)
