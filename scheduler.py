"""Daily borrow sweeps.

Both sweeps are idempotent: a borrow is notified only after its
``notification_sent`` / ``reminder_sent`` flag has been claimed with a
conditional update, so repeated or overlapping runs never notify twice.
Each sweep is also single-flight inside the process: a trigger that fires
while the previous run of the same sweep is still going is skipped.
"""
import asyncio
import logging
import threading
from datetime import datetime, time, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

import config
import crud
import notifier
from connections import ConnectionRegistry
from database import SessionLocal

logger = logging.getLogger(__name__)


def check_overdue_books(db: Session, registry: Optional[ConnectionRegistry] = None,
                        now: Optional[datetime] = None) -> int:
    """Notify borrowers of overdue books not yet notified. Returns the number notified."""
    now = now or datetime.utcnow()
    notified = 0
    for borrow in crud.overdue_candidates(db, now):
        if not crud.claim_flag(borrow.id, "notification_sent", db):
            continue
        delivery = notifier.borrow_overdue(db, registry, borrow)
        if not delivery.persisted:
            logger.error("Overdue notice for borrow %s was not stored: %s", borrow.id, delivery.errors.get("persist"))
        notified += 1
    logger.info("Overdue sweep notified %s borrow(s)", notified)
    return notified


def check_upcoming_due_books(db: Session, registry: Optional[ConnectionRegistry] = None,
                             now: Optional[datetime] = None, days: Optional[int] = None) -> int:
    """Remind borrowers of books due within `days`. Returns the number reminded."""
    now = now or datetime.utcnow()
    days = config.REMINDER_WINDOW_DAYS if days is None else days
    reminded = 0
    for borrow in crud.due_soon_candidates(db, now, days):
        if not crud.claim_flag(borrow.id, "reminder_sent", db):
            continue
        delivery = notifier.borrow_due_soon(db, registry, borrow, days)
        if not delivery.persisted:
            logger.error("Reminder for borrow %s was not stored: %s", borrow.id, delivery.errors.get("persist"))
        reminded += 1
    logger.info("Upcoming-due sweep reminded %s borrow(s)", reminded)
    return reminded


class Sweep:
    """A named daily job guarded against overlapping runs."""

    def __init__(self, key: str, name: str, at: time, func: Callable[..., int]):
        self.key = key
        self.name = name
        self.at = at
        self.func = func
        self._running = threading.Lock()

    def run(self, registry: Optional[ConnectionRegistry] = None, raise_errors: bool = False) -> Optional[int]:
        """Run once in the calling thread. Returns None if a run was already in progress."""
        if not self._running.acquire(blocking=False):
            logger.warning("Skipping %s: previous run still in progress", self.name)
            return None
        db = SessionLocal()
        try:
            logger.info("Running %s...", self.name)
            return self.func(db, registry)
        except Exception:
            logger.exception("%s failed", self.name)
            if raise_errors:
                raise
            return 0
        finally:
            db.close()
            self._running.release()

    def seconds_until_next(self, now: Optional[datetime] = None) -> float:
        now = now or datetime.now()
        target = datetime.combine(now.date(), self.at)
        if target <= now:
            target += timedelta(days=1)
        return (target - now).total_seconds()


def parse_time(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def default_sweeps():
    return [
        Sweep("overdue", "overdue books check", parse_time(config.OVERDUE_SWEEP_TIME), check_overdue_books),
        Sweep("upcoming-due", "upcoming due books check", parse_time(config.REMINDER_SWEEP_TIME), check_upcoming_due_books),
    ]


class Scheduler:
    """Runs each sweep daily at its wall-clock time on the current event loop."""

    def __init__(self, registry: Optional[ConnectionRegistry] = None, sweeps=None):
        self.registry = registry
        self.sweeps = sweeps if sweeps is not None else default_sweeps()
        self._tasks = []

    def get(self, key: str) -> Optional[Sweep]:
        return next((s for s in self.sweeps if s.key == key), None)

    async def _loop(self, sweep: Sweep):
        while True:
            await asyncio.sleep(sweep.seconds_until_next())
            # the sweep does blocking DB and SMTP I/O
            await asyncio.to_thread(sweep.run, self.registry)

    def start(self):
        for sweep in self.sweeps:
            self._tasks.append(asyncio.create_task(self._loop(sweep), name=sweep.name))
            logger.info("Scheduled %s daily at %s", sweep.name, sweep.at.strftime("%H:%M"))

    async def stop(self):
        tasks, self._tasks = self._tasks, []
        for t in tasks:
            t.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
