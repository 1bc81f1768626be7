"""
Session lifecycle: moves sessions scheduled -> live -> closed on wall-clock time.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional

import config
from database.store import OPEN_SESSION_STATUSES, AttendanceStore
from services.errors import PersistenceUnavailable
from services.time_window import get_timezone, session_bounds

logger = logging.getLogger(__name__)


@dataclass
class TickSummary:
    """Session ids touched by one tick."""
    promoted: List[str] = field(default_factory=list)
    closed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "promoted": self.promoted,
            "closed": self.closed,
            "skipped": self.skipped,
            "failed": self.failed,
        }


class SessionScheduler:
    """
    Periodic task that promotes sessions to live shortly before they start
    and closes them once they end.

    A tick may be interrupted at any point; sessions it did not reach are
    handled on the next one.
    """

    def __init__(
        self,
        store: AttendanceStore,
        interval_seconds: float = config.SCHEDULER_INTERVAL_SECONDS,
        early_access_minutes: int = config.EARLY_ACCESS_MINUTES,
        tz=None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.interval_seconds = interval_seconds
        self.early_access = timedelta(minutes=early_access_minutes)
        self.tz = tz or get_timezone(config.TIMEZONE)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self):
        """Start the periodic task on the running loop."""
        if self.is_running:
            logger.info("⏰ Session scheduler is already running")
            return
        self._task = asyncio.get_running_loop().create_task(self._run())
        logger.info(f"✅ Session scheduler started (checking every {self.interval_seconds}s)")

    async def stop(self):
        """Stop the periodic task and wait for it to finish."""
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        logger.info("⏰ Session scheduler stopped")

    async def _run(self):
        while True:
            try:
                await self.tick()
            except PersistenceUnavailable as e:
                logger.warning(f"Session scheduler skipped a tick: {e}")
            except Exception:
                logger.exception("❌ Error in session scheduler")
            await asyncio.sleep(self.interval_seconds)

    async def tick(self, now: Optional[datetime] = None) -> TickSummary:
        """Run one pass over every scheduled or live session."""
        now = now or self.clock()
        summary = TickSummary()

        sessions = await self.store.find_sessions(None, OPEN_SESSION_STATUSES)
        if not sessions:
            return summary

        to_live = []
        for session in sessions:
            try:
                start, end = session_bounds(session.date, session.start_time, session.end_time, self.tz)
            except ValueError:
                logger.error(f"Session {session.id} has an unreadable schedule: {session.date} {session.start_time}-{session.end_time}")
                summary.failed.append(session.id)
                continue

            if now >= end:
                # Ended wins even when the session would also qualify for live
                await self._apply(summary.closed, summary, session, self.store.close_session(session.id), "⚫ Auto-closed")
            elif session.status == "scheduled" and start - self.early_access <= now:
                to_live.append(session)

        # Closing first frees batches whose previous session just ended
        for session in to_live:
            existing = None
            if session.has_batch:
                existing = await self._guarded(summary, session, self.store.find_live_session(session.batch_key, exclude_id=session.id))
                if existing is False:
                    continue
            if existing:
                logger.warning(
                    f"⚠️  Cannot set {session.course_code} to live: {existing.course_code} "
                    f"is already live for {session.department} Y{session.year}S{session.semester}"
                )
                summary.skipped.append(session.id)
                continue
            await self._apply(summary.promoted, summary, session, self.store.promote_to_live(session), "🟢 Auto-transitioned to LIVE")

        return summary

    async def _guarded(self, summary: TickSummary, session, awaitable):
        """Await a store call for one session; failures are logged and reported as False."""
        try:
            return await awaitable
        except Exception:
            logger.exception(f"❌ Lifecycle update failed for session {session.id}")
            summary.failed.append(session.id)
            return False

    async def _apply(self, bucket: List[str], summary: TickSummary, session, awaitable, label: str):
        changed = await self._guarded(summary, session, awaitable)
        if changed is True:
            bucket.append(session.id)
            logger.info(f"{label}: {session.course_code} ({session.date} {session.start_time}-{session.end_time})")
        elif changed is False and session.id not in summary.failed:
            # Lost a compare-and-set: status moved underneath us or the batch went live
            summary.skipped.append(session.id)
