import asyncio
from datetime import datetime
from types import SimpleNamespace
from zoneinfo import ZoneInfo

import pytest

from database.sql_store import SqlAttendanceStore
from services.attendance_service import AttendanceService
from services.signaling import Notifier

UTC = ZoneInfo("UTC")
SESSION_DATE = "2026-03-02"


class RecordingNotifier(Notifier):
    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)

    @property
    def types(self):
        return [e["type"] for e in self.events]


def at(hhmm: str, date: str = SESSION_DATE) -> str:
    """ISO timestamp for a UTC clock time on `date`."""
    return f"{date}T{hhmm}:00+00:00"


def fixed_clock(hhmm: str = "09:00", date: str = SESSION_DATE):
    moment = datetime.fromisoformat(at(hhmm, date))
    return lambda: moment


@pytest.fixture()
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'attendance_test.db'}"


@pytest.fixture()
def run(database_url):
    """Run `scenario(store)` on a fresh event loop against the temp database."""

    def _run(scenario):
        async def main():
            store = SqlAttendanceStore(database_url)
            await store.connect(5)
            try:
                return await scenario(store)
            finally:
                await store.close()

        return asyncio.run(main())

    return _run


async def make_world(store, start="09:00", end="10:00", date=SESSION_DATE, status="scheduled"):
    """One ICTS Y2S1 course, student, scanner and session."""
    course = await store.create_course("ICT2113", "Data Structures", "ICTS")
    student = await store.create_student("2022/ICTS/01", "Nimal Perera", "ICTS", 2, 1)
    device = await store.create_device("Hall A scanner", "dev-key", "Hall A")
    session = await store.create_session(
        course.id, date, start, end, "Hall A",
        department="ICTS", year=2, semester=1, status=status,
    )
    return SimpleNamespace(course=course, student=student, device=device, session=session)


def make_service(store, notifier=None, clock=None):
    return AttendanceService(
        store,
        notifier or RecordingNotifier(),
        tz=UTC,
        grace_minutes=10,
        end_tolerance_minutes=5,
        clock=clock or fixed_clock(),
    )
