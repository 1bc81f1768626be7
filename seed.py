"""
Seed script for the scan attendance service
Creates a demo course, batch of students, a scanner and today's sessions
"""
import asyncio
import sys
from datetime import datetime

from app import create_store
from config import STORE_CONNECT_TIMEOUT_SECONDS, TIMEZONE
from database.store import DuplicateRecordError
from services.time_window import format_hhmm, get_timezone

DEMO_DEVICE_KEY = "esp32-dev-key"

STUDENTS = [
    ("2022/ICTS/01", "Nimal Perera"),
    ("2022/ICTS/02", "Kavindi Silva"),
    ("2022/ICTS/03", "Ruwan Fernando"),
]


async def seed():
    store = create_store()
    await store.connect(STORE_CONNECT_TIMEOUT_SECONDS)
    try:
        now = datetime.now(get_timezone(TIMEZONE))
        today = now.date().isoformat()
        minutes = now.hour * 60 + now.minute

        try:
            device = await store.create_device("Lecture Hall A scanner", DEMO_DEVICE_KEY, "Lecture Hall A")
            print(f"✅ Device {device.name} (key: {device.api_key})")
        except DuplicateRecordError:
            print("Device already exists, skipping")

        for registration_no, name in STUDENTS:
            try:
                await store.create_student(registration_no, name, "ICTS", year=2, semester=1)
                print(f"✅ Student {registration_no} {name}")
            except DuplicateRecordError:
                print(f"Student {registration_no} already exists, skipping")

        try:
            course = await store.create_course("ICT2113", "Data Structures", "ICTS")
        except DuplicateRecordError:
            print("Course already exists, skipping sessions")
            return

        # One session starting now, one later today
        for offset in (0, 120):
            start = minutes + offset
            session = await store.create_session(
                course.id,
                today,
                format_hhmm(start),
                format_hhmm(start + 60),
                room="Lecture Hall A",
                department="ICTS",
                year=2,
                semester=1,
            )
            print(f"✅ Session {course.code} {session.date} {session.start_time}-{session.end_time}")
    finally:
        await store.close()


def main():
    if sys.platform == 'win32':
        sys.stdout.reconfigure(encoding='utf-8', errors='replace')
    asyncio.run(seed())
    print("\n🎉 Seed complete. Start the server with: python app.py")


if __name__ == "__main__":
    main()
