"""
SQLAlchemy async implementation of the attendance store.

Works with any async dialect; SQLite (aiosqlite) is the default. The unique
constraints declared in database/models.py back the (session, student)
attendance rule and the one-live-session-per-batch rule.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import func, select, text, update
from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.orm import aliased, selectinload

import config
from database.database import create_engine, create_session_maker, get_session, init_db
from database.models import Attendance, ClassSession, Course, Device, Scan, Student
from database.records import (
    AttendanceRecord,
    BatchKey,
    CourseRecord,
    DeviceRecord,
    ScanRecord,
    SessionRecord,
    StudentRecord,
    department_code,
)
from database.store import OPEN_SESSION_STATUSES, AttendanceStore, DuplicateRecordError
from services.errors import PersistenceUnavailable

logger = logging.getLogger(__name__)

_ATTENDANCE_FIELDS = {"status", "check_in_at", "source_scan_id", "notes"}


def _pk(value) -> Optional[int]:
    """Integer primary key from a string id, None when it cannot be one."""
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _str_id(value) -> Optional[str]:
    return str(value) if value is not None else None


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands datetimes back naive; they were written as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ===== ROW CONVERSION =====

def _course(row: Course) -> CourseRecord:
    return CourseRecord(id=str(row.id), code=row.code, name=row.name, department=row.department)


def _student(row: Student) -> StudentRecord:
    return StudentRecord(
        id=str(row.id),
        registration_no=row.registration_no,
        name=row.name,
        department=row.department,
        year=row.year,
        semester=row.semester,
        email=row.email,
    )


def _device(row: Device) -> DeviceRecord:
    return DeviceRecord(
        id=str(row.id),
        name=row.name,
        api_key=row.api_key,
        location=row.location,
        status=row.status,
        last_seen_at=_aware(row.last_seen_at),
        active_session_id=_str_id(row.active_session_id),
    )


def _session(row: ClassSession) -> SessionRecord:
    return SessionRecord(
        id=str(row.id),
        course_id=str(row.course_id),
        date=row.date,
        start_time=row.start_time,
        end_time=row.end_time,
        room=row.room,
        status=row.status,
        department=row.department,
        year=row.year,
        semester=row.semester,
        course=_course(row.course) if row.course is not None else None,
    )


def _scan(row: Scan) -> ScanRecord:
    return ScanRecord(
        id=str(row.id),
        device_id=str(row.device_id),
        barcode=row.barcode,
        scanned_at=_aware(row.scanned_at),
        meta=row.meta or {},
        session_id=_str_id(row.session_id),
        course_id=_str_id(row.course_id),
    )


def _attendance(row: Attendance) -> AttendanceRecord:
    return AttendanceRecord(
        id=str(row.id),
        session_id=str(row.session_id),
        student_id=str(row.student_id),
        status=row.status,
        check_in_at=_aware(row.check_in_at),
        source_scan_id=_str_id(row.source_scan_id),
        notes=row.notes,
    )


def _sessions_query():
    return select(ClassSession).options(selectinload(ClassSession.course))


class SqlAttendanceStore(AttendanceStore):
    """Attendance store on top of an SQLAlchemy async engine."""

    def __init__(self, database_url: str = config.DATABASE_URL):
        self.database_url = database_url
        self.engine = None
        self.session_maker = None

    async def connect(self, timeout: float = config.STORE_CONNECT_TIMEOUT_SECONDS) -> None:
        if self.engine is None:
            self.engine = create_engine(self.database_url)
            self.session_maker = create_session_maker(self.engine)
        try:
            await asyncio.wait_for(init_db(self.engine), timeout)
        except (asyncio.TimeoutError, OperationalError, InterfaceError, OSError) as e:
            logger.error(f"❌ Database connection failed: {e}")
            raise PersistenceUnavailable(f"Database connection failed: {e}") from e
        logger.info(f"✅ Connected to {self.engine.url.render_as_string(hide_password=True)}")

    async def close(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_maker = None
            logger.info("Database connection closed")

    async def ping(self) -> bool:
        try:
            async with self._session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except PersistenceUnavailable:
            return False

    @asynccontextmanager
    async def _session(self):
        if self.session_maker is None:
            raise PersistenceUnavailable("Database is not connected")
        try:
            async with get_session(self.session_maker) as session:
                yield session
        except (OperationalError, InterfaceError) as e:
            raise PersistenceUnavailable(f"Database unavailable: {e}") from e

    # ===== DEVICES =====

    async def get_device_by_api_key(self, api_key: str) -> Optional[DeviceRecord]:
        async with self._session() as session:
            row = (await session.execute(select(Device).where(Device.api_key == api_key))).scalar_one_or_none()
            return _device(row) if row else None

    async def touch_device(self, device_id: str, seen_at: datetime) -> None:
        async with self._session() as session:
            await session.execute(
                update(Device)
                .where(Device.id == _pk(device_id))
                .values(status="online", last_seen_at=_utc(seen_at))
                .execution_options(synchronize_session=False)
            )

    async def bind_device(self, device_id: str, session_id: Optional[str]) -> None:
        async with self._session() as session:
            await session.execute(
                update(Device)
                .where(Device.id == _pk(device_id))
                .values(active_session_id=_pk(session_id))
                .execution_options(synchronize_session=False)
            )

    # ===== STUDENTS =====

    async def get_student_by_registration(self, registration_no: str) -> Optional[StudentRecord]:
        async with self._session() as session:
            row = (
                await session.execute(select(Student).where(Student.registration_no == registration_no))
            ).scalar_one_or_none()
            return _student(row) if row else None

    async def get_students(self, student_ids: Iterable[str]) -> Dict[str, StudentRecord]:
        keys = [pk for pk in (_pk(i) for i in student_ids) if pk is not None]
        if not keys:
            return {}
        async with self._session() as session:
            rows = (await session.execute(select(Student).where(Student.id.in_(keys)))).scalars().all()
            return {str(row.id): _student(row) for row in rows}

    async def get_students_by_batch(self, batch: BatchKey) -> List[StudentRecord]:
        _, year, semester = batch
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(Student)
                    .where(Student.year == year, Student.semester == semester)
                    .order_by(Student.registration_no)
                )
            ).scalars().all()
        # Department codes may come from the registration number, so match in Python
        students = [_student(row) for row in rows]
        return [s for s in students if s.batch_key == batch]

    # ===== SESSIONS =====

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        pk = _pk(session_id)
        if pk is None:
            return None
        async with self._session() as session:
            row = (await session.execute(_sessions_query().where(ClassSession.id == pk))).scalar_one_or_none()
            return _session(row) if row else None

    async def find_sessions(self, dates: Optional[Iterable[str]], statuses: Iterable[str]) -> List[SessionRecord]:
        query = _sessions_query().where(ClassSession.status.in_(list(statuses)))
        if dates is not None:
            query = query.where(ClassSession.date.in_(list(dates)))
        query = query.order_by(ClassSession.date, ClassSession.start_time, ClassSession.id)
        async with self._session() as session:
            rows = (await session.execute(query)).scalars().all()
            return [_session(row) for row in rows]

    def _live_in_batch(self, batch: BatchKey, entity=ClassSession):
        department, year, semester = batch
        return (
            entity.status == "live",
            entity.department == department,
            entity.year == year,
            entity.semester == semester,
        )

    async def find_live_session(self, batch: BatchKey, exclude_id: Optional[str] = None) -> Optional[SessionRecord]:
        query = _sessions_query().where(*self._live_in_batch(batch))
        if exclude_id is not None:
            query = query.where(ClassSession.id != _pk(exclude_id))
        async with self._session() as session:
            row = (await session.execute(query.limit(1))).scalars().first()
            return _session(row) if row else None

    async def count_live_sessions(self, batch: BatchKey) -> int:
        async with self._session() as session:
            return int(
                (
                    await session.execute(
                        select(func.count()).select_from(ClassSession).where(*self._live_in_batch(batch))
                    )
                ).scalar_one()
            )

    async def promote_to_live(self, session: SessionRecord) -> bool:
        pk = _pk(session.id)
        stmt = update(ClassSession).where(ClassSession.id == pk, ClassSession.status == "scheduled")
        if session.has_batch:
            other = aliased(ClassSession)
            other_live = select(other.id).where(*self._live_in_batch(session.batch_key, other), other.id != pk)
            stmt = stmt.where(~other_live.exists())
        stmt = stmt.values(status="live").execution_options(synchronize_session=False)

        try:
            async with self._session() as db:
                result = await db.execute(stmt)
                return result.rowcount == 1
        except IntegrityError:
            # Another writer made a session of this batch live first
            return False

    async def close_session(self, session_id: str) -> bool:
        async with self._session() as session:
            result = await session.execute(
                update(ClassSession)
                .where(ClassSession.id == _pk(session_id), ClassSession.status.in_(OPEN_SESSION_STATUSES))
                .values(status="closed")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    # ===== SCANS & ATTENDANCE =====

    async def create_scan(self, scan: ScanRecord) -> ScanRecord:
        async with self._session() as session:
            row = Scan(
                device_id=_pk(scan.device_id),
                barcode=scan.barcode,
                scanned_at=_utc(scan.scanned_at),
                meta=scan.meta or {},
                session_id=_pk(scan.session_id),
                course_id=_pk(scan.course_id),
            )
            session.add(row)
            await session.flush()
            return _scan(row)

    async def get_attendance(self, session_id: str, student_id: str) -> Optional[AttendanceRecord]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(Attendance).where(
                        Attendance.session_id == _pk(session_id),
                        Attendance.student_id == _pk(student_id),
                    )
                )
            ).scalar_one_or_none()
            return _attendance(row) if row else None

    async def insert_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        try:
            async with self._session() as session:
                row = Attendance(
                    session_id=_pk(record.session_id),
                    student_id=_pk(record.student_id),
                    status=record.status,
                    check_in_at=_utc(record.check_in_at),
                    source_scan_id=_pk(record.source_scan_id),
                    notes=record.notes,
                )
                session.add(row)
                await session.flush()
                return _attendance(row)
        except IntegrityError as e:
            raise DuplicateRecordError(
                f"Attendance for session {record.session_id} / student {record.student_id} already exists"
            ) from e

    async def update_attendance_if(
        self,
        record_id: str,
        expected_status: str,
        **changes: Any,
    ) -> Optional[AttendanceRecord]:
        unknown = set(changes) - _ATTENDANCE_FIELDS
        if unknown:
            raise ValueError(f"Unknown attendance fields: {sorted(unknown)}")
        if "check_in_at" in changes:
            changes["check_in_at"] = _utc(changes["check_in_at"])
        if "source_scan_id" in changes:
            changes["source_scan_id"] = _pk(changes["source_scan_id"])

        pk = _pk(record_id)
        async with self._session() as session:
            result = await session.execute(
                update(Attendance)
                .where(Attendance.id == pk, Attendance.status == expected_status)
                .values(**changes)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                return None
            row = (await session.execute(select(Attendance).where(Attendance.id == pk))).scalar_one()
            return _attendance(row)

    async def set_attendance(
        self,
        session_id: str,
        student_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> Optional[AttendanceRecord]:
        async with self._session() as session:
            row = (
                await session.execute(
                    select(Attendance).where(
                        Attendance.session_id == _pk(session_id),
                        Attendance.student_id == _pk(student_id),
                    )
                )
            ).scalar_one_or_none()
            if row is None:
                return None
            row.status = status
            if notes:
                row.notes = notes
            await session.flush()
            return _attendance(row)

    async def list_attendance(self, session_id: str) -> List[AttendanceRecord]:
        async with self._session() as session:
            rows = (
                await session.execute(
                    select(Attendance)
                    .where(Attendance.session_id == _pk(session_id))
                    .order_by(Attendance.check_in_at, Attendance.id)
                )
            ).scalars().all()
            return [_attendance(row) for row in rows]

    # ===== SEEDING =====

    async def _add(self, row):
        try:
            async with self._session() as session:
                session.add(row)
                await session.flush()
                return row
        except IntegrityError as e:
            raise DuplicateRecordError(str(e.orig)) from e

    async def create_course(self, code: str, name: str, department: Optional[str] = None) -> CourseRecord:
        row = await self._add(Course(code=code.strip().upper(), name=name.strip(), department=department))
        return _course(row)

    async def create_student(
        self,
        registration_no: str,
        name: str,
        department: str,
        year: int,
        semester: int,
        email: Optional[str] = None,
    ) -> StudentRecord:
        row = await self._add(
            Student(
                registration_no=registration_no.strip(),
                name=name.strip(),
                department=department.strip(),
                year=int(year),
                semester=int(semester),
                email=email,
            )
        )
        return _student(row)

    async def create_device(self, name: str, api_key: str, location: Optional[str] = None) -> DeviceRecord:
        row = await self._add(
            Device(
                name=name,
                api_key=api_key,
                location=location,
                status="offline",
                last_seen_at=None,
                active_session_id=None,
            )
        )
        return _device(row)

    async def create_session(
        self,
        course_id: str,
        date: str,
        start_time: str,
        end_time: str,
        room: str,
        department: Optional[str] = None,
        year: Optional[int] = None,
        semester: Optional[int] = None,
        status: str = "scheduled",
    ) -> SessionRecord:
        row = await self._add(
            ClassSession(
                course_id=_pk(course_id),
                date=date,
                start_time=start_time,
                end_time=end_time,
                room=room,
                status=status,
                department=department_code(department) or None,
                year=year,
                semester=semester,
            )
        )
        return await self.get_session(str(row.id))
