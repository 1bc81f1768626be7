"""
Attendance Service - turns barcode scans into attendance records.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

import config
from database.records import AttendanceRecord, DeviceRecord, ScanRecord, SessionRecord, StudentRecord
from database.store import OPEN_SESSION_STATUSES, AttendanceStore, DuplicateRecordError
from services.errors import (
    AmbiguousSession,
    AttendanceNotFound,
    ConcurrentUpdate,
    InvalidDevice,
    InvalidScan,
    InvalidStatus,
    NoActiveSession,
    SessionEnded,
    SessionNotFound,
    StudentNotFound,
    WrongBatch,
)
from services.signaling import Notifier, make_event
from services.time_window import (
    ABSENT,
    ATTENDANCE_STATUSES,
    LATE,
    MINUTES_PER_DAY,
    PRESENT,
    classify,
    crosses_midnight,
    effective_end_minutes,
    get_timezone,
    local_date_and_minutes,
    parse_hhmm,
    previous_date,
    resolve_capture_time,
)

logger = logging.getLogger(__name__)

MERGE_ATTEMPTS = 3


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def is_upgrade(existing: str, computed: str) -> bool:
    """Attendance only ever moves towards present: absent -> late/present, late -> present."""
    return existing == ABSENT or (existing == LATE and computed == PRESENT)


def describe_batch(department: Optional[str], year, semester) -> str:
    return f"{department or '?'} Y{year}S{semester}"


def student_summary(student: StudentRecord) -> Dict[str, Any]:
    return {
        "id": student.id,
        "name": student.name,
        "registrationNo": student.registration_no,
        "department": student.department,
        "year": student.year,
        "semester": student.semester,
    }


def session_summary(session: SessionRecord) -> Dict[str, Any]:
    return {
        "id": session.id,
        "courseCode": session.course_code,
        "courseName": session.course.name if session.course else None,
        "date": session.date,
        "startTime": session.start_time,
        "endTime": session.end_time,
        "room": session.room,
        "status": session.status,
        "department": session.department,
        "year": session.year,
        "semester": session.semester,
    }


def attendance_row(record: AttendanceRecord, student: Optional[StudentRecord]) -> Dict[str, Any]:
    return {
        "id": record.id,
        "sessionId": record.session_id,
        "studentId": record.student_id,
        "student": student_summary(student) if student else None,
        "status": record.status,
        "checkInAt": _iso(record.check_in_at),
        "sourceScanId": record.source_scan_id,
        "notes": record.notes,
    }


@dataclass
class IngestResult:
    """Outcome of one accepted scan."""
    scan: ScanRecord
    record: AttendanceRecord
    student: StudentRecord
    session: SessionRecord
    already_checked_in: bool
    message: str

    @property
    def status(self) -> str:
        return self.record.status

    @property
    def check_in_at(self) -> Optional[datetime]:
        return self.record.check_in_at

    def event(self) -> Dict[str, Any]:
        return make_event(
            "scan.duplicate" if self.already_checked_in else "scan.ingested",
            {
                "studentId": self.student.id,
                "studentName": self.student.name,
                "registrationNo": self.student.registration_no,
                "sessionId": self.session.id,
                "courseCode": self.session.course_code,
                "status": self.status,
                "checkInAt": _iso(self.check_in_at),
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "student": student_summary(self.student),
            "session": session_summary(self.session),
            "status": self.status,
            "checkInAt": _iso(self.check_in_at),
            "duplicate": self.already_checked_in,
            "message": self.message,
        }


class AttendanceService:
    """
    Scan ingestion plus the per-session attendance views.

    Holds no locks: concurrent scans for the same student and session are
    serialised by the store's unique (session, student) constraint and its
    compare-and-set updates.
    """

    def __init__(
        self,
        store: AttendanceStore,
        notifier: Notifier,
        tz=None,
        grace_minutes: int = config.GRACE_PERIOD_MINUTES,
        end_tolerance_minutes: int = config.END_TOLERANCE_MINUTES,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.notifier = notifier
        self.tz = tz or get_timezone(config.TIMEZONE)
        self.grace_minutes = grace_minutes
        self.end_tolerance_minutes = end_tolerance_minutes
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _notify(self, event: Dict[str, Any]) -> None:
        try:
            self.notifier.publish(event)
        except Exception as e:
            logger.error(f"Notifier rejected {event.get('type')} event: {e}")

    # ----- Ingestion -----

    async def ingest(
        self,
        device_key: str,
        registration_no: str,
        timestamp=None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> IngestResult:
        """
        Record a scan and merge it into the student's attendance for the
        current session.

        Raises:
            InvalidDevice, StudentNotFound, NoActiveSession, SessionEnded,
            AmbiguousSession, WrongBatch, PersistenceUnavailable
        """
        try:
            result = await self._ingest(device_key, registration_no, timestamp, meta or {})
        except Exception as e:
            logger.warning(f"Scan {registration_no!r} rejected: {e}")
            self._notify(make_event("scan.error", {
                "registrationNo": registration_no or "Unknown",
                "error": str(e) or "Scan failed",
                "timestamp": self.clock().isoformat(),
            }))
            raise

        self._notify(result.event())
        return result

    async def _ingest(self, device_key, registration_no, timestamp, meta) -> IngestResult:
        device = await self.store.get_device_by_api_key(device_key)
        if device is None:
            raise InvalidDevice("Invalid device key")

        # Liveness is tracked whether or not the rest of the scan is valid
        now = self.clock()
        await self.store.touch_device(device.id, now)

        student = await self.store.get_student_by_registration(registration_no)
        if student is None:
            raise StudentNotFound(f"ID {registration_no} not found")

        try:
            captured_at = resolve_capture_time(timestamp, self.tz, now)
        except (TypeError, ValueError, OverflowError, OSError) as e:
            raise InvalidScan(f"Invalid timestamp {timestamp!r}") from e
        scan_date, scan_minutes = local_date_and_minutes(captured_at, self.tz)

        session = await self._resolve_session(device, student, scan_date, scan_minutes)

        start = parse_hhmm(session.start_time)
        end = effective_end_minutes(start, parse_hhmm(session.end_time))
        # A session carried over from the previous day is measured from its own midnight
        minutes = self._minutes_into(session, scan_date, scan_minutes)
        verdict = classify(minutes, start, end, self.grace_minutes, self.end_tolerance_minutes)
        if verdict.rejected:
            raise SessionEnded(f"Session ended at {session.end_time}")

        scan = await self.store.create_scan(ScanRecord(
            device_id=device.id,
            barcode=registration_no,
            scanned_at=captured_at,
            meta=meta,
            session_id=session.id,
            course_id=session.course_id,
        ))

        record, duplicate = await self._merge(session, student, verdict.status, captured_at, scan)

        if duplicate:
            message = f"Already marked {record.status}"
        else:
            timing = "On Time" if record.status == PRESENT else "Late"
            message = f"Allowed! {session.course_code} (Y{session.year}S{session.semester}) - {timing}"

        logger.info(
            f"Scan {registration_no} -> {session.course_code} {session.date} "
            f"{record.status}{' (duplicate)' if duplicate else ''}"
        )
        return IngestResult(
            scan=scan,
            record=record,
            student=student,
            session=session,
            already_checked_in=duplicate,
            message=message,
        )

    async def _resolve_session(
        self,
        device: DeviceRecord,
        student: StudentRecord,
        scan_date: str,
        scan_minutes: int,
    ) -> SessionRecord:
        """Session the scan belongs to: the device's bound session if still valid, else discovery."""
        department, year, semester = student.batch_key

        if device.active_session_id:
            bound = await self.store.get_session(device.active_session_id)
            if bound and bound.status != "closed" and self._covers(bound, scan_date):
                if not bound.accepts(student):
                    raise WrongBatch(
                        f"Session is for {describe_batch(*bound.batch_key)} ({bound.course_code}). "
                        f"You are {describe_batch(department, year, semester)}."
                    )
                return bound
            logger.info(f"Device {device.name} lock is stale, clearing")
            await self.store.bind_device(device.id, None)

        sessions = await self.store.find_sessions([previous_date(scan_date), scan_date], OPEN_SESSION_STATUSES)
        candidates = [s for s in sessions if self._covers(s, scan_date) and s.accepts(student)]
        if not candidates:
            raise NoActiveSession(
                f"No session for {describe_batch(department, year, semester)} on {scan_date}"
            )

        session = self._pick_session(candidates, scan_date, scan_minutes)
        await self.store.bind_device(device.id, session.id)
        logger.info(f"Device {device.name} locked to session {session.course_code} ({session.id})")
        return session

    @staticmethod
    def _covers(session: SessionRecord, scan_date: str) -> bool:
        """Sessions of the scan date, plus those of the day before that run past midnight."""
        if session.date == scan_date:
            return True
        return session.date == previous_date(scan_date) and crosses_midnight(session.start_time, session.end_time)

    @staticmethod
    def _minutes_into(session: SessionRecord, scan_date: str, scan_minutes: int) -> int:
        """Scan time in minutes since the midnight that starts the session's date."""
        return scan_minutes if session.date == scan_date else scan_minutes + MINUTES_PER_DAY

    def _pick_session(self, candidates: List[SessionRecord], scan_date: str, scan_minutes: int) -> SessionRecord:
        """
        Deterministic choice among eligible sessions around the scan date.

        A live session wins (two live ones is an error). Otherwise the
        earliest-starting session still accepting scans, then course code; if
        all have ended, the one that ended last so the caller reports it.
        """
        live = [s for s in candidates if s.status == "live"]
        if len(live) > 1:
            codes = ", ".join(sorted(s.course_code for s in live))
            raise AmbiguousSession(f"Multiple sessions live: {codes}. Contact admin")
        if live:
            return live[0]

        def window_end(session: SessionRecord) -> int:
            start = parse_hhmm(session.start_time)
            return effective_end_minutes(start, parse_hhmm(session.end_time)) + self.end_tolerance_minutes

        def offset(session: SessionRecord) -> int:
            return self._minutes_into(session, scan_date, scan_minutes) - scan_minutes

        open_sessions = [s for s in candidates if scan_minutes + offset(s) <= window_end(s)]
        if open_sessions:
            return min(open_sessions, key=lambda s: (parse_hhmm(s.start_time) - offset(s), s.course_code, s.id))
        return max(candidates, key=lambda s: (window_end(s) - offset(s), s.course_code, s.id))

    async def _merge(
        self,
        session: SessionRecord,
        student: StudentRecord,
        status: str,
        captured_at: datetime,
        scan: ScanRecord,
    ) -> Tuple[AttendanceRecord, bool]:
        """Insert or upgrade the (session, student) record. Returns (record, is_duplicate)."""
        for _ in range(MERGE_ATTEMPTS):
            existing = await self.store.get_attendance(session.id, student.id)

            if existing is None:
                try:
                    record = await self.store.insert_attendance(AttendanceRecord(
                        session_id=session.id,
                        student_id=student.id,
                        status=status,
                        check_in_at=captured_at,
                        source_scan_id=scan.id,
                    ))
                    return record, False
                except DuplicateRecordError:
                    # A concurrent scan created it first; merge against that one
                    continue

            if not is_upgrade(existing.status, status):
                return existing, True

            updated = await self.store.update_attendance_if(
                existing.id,
                existing.status,
                status=status,
                check_in_at=captured_at,
                source_scan_id=scan.id,
            )
            if updated is not None:
                return updated, False

        raise ConcurrentUpdate(
            f"Attendance for {student.registration_no} in session {session.id} kept changing, try again"
        )

    # ----- Session attendance -----

    async def get_session_attendance(self, session_id: str) -> Dict[str, Any]:
        """Persisted records plus a virtual absent row for every batch student without one."""
        session = await self.store.get_session(session_id)
        if session is None:
            raise SessionNotFound("Session not found")

        records = await self.store.list_attendance(session.id)
        students = await self.store.get_students(r.student_id for r in records)
        rows = [attendance_row(r, students.get(r.student_id)) for r in records]

        if session.has_batch:
            seen = {r.student_id for r in records}
            for student in await self.store.get_students_by_batch(session.batch_key):
                if student.id in seen:
                    continue
                rows.append({
                    "id": f"virtual-{student.id}",
                    "sessionId": session.id,
                    "studentId": student.id,
                    "student": student_summary(student),
                    "status": ABSENT,
                    "checkInAt": None,
                    "sourceScanId": None,
                    "notes": None,
                })

        return {"session": session_summary(session), "records": rows}

    async def update_attendance_status(
        self,
        session_id: str,
        student_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Manual correction by an instructor; any status may replace any other."""
        if status not in ATTENDANCE_STATUSES:
            raise InvalidStatus(f"Status must be one of {', '.join(ATTENDANCE_STATUSES)}")

        record = await self.store.set_attendance(session_id, student_id, status, notes)
        if record is None:
            raise AttendanceNotFound("Attendance record not found")

        students = await self.store.get_students([record.student_id])
        self._notify(make_event("attendance.updated", {
            "sessionId": session_id,
            "studentId": student_id,
            "status": status,
            "notes": notes,
        }))
        return attendance_row(record, students.get(record.student_id))
