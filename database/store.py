"""
Storage contract used by the attendance core.

The core only needs lookups by unique key, filtered finds, a unique-constrained
insert, compare-and-set updates and counts, so any document or relational
store can back it. Joins (session -> course, record -> student) are done by
the implementations as explicit reads.
"""
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from database.records import (
    AttendanceRecord,
    BatchKey,
    CourseRecord,
    DeviceRecord,
    ScanRecord,
    SessionRecord,
    StudentRecord,
)

OPEN_SESSION_STATUSES = ("scheduled", "live")


class DuplicateRecordError(Exception):
    """A unique constraint rejected the write."""


class AttendanceStore(ABC):
    """Async persistence operations for devices, students, sessions, scans and attendance."""

    # ----- Lifecycle -----

    @abstractmethod
    async def connect(self, timeout: float) -> None:
        """Open the connection and create indexes; PersistenceUnavailable after `timeout`."""

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    # ----- Devices -----

    @abstractmethod
    async def get_device_by_api_key(self, api_key: str) -> Optional[DeviceRecord]:
        ...

    @abstractmethod
    async def touch_device(self, device_id: str, seen_at: datetime) -> None:
        """Mark the device online and refresh its last-seen time."""

    @abstractmethod
    async def bind_device(self, device_id: str, session_id: Optional[str]) -> None:
        ...

    # ----- Students -----

    @abstractmethod
    async def get_student_by_registration(self, registration_no: str) -> Optional[StudentRecord]:
        ...

    @abstractmethod
    async def get_students(self, student_ids: Iterable[str]) -> Dict[str, StudentRecord]:
        ...

    @abstractmethod
    async def get_students_by_batch(self, batch: BatchKey) -> List[StudentRecord]:
        ...

    # ----- Sessions -----

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        """Session with its course populated."""

    @abstractmethod
    async def find_sessions(self, dates: Optional[Iterable[str]], statuses: Iterable[str]) -> List[SessionRecord]:
        """Sessions on any of `dates` (all dates when None) with one of `statuses`, courses populated."""

    @abstractmethod
    async def find_live_session(self, batch: BatchKey, exclude_id: Optional[str] = None) -> Optional[SessionRecord]:
        ...

    @abstractmethod
    async def count_live_sessions(self, batch: BatchKey) -> int:
        """Live sessions of a batch; the one-live-session-per-batch rule keeps this at most 1."""

    @abstractmethod
    async def promote_to_live(self, session: SessionRecord) -> bool:
        """
        scheduled -> live, only if no other session of the same batch is live.

        Returns False when the session was no longer scheduled or the batch
        already has a live session.
        """

    @abstractmethod
    async def close_session(self, session_id: str) -> bool:
        """scheduled/live -> closed. Returns False if it was already closed."""

    # ----- Scans & attendance -----

    @abstractmethod
    async def create_scan(self, scan: ScanRecord) -> ScanRecord:
        ...

    @abstractmethod
    async def get_attendance(self, session_id: str, student_id: str) -> Optional[AttendanceRecord]:
        ...

    @abstractmethod
    async def insert_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        """Insert; raises DuplicateRecordError if (session, student) already exists."""

    @abstractmethod
    async def update_attendance_if(
        self,
        record_id: str,
        expected_status: str,
        **changes: Any,
    ) -> Optional[AttendanceRecord]:
        """Apply `changes` only while the stored status is still `expected_status`."""

    @abstractmethod
    async def set_attendance(
        self,
        session_id: str,
        student_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> Optional[AttendanceRecord]:
        """Unconditional status override of an existing record; None when there is none."""

    @abstractmethod
    async def list_attendance(self, session_id: str) -> List[AttendanceRecord]:
        """Records of a session ordered by check-in time."""

    # ----- Seeding -----

    @abstractmethod
    async def create_course(self, code: str, name: str, department: Optional[str] = None) -> CourseRecord:
        ...

    @abstractmethod
    async def create_student(
        self,
        registration_no: str,
        name: str,
        department: str,
        year: int,
        semester: int,
        email: Optional[str] = None,
    ) -> StudentRecord:
        ...

    @abstractmethod
    async def create_device(self, name: str, api_key: str, location: Optional[str] = None) -> DeviceRecord:
        ...

    @abstractmethod
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
        ...
