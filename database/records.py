"""
Plain records exchanged between the stores and the services.

Ids are strings whatever the backend (integer primary keys or ObjectIds).
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

BatchKey = Tuple[str, int, int]


def department_code(value: Optional[str]) -> str:
    return (value or "").strip().upper()


@dataclass
class CourseRecord:
    id: str
    code: str
    name: str
    department: Optional[str] = None


@dataclass
class StudentRecord:
    id: str
    registration_no: str
    name: str
    department: Optional[str] = None
    year: Optional[int] = None
    semester: Optional[int] = None
    email: Optional[str] = None

    @property
    def department_code(self) -> str:
        """Department code from a YEAR/DEPT/NUMBER registration number, else the stored department."""
        parts = self.registration_no.split("/")
        if len(parts) >= 2 and parts[1].strip():
            return department_code(parts[1])
        return department_code(self.department)

    @property
    def batch_key(self) -> BatchKey:
        return (self.department_code, int(self.year or 0), int(self.semester or 0))


@dataclass
class DeviceRecord:
    id: str
    name: str
    api_key: str
    location: Optional[str] = None
    status: str = "offline"
    last_seen_at: Optional[datetime] = None
    active_session_id: Optional[str] = None


@dataclass
class SessionRecord:
    id: str
    course_id: str
    date: str
    start_time: str
    end_time: str
    room: str
    status: str = "scheduled"
    department: Optional[str] = None
    year: Optional[int] = None
    semester: Optional[int] = None
    course: Optional[CourseRecord] = None

    @property
    def has_batch(self) -> bool:
        return bool(self.department) and self.year is not None and self.semester is not None

    @property
    def batch_key(self) -> BatchKey:
        return (department_code(self.department), int(self.year or 0), int(self.semester or 0))

    @property
    def course_code(self) -> str:
        return self.course.code if self.course else ""

    def accepts(self, student: StudentRecord) -> bool:
        """Sessions without batch attributes are open to every student."""
        return not self.has_batch or self.batch_key == student.batch_key


@dataclass
class ScanRecord:
    device_id: str
    barcode: str
    scanned_at: datetime
    meta: Dict[str, Any] = field(default_factory=dict)
    session_id: Optional[str] = None
    course_id: Optional[str] = None
    id: Optional[str] = None


@dataclass
class AttendanceRecord:
    session_id: str
    student_id: str
    status: str = "absent"
    check_in_at: Optional[datetime] = None
    source_scan_id: Optional[str] = None
    notes: Optional[str] = None
    id: Optional[str] = None
