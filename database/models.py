"""
Database models for the scan attendance service.
"""

from datetime import datetime, timezone
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, Text, JSON, Index, UniqueConstraint, text
from sqlalchemy.orm import relationship

from database.database import Base


def _utcnow():
    return datetime.now(timezone.utc)


class Course(Base):
    """A course that class sessions are scheduled for."""

    __tablename__ = "courses"

    id = Column(Integer, primary_key=True, index=True)
    code = Column(String(20), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    department = Column(String(100), nullable=True)
    created_at = Column(DateTime, default=_utcnow)

    sessions = relationship("ClassSession", back_populates="course")

    def __repr__(self):
        return f"<Course(id={self.id}, code='{self.code}')>"


class Student(Base):
    """Student identified by the registration number printed on their barcode."""

    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    registration_no = Column(String(50), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    email = Column(String(100), nullable=True)
    department = Column(String(100), nullable=False)
    year = Column(Integer, nullable=False)
    semester = Column(Integer, nullable=False)
    created_at = Column(DateTime, default=_utcnow)

    def __repr__(self):
        return f"<Student(id={self.id}, name='{self.name}', reg='{self.registration_no}')>"


class Device(Base):
    """A physical barcode scanner."""

    __tablename__ = "devices"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    location = Column(String(100), nullable=True)
    api_key = Column(String(128), unique=True, nullable=False)
    status = Column(String(10), default="offline")  # online, offline
    last_seen_at = Column(DateTime(timezone=True), nullable=True)
    active_session_id = Column(Integer, ForeignKey("class_sessions.id", ondelete="SET NULL"), nullable=True)

    def __repr__(self):
        return f"<Device(id={self.id}, name='{self.name}', status='{self.status}')>"


class ClassSession(Base):
    """A course meeting on one calendar date. Dates and times are local strings."""

    __tablename__ = "class_sessions"
    __table_args__ = (
        Index("ix_class_sessions_status_date", "status", "date"),
        # At most one live session per batch
        Index(
            "uq_class_sessions_live_batch",
            "department", "year", "semester",
            unique=True,
            sqlite_where=text("status = 'live'"),
            postgresql_where=text("status = 'live'"),
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=False)
    date = Column(String(10), nullable=False)        # YYYY-MM-DD
    start_time = Column(String(5), nullable=False)   # HH:MM
    end_time = Column(String(5), nullable=False)     # HH:MM
    room = Column(String(50), nullable=False)
    status = Column(String(10), default="scheduled", nullable=False)  # scheduled, live, closed
    department = Column(String(100), nullable=True)
    year = Column(Integer, nullable=True)
    semester = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    course = relationship("Course", back_populates="sessions")

    def __repr__(self):
        return f"<ClassSession(id={self.id}, date='{self.date}', status='{self.status}')>"


class Scan(Base):
    """Append-only log of physical scans."""

    __tablename__ = "scans"

    id = Column(Integer, primary_key=True, index=True)
    device_id = Column(Integer, ForeignKey("devices.id"), nullable=False)
    barcode = Column(String(50), nullable=False, index=True)
    scanned_at = Column(DateTime(timezone=True), nullable=False, index=True)
    meta = Column(JSON, default=dict)
    session_id = Column(Integer, ForeignKey("class_sessions.id"), nullable=True, index=True)
    course_id = Column(Integer, ForeignKey("courses.id"), nullable=True)
    created_at = Column(DateTime, default=_utcnow)


class Attendance(Base):
    """Outcome for one student in one session."""

    __tablename__ = "attendance_records"
    __table_args__ = (
        UniqueConstraint("session_id", "student_id", name="uq_attendance_session_student"),
    )

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("class_sessions.id", ondelete="CASCADE"), nullable=False)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    status = Column(String(10), default="absent", nullable=False)  # present, late, absent
    check_in_at = Column(DateTime(timezone=True), nullable=True)
    source_scan_id = Column(Integer, ForeignKey("scans.id"), nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=_utcnow)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow)

    def __repr__(self):
        return f"<Attendance(session_id={self.session_id}, student_id={self.student_id}, status='{self.status}')>"
