"""
Errors raised by the attendance core. Each carries the HTTP status it maps to.
"""


class AttendanceError(Exception):
    """Base class for every failure surfaced to callers of the core."""

    status_code = 400
    code = "attendance_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__doc__ or self.code)
        self.message = str(self.args[0])


class InvalidDevice(AttendanceError):
    """Invalid device key"""
    status_code = 401
    code = "invalid_device"


class StudentNotFound(AttendanceError):
    """Student not found"""
    status_code = 404
    code = "student_not_found"


class NoActiveSession(AttendanceError):
    """No active session"""
    status_code = 404
    code = "no_active_session"


class SessionEnded(AttendanceError):
    """Session has ended"""
    status_code = 409
    code = "session_ended"


class AmbiguousSession(AttendanceError):
    """More than one session is eligible"""
    status_code = 409
    code = "ambiguous_session"


class WrongBatch(AttendanceError):
    """Student does not belong to the session's batch"""
    status_code = 403
    code = "wrong_batch"


class InvalidScan(AttendanceError):
    """Invalid scan payload"""
    status_code = 400
    code = "invalid_scan"


class SessionNotFound(AttendanceError):
    """Session not found"""
    status_code = 404
    code = "session_not_found"


class AttendanceNotFound(AttendanceError):
    """Attendance record not found"""
    status_code = 404
    code = "attendance_not_found"


class InvalidStatus(AttendanceError):
    """Invalid attendance status"""
    status_code = 400
    code = "invalid_status"


class ConcurrentUpdate(AttendanceError):
    """Attendance record kept changing while it was being merged"""
    status_code = 409
    code = "concurrent_update"


class PersistenceUnavailable(AttendanceError):
    """Database unavailable"""
    status_code = 503
    code = "persistence_unavailable"
