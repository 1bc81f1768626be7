from datetime import datetime, timezone

from bson import ObjectId

from database.mongodb import (
    attendance_from_doc,
    course_from_doc,
    device_from_doc,
    live_batch_filter,
    session_from_doc,
    student_from_doc,
)


def test_student_document_conversion():
    oid = ObjectId()
    student = student_from_doc({
        "_id": oid,
        "registration_no": "2022/ICTS/01",
        "name": "Nimal Perera",
        "department": "Information and Communication Technology",
        "year": 2,
        "semester": 1,
    })

    assert student.id == str(oid)
    assert student.email is None
    # Department code is read from the registration number
    assert student.batch_key == ("ICTS", 2, 1)


def test_device_document_defaults():
    session_oid = ObjectId()
    device = device_from_doc({
        "_id": ObjectId(),
        "name": "Hall A scanner",
        "api_key": "dev-key",
        "active_session_id": session_oid,
    })

    assert device.status == "offline"
    assert device.last_seen_at is None
    assert device.active_session_id == str(session_oid)


def test_session_document_with_course():
    course_oid = ObjectId()
    course = course_from_doc({"_id": course_oid, "code": "ICT2113", "name": "Data Structures"})
    session = session_from_doc(
        {
            "_id": ObjectId(),
            "course_id": course_oid,
            "date": "2026-03-02",
            "start_time": "09:00",
            "end_time": "10:00",
            "room": "Hall A",
            "department": "ICTS",
            "year": 2,
            "semester": 1,
        },
        course,
    )

    assert session.status == "scheduled"
    assert session.course_id == str(course_oid)
    assert session.course_code == "ICT2113"
    assert session.has_batch


def test_session_without_batch_is_open_to_all():
    session = session_from_doc({
        "_id": ObjectId(),
        "course_id": ObjectId(),
        "date": "2026-03-02",
        "start_time": "09:00",
        "end_time": "10:00",
        "room": "Hall A",
        "status": "live",
    })
    student = student_from_doc({
        "_id": ObjectId(),
        "registration_no": "2021/BIO/07",
        "name": "Amaya Jayasuriya",
        "year": 3,
        "semester": 2,
    })

    assert not session.has_batch
    assert session.course_code == ""
    assert session.accepts(student)


def test_attendance_document_conversion():
    check_in = datetime(2026, 3, 2, 9, 5, tzinfo=timezone.utc)
    scan_oid = ObjectId()
    record = attendance_from_doc({
        "_id": ObjectId(),
        "session_id": ObjectId(),
        "student_id": ObjectId(),
        "status": "late",
        "check_in_at": check_in,
        "source_scan_id": scan_oid,
    })

    assert record.status == "late"
    assert record.check_in_at == check_in
    assert record.source_scan_id == str(scan_oid)
    assert record.notes is None


def test_live_batch_filter():
    assert live_batch_filter(("ICTS", 2, 1)) == {
        "status": "live",
        "department": "ICTS",
        "year": 2,
        "semester": 1,
    }
