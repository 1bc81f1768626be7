import asyncio
from zoneinfo import ZoneInfo

import pytest

from conftest import SESSION_DATE, RecordingNotifier, at, fixed_clock, make_service, make_world
from database.records import AttendanceRecord
from services.attendance_service import AttendanceService, is_upgrade
from services.errors import (
    AmbiguousSession,
    AttendanceNotFound,
    InvalidDevice,
    InvalidScan,
    InvalidStatus,
    NoActiveSession,
    SessionEnded,
    SessionNotFound,
    StudentNotFound,
    WrongBatch,
)
from services.signaling import Notifier


def test_is_upgrade_only_moves_towards_present():
    assert is_upgrade("absent", "late")
    assert is_upgrade("absent", "present")
    assert is_upgrade("late", "present")
    assert not is_upgrade("late", "late")
    assert not is_upgrade("present", "late")
    assert not is_upgrade("present", "present")


@pytest.mark.parametrize(
    "clock, expected",
    [("09:05", "present"), ("09:10", "present"), ("09:15", "late"), ("10:04", "late")],
)
def test_scan_is_classified_against_session_window(run, clock, expected):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)

        result = await service.ingest("dev-key", "2022/ICTS/01", at(clock), {"rssi": -40})

        assert result.status == expected
        assert result.already_checked_in is False
        assert result.session.id == world.session.id
        assert notifier.types == ["scan.ingested"]
        payload = notifier.events[0]["payload"]
        assert payload["registrationNo"] == "2022/ICTS/01"
        assert payload["courseCode"] == "ICT2113"
        assert payload["status"] == expected

        stored = await store.get_attendance(world.session.id, world.student.id)
        assert stored.status == expected
        assert stored.source_scan_id == result.scan.id

    run(scenario)


def test_scan_after_end_tolerance_is_rejected(run):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)

        with pytest.raises(SessionEnded):
            await service.ingest("dev-key", "2022/ICTS/01", at("10:06"))

        assert await store.get_attendance(world.session.id, world.student.id) is None
        assert notifier.types == ["scan.error"]
        assert notifier.events[0]["payload"]["registrationNo"] == "2022/ICTS/01"
        assert notifier.events[0]["payload"]["error"] == "Session ended at 10:00"

    run(scenario)


def test_repeat_present_scan_is_duplicate(run):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)

        first = await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))
        second = await service.ingest("dev-key", "2022/ICTS/01", at("09:07"))

        assert first.already_checked_in is False
        assert second.already_checked_in is True
        assert second.status == "present"
        assert second.message == "Already marked present"
        # Every scan is logged even when the record does not change
        assert first.scan.id != second.scan.id
        assert second.record.source_scan_id == first.scan.id
        assert len(await store.list_attendance(world.session.id)) == 1
        assert notifier.types == ["scan.ingested", "scan.duplicate"]

    run(scenario)


def test_late_then_present_upgrades(run):
    async def scenario(store):
        world = await make_world(store)
        service = make_service(store)

        late = await service.ingest("dev-key", "2022/ICTS/01", at("09:20"))
        present = await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

        assert late.status == "late"
        assert present.status == "present"
        assert present.already_checked_in is False
        assert "On Time" in present.message
        stored = await store.get_attendance(world.session.id, world.student.id)
        assert stored.status == "present"
        assert stored.source_scan_id == present.scan.id

    run(scenario)


def test_present_then_late_keeps_present(run):
    async def scenario(store):
        world = await make_world(store)
        service = make_service(store)

        await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))
        second = await service.ingest("dev-key", "2022/ICTS/01", at("09:30"))

        assert second.already_checked_in is True
        assert second.status == "present"
        assert (await store.get_attendance(world.session.id, world.student.id)).status == "present"

    run(scenario)


def test_late_then_late_is_duplicate(run):
    async def scenario(store):
        await make_world(store)
        service = make_service(store)

        await service.ingest("dev-key", "2022/ICTS/01", at("09:20"))
        second = await service.ingest("dev-key", "2022/ICTS/01", at("09:40"))

        assert second.already_checked_in is True
        assert second.status == "late"

    run(scenario)


def test_scan_overwrites_absent_record(run):
    async def scenario(store):
        world = await make_world(store)
        await store.insert_attendance(AttendanceRecord(
            session_id=world.session.id,
            student_id=world.student.id,
            status="absent",
        ))
        service = make_service(store)

        result = await service.ingest("dev-key", "2022/ICTS/01", at("09:25"))

        assert result.status == "late"
        assert result.already_checked_in is False
        assert len(await store.list_attendance(world.session.id)) == 1

    run(scenario)


def test_concurrent_first_scans_create_one_record(run):
    async def scenario(store):
        world = await make_world(store)
        service = make_service(store)

        results = await asyncio.gather(
            service.ingest("dev-key", "2022/ICTS/01", at("09:05")),
            service.ingest("dev-key", "2022/ICTS/01", at("09:06")),
        )

        assert sorted(r.already_checked_in for r in results) == [False, True]
        records = await store.list_attendance(world.session.id)
        assert len(records) == 1
        assert records[0].status == "present"

    run(scenario)


def test_unknown_device_writes_nothing(run):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)

        with pytest.raises(InvalidDevice):
            await service.ingest("not-a-key", "2022/ICTS/01", at("09:05"))

        assert await store.list_attendance(world.session.id) == []
        device = await store.get_device_by_api_key("dev-key")
        assert device.status == "offline"
        assert device.active_session_id is None
        assert notifier.types == ["scan.error"]

    run(scenario)


def test_unknown_student_still_refreshes_device(run):
    async def scenario(store):
        await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier, clock=fixed_clock("09:01"))

        with pytest.raises(StudentNotFound):
            await service.ingest("dev-key", "2099/XXX/99", at("09:05"))

        device = await store.get_device_by_api_key("dev-key")
        assert device.status == "online"
        assert device.last_seen_at.isoformat() == at("09:01")
        assert notifier.events[0]["payload"]["registrationNo"] == "2099/XXX/99"

    run(scenario)


def test_no_session_on_scan_date(run):
    async def scenario(store):
        await make_world(store)
        service = make_service(store)

        with pytest.raises(NoActiveSession):
            await service.ingest("dev-key", "2022/ICTS/01", at("09:05", date="2026-03-03"))

    run(scenario)


def test_closed_sessions_are_not_eligible(run):
    async def scenario(store):
        await make_world(store, status="closed")
        service = make_service(store)

        with pytest.raises(NoActiveSession):
            await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

    run(scenario)


def test_sessions_of_other_batches_are_ignored(run):
    async def scenario(store):
        world = await make_world(store)
        await store.create_student("2021/BIO/07", "Amaya Jayasuriya", "Biology", 3, 2)
        service = make_service(store)

        with pytest.raises(NoActiveSession) as excinfo:
            await service.ingest("dev-key", "2021/BIO/07", at("09:05"))

        assert "BIO Y3S2" in str(excinfo.value)
        assert await store.list_attendance(world.session.id) == []

    run(scenario)


def test_device_is_bound_to_discovered_session(run):
    async def scenario(store):
        world = await make_world(store)
        other_course = await store.create_course("BIO3201", "Genetics", "BIO")
        await store.create_session(
            other_course.id, SESSION_DATE, "09:00", "10:00", "Lab 2",
            department="BIO", year=3, semester=2,
        )
        await store.create_student("2021/BIO/07", "Amaya Jayasuriya", "Biology", 3, 2)
        service = make_service(store)

        await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))
        device = await store.get_device_by_api_key("dev-key")
        assert device.active_session_id == world.session.id

        with pytest.raises(WrongBatch):
            await service.ingest("dev-key", "2021/BIO/07", at("09:06"))

    run(scenario)


def test_stale_device_binding_is_cleared(run):
    async def scenario(store):
        world = await make_world(store)
        old = await store.create_session(
            world.course.id, "2026-03-01", "09:00", "10:00", "Hall A",
            department="ICTS", year=2, semester=1, status="closed",
        )
        await store.bind_device(world.device.id, old.id)
        service = make_service(store)

        result = await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

        assert result.session.id == world.session.id
        assert (await store.get_device_by_api_key("dev-key")).active_session_id == world.session.id

    run(scenario)


def test_tie_break_prefers_session_still_accepting_scans(run):
    async def scenario(store):
        world = await make_world(store)
        later = await store.create_session(
            world.course.id, SESSION_DATE, "11:00", "12:00", "Hall B",
            department="ICTS", year=2, semester=1,
        )
        service = make_service(store)

        result = await service.ingest("dev-key", "2022/ICTS/01", at("11:05"))

        assert result.session.id == later.id
        assert result.status == "present"

    run(scenario)


def test_tie_break_prefers_live_session(run):
    async def scenario(store):
        world = await make_world(store)
        live = await store.create_session(
            world.course.id, SESSION_DATE, "09:30", "10:30", "Hall B",
            department="ICTS", year=2, semester=1, status="live",
        )
        service = make_service(store)

        result = await service.ingest("dev-key", "2022/ICTS/01", at("09:35"))

        assert result.session.id == live.id

    run(scenario)


def test_two_live_sessions_are_ambiguous(run):
    async def scenario(store):
        course = await store.create_course("GEN1001", "Orientation")
        await store.create_student("2022/ICTS/01", "Nimal Perera", "ICTS", 2, 1)
        await store.create_device("Hall A scanner", "dev-key")
        # Sessions without batch attributes are open to everyone
        await store.create_session(course.id, SESSION_DATE, "09:00", "10:00", "Hall A", status="live")
        await store.create_session(course.id, SESSION_DATE, "09:00", "10:00", "Hall B", status="live")
        service = make_service(store)

        with pytest.raises(AmbiguousSession):
            await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

    run(scenario)


def test_scan_after_midnight_reaches_overnight_session(run):
    async def scenario(store):
        world = await make_world(store, start="23:00", end="01:00", status="live")
        service = make_service(store)

        first = await service.ingest("dev-key", "2022/ICTS/01", at("00:30", date="2026-03-03"))

        assert first.session.id == world.session.id
        assert first.status == "late"
        device = await store.get_device_by_api_key("dev-key")
        assert device.active_session_id == world.session.id

        # The device stays bound to the overnight session past midnight
        second = await service.ingest("dev-key", "2022/ICTS/01", at("00:40", date="2026-03-03"))
        assert second.session.id == world.session.id
        assert second.already_checked_in is True

        with pytest.raises(SessionEnded):
            await service.ingest("dev-key", "2022/ICTS/01", at("01:06", date="2026-03-03"))

    run(scenario)


def test_sessions_of_the_previous_day_that_ended_before_midnight_are_ignored(run):
    async def scenario(store):
        await make_world(store, start="22:00", end="23:00", status="live")
        service = make_service(store)

        with pytest.raises(NoActiveSession):
            await service.ingest("dev-key", "2022/ICTS/01", at("00:10", date="2026-03-03"))

    run(scenario)


def test_out_of_range_timestamp_is_invalid_scan(run):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)

        with pytest.raises(InvalidScan):
            await service.ingest("dev-key", "2022/ICTS/01", 1e20)

        assert await store.list_attendance(world.session.id) == []
        assert notifier.types == ["scan.error"]

    run(scenario)


def test_capture_time_is_read_in_local_timezone(run):
    async def scenario(store):
        await make_world(store)
        service = AttendanceService(
            store,
            RecordingNotifier(),
            tz=ZoneInfo("Asia/Colombo"),
            clock=fixed_clock("03:00"),
        )

        # 03:35 UTC is 09:05 in Colombo
        result = await service.ingest("dev-key", "2022/ICTS/01", "2026-03-02T03:35:00Z")

        assert result.status == "present"

    run(scenario)


def test_uptime_timestamp_falls_back_to_server_clock(run):
    async def scenario(store):
        await make_world(store)
        service = make_service(store, clock=fixed_clock("09:20"))

        result = await service.ingest("dev-key", "2022/ICTS/01", 53021)

        assert result.status == "late"
        assert result.check_in_at.isoformat() == at("09:20")

    run(scenario)


def test_notifier_failure_does_not_fail_scan(run):
    class BrokenNotifier(RecordingNotifier):
        def publish(self, event):
            raise RuntimeError("socket gone")

    async def scenario(store):
        await make_world(store)
        service = make_service(store, BrokenNotifier())

        result = await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

        assert result.status == "present"

    run(scenario)


def test_session_attendance_includes_virtual_absents(run):
    async def scenario(store):
        world = await make_world(store)
        absent = await store.create_student("2022/ICTS/02", "Kavindi Silva", "ICTS", 2, 1)
        await store.create_student("2021/BIO/07", "Amaya Jayasuriya", "Biology", 3, 2)
        service = make_service(store)
        await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

        view = await service.get_session_attendance(world.session.id)

        assert view["session"]["courseCode"] == "ICT2113"
        rows = {row["studentId"]: row for row in view["records"]}
        assert set(rows) == {world.student.id, absent.id}
        assert rows[world.student.id]["status"] == "present"
        assert rows[world.student.id]["student"]["registrationNo"] == "2022/ICTS/01"
        assert rows[absent.id]["id"] == f"virtual-{absent.id}"
        assert rows[absent.id]["status"] == "absent"
        # Virtual rows are never persisted
        assert len(await store.list_attendance(world.session.id)) == 1

    run(scenario)


def test_session_attendance_unknown_session(run):
    async def scenario(store):
        service = make_service(store)
        with pytest.raises(SessionNotFound):
            await service.get_session_attendance("999")

    run(scenario)


def test_manual_correction_overrides_status(run):
    async def scenario(store):
        world = await make_world(store)
        notifier = RecordingNotifier()
        service = make_service(store, notifier)
        await service.ingest("dev-key", "2022/ICTS/01", at("09:05"))

        row = await service.update_attendance_status(world.session.id, world.student.id, "absent", "left early")

        assert row["status"] == "absent"
        assert row["notes"] == "left early"
        assert notifier.types[-1] == "attendance.updated"
        assert (await store.get_attendance(world.session.id, world.student.id)).status == "absent"

    run(scenario)


def test_manual_correction_validation(run):
    async def scenario(store):
        world = await make_world(store)
        service = make_service(store)

        with pytest.raises(InvalidStatus):
            await service.update_attendance_status(world.session.id, world.student.id, "excused")
        with pytest.raises(AttendanceNotFound):
            await service.update_attendance_status(world.session.id, world.student.id, "present")

    run(scenario)


def test_notifier_must_implement_publish():
    with pytest.raises(TypeError):
        Notifier()
