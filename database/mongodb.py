"""
MongoDB Connection Module
Motor implementation of the attendance store.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient
from pymongo import ASCENDING, DESCENDING, IndexModel, ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError

import config
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


def _oid(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def _str_id(value) -> Optional[str]:
    return str(value) if value is not None else None


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ===== DOCUMENT CONVERSION =====

def course_from_doc(doc: Dict) -> CourseRecord:
    return CourseRecord(
        id=str(doc["_id"]),
        code=doc["code"],
        name=doc["name"],
        department=doc.get("department"),
    )


def student_from_doc(doc: Dict) -> StudentRecord:
    return StudentRecord(
        id=str(doc["_id"]),
        registration_no=doc["registration_no"],
        name=doc["name"],
        department=doc.get("department"),
        year=doc.get("year"),
        semester=doc.get("semester"),
        email=doc.get("email"),
    )


def device_from_doc(doc: Dict) -> DeviceRecord:
    return DeviceRecord(
        id=str(doc["_id"]),
        name=doc["name"],
        api_key=doc["api_key"],
        location=doc.get("location"),
        status=doc.get("status", "offline"),
        last_seen_at=doc.get("last_seen_at"),
        active_session_id=_str_id(doc.get("active_session_id")),
    )


def session_from_doc(doc: Dict, course: Optional[CourseRecord] = None) -> SessionRecord:
    return SessionRecord(
        id=str(doc["_id"]),
        course_id=str(doc["course_id"]),
        date=doc["date"],
        start_time=doc["start_time"],
        end_time=doc["end_time"],
        room=doc["room"],
        status=doc.get("status", "scheduled"),
        department=doc.get("department"),
        year=doc.get("year"),
        semester=doc.get("semester"),
        course=course,
    )


def attendance_from_doc(doc: Dict) -> AttendanceRecord:
    return AttendanceRecord(
        id=str(doc["_id"]),
        session_id=str(doc["session_id"]),
        student_id=str(doc["student_id"]),
        status=doc.get("status", "absent"),
        check_in_at=doc.get("check_in_at"),
        source_scan_id=_str_id(doc.get("source_scan_id")),
        notes=doc.get("notes"),
    )


def live_batch_filter(batch: BatchKey) -> Dict[str, Any]:
    department, year, semester = batch
    return {"status": "live", "department": department, "year": year, "semester": semester}


class MongoAttendanceStore(AttendanceStore):
    """Attendance store backed by MongoDB through Motor."""

    def __init__(self, uri: str = config.MONGODB_URI, database: str = config.MONGODB_DATABASE):
        self.uri = uri
        self.database_name = database
        self.client: Optional[AsyncIOMotorClient] = None
        self.db = None

    async def connect(self, timeout: float = config.STORE_CONNECT_TIMEOUT_SECONDS) -> None:
        """Initialize MongoDB connection."""
        try:
            self.client = AsyncIOMotorClient(
                self.uri,
                serverSelectionTimeoutMS=int(timeout * 1000),
                tz_aware=True,
            )
            self.db = self.client[self.database_name]

            # Test connection
            await asyncio.wait_for(self.client.admin.command("ping"), timeout)
            logger.info("✅ Connected to MongoDB!")

            await self.create_indexes()
        except (asyncio.TimeoutError, ConnectionFailure) as e:
            logger.error(f"❌ MongoDB connection failed: {e}")
            raise PersistenceUnavailable(f"MongoDB connection failed: {e}") from e

    async def close(self) -> None:
        """Close MongoDB connection."""
        if self.client:
            self.client.close()
            self.client = None
            self.db = None
            logger.info("MongoDB connection closed")

    async def ping(self) -> bool:
        try:
            async with self._guard():
                await self.client.admin.command("ping")
            return True
        except PersistenceUnavailable:
            return False

    async def create_indexes(self):
        """Create the unique and lookup indexes the core relies on."""
        await self.db.devices.create_indexes([
            IndexModel([("api_key", ASCENDING)], unique=True),
        ])
        await self.db.students.create_indexes([
            IndexModel([("registration_no", ASCENDING)], unique=True),
            IndexModel([("year", ASCENDING), ("semester", ASCENDING)]),
        ])
        await self.db.courses.create_indexes([
            IndexModel([("code", ASCENDING)], unique=True),
        ])
        await self.db.class_sessions.create_indexes([
            IndexModel([("course_id", ASCENDING), ("date", ASCENDING)]),
            IndexModel([("status", ASCENDING), ("date", ASCENDING)]),
            # At most one live session per batch
            IndexModel(
                [("department", ASCENDING), ("year", ASCENDING), ("semester", ASCENDING)],
                unique=True,
                name="uq_live_batch",
                partialFilterExpression={"status": "live", "department": {"$type": "string"}},
            ),
        ])
        await self.db.scans.create_indexes([
            IndexModel([("barcode", ASCENDING)]),
            IndexModel([("scanned_at", DESCENDING)]),
            IndexModel([("session_id", ASCENDING)]),
        ])
        await self.db.attendance_records.create_indexes([
            IndexModel([("session_id", ASCENDING), ("student_id", ASCENDING)], unique=True),
            IndexModel([("student_id", ASCENDING), ("created_at", DESCENDING)]),
        ])
        logger.info("✅ MongoDB indexes created")

    @asynccontextmanager
    async def _guard(self):
        if self.db is None:
            raise PersistenceUnavailable("MongoDB is not connected")
        try:
            yield
        except ConnectionFailure as e:
            raise PersistenceUnavailable(f"MongoDB unavailable: {e}") from e

    async def _courses_by_id(self, course_ids: Iterable[Any]) -> Dict[str, CourseRecord]:
        ids = list({cid for cid in course_ids if cid is not None})
        if not ids:
            return {}
        docs = await self.db.courses.find({"_id": {"$in": ids}}).to_list(length=None)
        return {str(doc["_id"]): course_from_doc(doc) for doc in docs}

    async def _populate(self, docs: List[Dict]) -> List[SessionRecord]:
        courses = await self._courses_by_id(doc.get("course_id") for doc in docs)
        return [session_from_doc(doc, courses.get(str(doc["course_id"]))) for doc in docs]

    # ===== DEVICE OPERATIONS =====

    async def get_device_by_api_key(self, api_key: str) -> Optional[DeviceRecord]:
        async with self._guard():
            doc = await self.db.devices.find_one({"api_key": api_key})
        return device_from_doc(doc) if doc else None

    async def touch_device(self, device_id: str, seen_at: datetime) -> None:
        async with self._guard():
            await self.db.devices.update_one(
                {"_id": _oid(device_id)},
                {"$set": {"status": "online", "last_seen_at": seen_at, "updated_at": _now()}},
            )

    async def bind_device(self, device_id: str, session_id: Optional[str]) -> None:
        async with self._guard():
            await self.db.devices.update_one(
                {"_id": _oid(device_id)},
                {"$set": {"active_session_id": _oid(session_id) if session_id else None}},
            )

    # ===== STUDENT OPERATIONS =====

    async def get_student_by_registration(self, registration_no: str) -> Optional[StudentRecord]:
        async with self._guard():
            doc = await self.db.students.find_one({"registration_no": registration_no})
        return student_from_doc(doc) if doc else None

    async def get_students(self, student_ids: Iterable[str]) -> Dict[str, StudentRecord]:
        ids = [oid for oid in (_oid(i) for i in student_ids) if oid is not None]
        if not ids:
            return {}
        async with self._guard():
            docs = await self.db.students.find({"_id": {"$in": ids}}).to_list(length=None)
        return {str(doc["_id"]): student_from_doc(doc) for doc in docs}

    async def get_students_by_batch(self, batch: BatchKey) -> List[StudentRecord]:
        _, year, semester = batch
        async with self._guard():
            cursor = self.db.students.find({"year": year, "semester": semester}).sort("registration_no", ASCENDING)
            docs = await cursor.to_list(length=None)
        students = [student_from_doc(doc) for doc in docs]
        return [s for s in students if s.batch_key == batch]

    # ===== SESSION OPERATIONS =====

    async def get_session(self, session_id: str) -> Optional[SessionRecord]:
        oid = _oid(session_id)
        if oid is None:
            return None
        async with self._guard():
            doc = await self.db.class_sessions.find_one({"_id": oid})
            if not doc:
                return None
            return (await self._populate([doc]))[0]

    async def find_sessions(self, dates: Optional[Iterable[str]], statuses: Iterable[str]) -> List[SessionRecord]:
        query: Dict[str, Any] = {"status": {"$in": list(statuses)}}
        if dates is not None:
            query["date"] = {"$in": list(dates)}
        async with self._guard():
            cursor = self.db.class_sessions.find(query).sort(
                [("date", ASCENDING), ("start_time", ASCENDING), ("_id", ASCENDING)]
            )
            return await self._populate(await cursor.to_list(length=None))

    async def find_live_session(self, batch: BatchKey, exclude_id: Optional[str] = None) -> Optional[SessionRecord]:
        query = live_batch_filter(batch)
        if exclude_id is not None:
            query["_id"] = {"$ne": _oid(exclude_id)}
        async with self._guard():
            doc = await self.db.class_sessions.find_one(query)
            if not doc:
                return None
            return (await self._populate([doc]))[0]

    async def count_live_sessions(self, batch: BatchKey) -> int:
        async with self._guard():
            return await self.db.class_sessions.count_documents(live_batch_filter(batch))

    async def promote_to_live(self, session: SessionRecord) -> bool:
        oid = _oid(session.id)
        async with self._guard():
            if session.has_batch:
                query = live_batch_filter(session.batch_key)
                query["_id"] = {"$ne": oid}
                if await self.db.class_sessions.find_one(query, {"_id": 1}):
                    return False
            try:
                result = await self.db.class_sessions.update_one(
                    {"_id": oid, "status": "scheduled"},
                    {"$set": {"status": "live", "updated_at": _now()}},
                )
            except DuplicateKeyError:
                # The partial unique index caught a concurrent promotion
                return False
        return result.modified_count == 1

    async def close_session(self, session_id: str) -> bool:
        async with self._guard():
            result = await self.db.class_sessions.update_one(
                {"_id": _oid(session_id), "status": {"$in": list(OPEN_SESSION_STATUSES)}},
                {"$set": {"status": "closed", "updated_at": _now()}},
            )
        return result.modified_count == 1

    # ===== SCAN & ATTENDANCE OPERATIONS =====

    async def create_scan(self, scan: ScanRecord) -> ScanRecord:
        doc = {
            "device_id": _oid(scan.device_id),
            "barcode": scan.barcode,
            "scanned_at": scan.scanned_at,
            "meta": scan.meta or {},
            "session_id": _oid(scan.session_id),
            "course_id": _oid(scan.course_id),
            "created_at": _now(),
        }
        async with self._guard():
            result = await self.db.scans.insert_one(doc)
        scan.id = str(result.inserted_id)
        return scan

    async def get_attendance(self, session_id: str, student_id: str) -> Optional[AttendanceRecord]:
        async with self._guard():
            doc = await self.db.attendance_records.find_one(
                {"session_id": _oid(session_id), "student_id": _oid(student_id)}
            )
        return attendance_from_doc(doc) if doc else None

    async def insert_attendance(self, record: AttendanceRecord) -> AttendanceRecord:
        now = _now()
        doc = {
            "session_id": _oid(record.session_id),
            "student_id": _oid(record.student_id),
            "status": record.status,
            "check_in_at": record.check_in_at,
            "source_scan_id": _oid(record.source_scan_id),
            "notes": record.notes,
            "created_at": now,
            "updated_at": now,
        }
        async with self._guard():
            try:
                result = await self.db.attendance_records.insert_one(doc)
            except DuplicateKeyError as e:
                raise DuplicateRecordError(
                    f"Attendance for session {record.session_id} / student {record.student_id} already exists"
                ) from e
        doc["_id"] = result.inserted_id
        return attendance_from_doc(doc)

    async def update_attendance_if(
        self,
        record_id: str,
        expected_status: str,
        **changes: Any,
    ) -> Optional[AttendanceRecord]:
        unknown = set(changes) - _ATTENDANCE_FIELDS
        if unknown:
            raise ValueError(f"Unknown attendance fields: {sorted(unknown)}")
        if "source_scan_id" in changes:
            changes["source_scan_id"] = _oid(changes["source_scan_id"])
        changes["updated_at"] = _now()

        async with self._guard():
            doc = await self.db.attendance_records.find_one_and_update(
                {"_id": _oid(record_id), "status": expected_status},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        return attendance_from_doc(doc) if doc else None

    async def set_attendance(
        self,
        session_id: str,
        student_id: str,
        status: str,
        notes: Optional[str] = None,
    ) -> Optional[AttendanceRecord]:
        changes = {"status": status, "updated_at": _now()}
        if notes:
            changes["notes"] = notes
        async with self._guard():
            doc = await self.db.attendance_records.find_one_and_update(
                {"session_id": _oid(session_id), "student_id": _oid(student_id)},
                {"$set": changes},
                return_document=ReturnDocument.AFTER,
            )
        return attendance_from_doc(doc) if doc else None

    async def list_attendance(self, session_id: str) -> List[AttendanceRecord]:
        async with self._guard():
            cursor = self.db.attendance_records.find({"session_id": _oid(session_id)}).sort(
                [("check_in_at", ASCENDING), ("_id", ASCENDING)]
            )
            docs = await cursor.to_list(length=None)
        return [attendance_from_doc(doc) for doc in docs]

    # ===== SEEDING =====

    async def _insert(self, collection: str, doc: Dict) -> Dict:
        doc["created_at"] = _now()
        async with self._guard():
            try:
                result = await self.db[collection].insert_one(doc)
            except DuplicateKeyError as e:
                raise DuplicateRecordError(str(e)) from e
        doc["_id"] = result.inserted_id
        return doc

    async def create_course(self, code: str, name: str, department: Optional[str] = None) -> CourseRecord:
        doc = await self._insert("courses", {
            "code": code.strip().upper(),
            "name": name.strip(),
            "department": department,
        })
        return course_from_doc(doc)

    async def create_student(
        self,
        registration_no: str,
        name: str,
        department: str,
        year: int,
        semester: int,
        email: Optional[str] = None,
    ) -> StudentRecord:
        doc = await self._insert("students", {
            "registration_no": registration_no.strip(),
            "name": name.strip(),
            "department": department.strip(),
            "year": int(year),
            "semester": int(semester),
            "email": email,
        })
        return student_from_doc(doc)

    async def create_device(self, name: str, api_key: str, location: Optional[str] = None) -> DeviceRecord:
        doc = await self._insert("devices", {
            "name": name,
            "api_key": api_key,
            "location": location,
            "status": "offline",
            "last_seen_at": None,
            "active_session_id": None,
        })
        return device_from_doc(doc)

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
        doc = await self._insert("class_sessions", {
            "course_id": _oid(course_id),
            "date": date,
            "start_time": start_time,
            "end_time": end_time,
            "room": room,
            "status": status,
            "department": department_code(department) or None,
            "year": year,
            "semester": semester,
        })
        return await self.get_session(str(doc["_id"]))
