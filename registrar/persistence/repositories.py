"""
Repository pattern implementations for data access.

Repositories never open their own transactions: every method takes the
connection of the caller's unit of work, so a seat change, the enrollment row
and the audit entries it produces commit or roll back together.
"""

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Set, TypeVar

from ..core.entities import (
    Section, Enrollment, WaitlistEntry, OverrideRecord, AuditEvent, utcnow,
)
from ..core.enums import (
    SectionStatus, EnrollmentStatus, OverrideOutcome, AuditEventType,
)
from ..core.exceptions import ConcurrencyConflictError

T = TypeVar('T')

_SECTION_STATUS_AFTER = """
    CASE
        WHEN status = 'CLOSED' THEN 'CLOSED'
        WHEN {count} >= capacity THEN 'FULL'
        ELSE 'OPEN'
    END
"""


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class BaseRepository(ABC, Generic[T]):
    """Base repository implementation with common functionality."""

    def _fetch_one(self, conn: sqlite3.Connection, query: str, params: tuple = ()) -> Optional[T]:
        row = conn.execute(query, params).fetchone()
        return self._entity_from_row(dict(row)) if row else None

    def _fetch_all(self, conn: sqlite3.Connection, query: str, params: tuple = ()) -> List[T]:
        return [self._entity_from_row(dict(row)) for row in conn.execute(query, params).fetchall()]

    @abstractmethod
    def _entity_from_row(self, row: Dict[str, Any]) -> T:
        """Convert a database row to an entity instance."""
        pass


class SectionRepository(BaseRepository[Section]):
    """Repository for Section rows. The only writer of seat counters."""

    def _entity_from_row(self, row: Dict[str, Any]) -> Section:
        section = Section(capacity=row["capacity"], course_id=row["course_id"], entity_id=row["id"])
        section._enrolled_count = row["enrolled_count"]
        section._status = SectionStatus(row["status"])
        section._created_at = _parse_ts(row["created_at"])
        section._updated_at = _parse_ts(row["updated_at"])
        section._version = row["version"]
        return section

    def insert(self, conn: sqlite3.Connection, section: Section) -> Section:
        conn.execute(
            """
            INSERT INTO sections (id, course_id, capacity, enrolled_count, status, created_at, updated_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                section.id, section.course_id, section.capacity, section.enrolled_count,
                section.status.value, section.created_at.isoformat(),
                section.updated_at.isoformat(), section.version,
            ),
        )
        return section

    def find_by_id(self, conn: sqlite3.Connection, section_id: str) -> Optional[Section]:
        return self._fetch_one(conn, "SELECT * FROM sections WHERE id = ?", (section_id,))

    def increment_if_available(self, conn: sqlite3.Connection, section_id: str) -> bool:
        """Check-and-increment as a single statement. False means no seat."""
        cursor = conn.execute(
            f"""
            UPDATE sections
            SET enrolled_count = enrolled_count + 1,
                status = {_SECTION_STATUS_AFTER.format(count="enrolled_count + 1")},
                updated_at = ?, version = version + 1
            WHERE id = ? AND enrolled_count < capacity
            """,
            (utcnow().isoformat(), section_id),
        )
        return cursor.rowcount == 1

    def force_increment(self, conn: sqlite3.Connection, section_id: str) -> None:
        conn.execute(
            f"""
            UPDATE sections
            SET enrolled_count = enrolled_count + 1,
                status = {_SECTION_STATUS_AFTER.format(count="enrolled_count + 1")},
                updated_at = ?, version = version + 1
            WHERE id = ?
            """,
            (utcnow().isoformat(), section_id),
        )

    def decrement(self, conn: sqlite3.Connection, section_id: str) -> None:
        conn.execute(
            f"""
            UPDATE sections
            SET enrolled_count = MAX(enrolled_count - 1, 0),
                status = {_SECTION_STATUS_AFTER.format(count="MAX(enrolled_count - 1, 0)")},
                updated_at = ?, version = version + 1
            WHERE id = ?
            """,
            (utcnow().isoformat(), section_id),
        )

    def set_status(self, conn: sqlite3.Connection, section_id: str, status: SectionStatus) -> None:
        conn.execute(
            "UPDATE sections SET status = ?, updated_at = ?, version = version + 1 WHERE id = ?",
            (status.value, utcnow().isoformat(), section_id),
        )


class EnrollmentRepository(BaseRepository[Enrollment]):
    """Repository for Enrollment rows. Rows are never deleted."""

    def _entity_from_row(self, row: Dict[str, Any]) -> Enrollment:
        enrollment = Enrollment(
            student_id=row["student_id"],
            section_id=row["section_id"],
            status=EnrollmentStatus(row["status"]),
            override=bool(row["override"]),
            entity_id=row["id"],
        )
        enrollment._grade = row["grade"]
        enrollment._ended_at = _parse_ts(row["ended_at"])
        enrollment._created_at = _parse_ts(row["created_at"])
        enrollment._updated_at = _parse_ts(row["updated_at"])
        enrollment._version = row["version"]
        return enrollment

    def insert(self, conn: sqlite3.Connection, enrollment: Enrollment) -> Enrollment:
        conn.execute(
            """
            INSERT INTO enrollments (id, student_id, section_id, status, override, grade,
                                     created_at, updated_at, ended_at, version)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                enrollment.id, enrollment.student_id, enrollment.section_id,
                enrollment.status.value, int(enrollment.override), enrollment.grade,
                enrollment.created_at.isoformat(), enrollment.updated_at.isoformat(),
                enrollment.ended_at.isoformat() if enrollment.ended_at else None,
                enrollment.version,
            ),
        )
        return enrollment

    def update(self, conn: sqlite3.Connection, enrollment: Enrollment, expected_version: int) -> Enrollment:
        """Write back a mutated enrollment if nobody changed it since it was read."""
        cursor = conn.execute(
            """
            UPDATE enrollments
            SET status = ?, override = ?, grade = ?, updated_at = ?, ended_at = ?, version = ?
            WHERE id = ? AND version = ?
            """,
            (
                enrollment.status.value, int(enrollment.override), enrollment.grade,
                enrollment.updated_at.isoformat(),
                enrollment.ended_at.isoformat() if enrollment.ended_at else None,
                enrollment.version, enrollment.id, expected_version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyConflictError(
                f"Enrollment {enrollment.id} changed concurrently",
                details={"enrollment_id": enrollment.id, "expected_version": expected_version},
            )
        return enrollment

    def find_by_id(self, conn: sqlite3.Connection, enrollment_id: str) -> Optional[Enrollment]:
        return self._fetch_one(conn, "SELECT * FROM enrollments WHERE id = ?", (enrollment_id,))

    def find_open(self, conn: sqlite3.Connection, student_id: str, section_id: str) -> Optional[Enrollment]:
        return self._fetch_one(
            conn,
            """
            SELECT * FROM enrollments
            WHERE student_id = ? AND section_id = ? AND status IN ('ACTIVE', 'WAITLISTED')
            """,
            (student_id, section_id),
        )

    def find_open_for_student(self, conn: sqlite3.Connection, student_id: str) -> List[Enrollment]:
        return self._fetch_all(
            conn,
            """
            SELECT * FROM enrollments
            WHERE student_id = ? AND status IN ('ACTIVE', 'WAITLISTED')
            ORDER BY created_at ASC
            """,
            (student_id,),
        )

    def count_seat_holders(self, conn: sqlite3.Connection, section_id: str, override_only: bool = False) -> int:
        """ACTIVE and COMPLETED rows both occupy a seat until term rollover."""
        query = """
            SELECT COUNT(*) AS count FROM enrollments
            WHERE section_id = ? AND status IN ('ACTIVE', 'COMPLETED')
        """
        if override_only:
            query += " AND override = 1"
        return conn.execute(query, (section_id,)).fetchone()["count"]

    def course_ids_by_status(self, conn: sqlite3.Connection, student_id: str,
                             status: EnrollmentStatus) -> Set[str]:
        rows = conn.execute(
            """
            SELECT DISTINCT s.course_id AS course_id
            FROM enrollments e JOIN sections s ON s.id = e.section_id
            WHERE e.student_id = ? AND e.status = ? AND s.course_id IS NOT NULL
            """,
            (student_id, status.value),
        ).fetchall()
        return {row["course_id"] for row in rows}


class WaitlistRepository(BaseRepository[WaitlistEntry]):
    """Repository for waitlist rows, keyed by explicit position."""

    def _entity_from_row(self, row: Dict[str, Any]) -> WaitlistEntry:
        return WaitlistEntry(
            section_id=row["section_id"],
            student_id=row["student_id"],
            position=row["position"],
            joined_at=_parse_ts(row["joined_at"]),
            entry_id=row["id"],
        )

    def insert(self, conn: sqlite3.Connection, entry: WaitlistEntry) -> WaitlistEntry:
        cursor = conn.execute(
            "INSERT INTO waitlist_entries (section_id, student_id, position, joined_at) VALUES (?, ?, ?, ?)",
            (entry.section_id, entry.student_id, entry.position, entry.joined_at.isoformat()),
        )
        entry.id = cursor.lastrowid
        return entry

    def count(self, conn: sqlite3.Connection, section_id: str) -> int:
        return conn.execute(
            "SELECT COUNT(*) AS count FROM waitlist_entries WHERE section_id = ?", (section_id,)
        ).fetchone()["count"]

    def find(self, conn: sqlite3.Connection, section_id: str, student_id: str) -> Optional[WaitlistEntry]:
        return self._fetch_one(
            conn,
            "SELECT * FROM waitlist_entries WHERE section_id = ? AND student_id = ?",
            (section_id, student_id),
        )

    def head(self, conn: sqlite3.Connection, section_id: str) -> Optional[WaitlistEntry]:
        return self._fetch_one(
            conn,
            """
            SELECT * FROM waitlist_entries WHERE section_id = ?
            ORDER BY position ASC, joined_at ASC, id ASC LIMIT 1
            """,
            (section_id,),
        )

    def list_for_section(self, conn: sqlite3.Connection, section_id: str) -> List[WaitlistEntry]:
        return self._fetch_all(
            conn,
            """
            SELECT * FROM waitlist_entries WHERE section_id = ?
            ORDER BY position ASC, joined_at ASC, id ASC
            """,
            (section_id,),
        )

    def delete(self, conn: sqlite3.Connection, entry_id: int) -> None:
        conn.execute("DELETE FROM waitlist_entries WHERE id = ?", (entry_id,))

    def shift_up_after(self, conn: sqlite3.Connection, section_id: str, position: int) -> int:
        """Close the gap left at ``position``. Returns how many entries moved."""
        cursor = conn.execute(
            "UPDATE waitlist_entries SET position = position - 1 WHERE section_id = ? AND position > ?",
            (section_id, position),
        )
        return cursor.rowcount


class AuditEventRepository(BaseRepository[AuditEvent]):
    """Append-only store for audit events."""

    def _entity_from_row(self, row: Dict[str, Any]) -> AuditEvent:
        event = AuditEvent(
            event_type=AuditEventType(row["event_type"]),
            section_id=row["section_id"],
            student_id=row["student_id"],
            prev_hash=row["prev_hash"],
            enrollment_id=row["enrollment_id"],
            actor_id=row["actor_id"],
            details=json.loads(row["details"]),
            timestamp=_parse_ts(row["created_at"]),
            entity_id=row["id"],
        )
        # Keep the stored hash so a tampered row fails verification.
        event._hash = row["hash"]
        return event

    def append(self, conn: sqlite3.Connection, event: AuditEvent) -> AuditEvent:
        conn.execute(
            """
            INSERT INTO audit_events (id, event_type, section_id, student_id, enrollment_id,
                                      actor_id, details, created_at, prev_hash, hash)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                event.id, event.event_type.value, event.section_id, event.student_id,
                event.enrollment_id, event.actor_id, json.dumps(event.details, sort_keys=True),
                event.timestamp.isoformat(), event.prev_hash, event.hash,
            ),
        )
        return event

    def last_hash(self, conn: sqlite3.Connection) -> Optional[str]:
        row = conn.execute("SELECT hash FROM audit_events ORDER BY seq DESC LIMIT 1").fetchone()
        return row["hash"] if row else None

    def find(self, conn: sqlite3.Connection, section_id: Optional[str] = None,
             student_id: Optional[str] = None) -> List[AuditEvent]:
        query = "SELECT * FROM audit_events WHERE 1 = 1"
        params: List[Any] = []
        if section_id is not None:
            query += " AND section_id = ?"
            params.append(section_id)
        if student_id is not None:
            query += " AND student_id = ?"
            params.append(student_id)
        query += " ORDER BY seq ASC"
        return self._fetch_all(conn, query, tuple(params))


class OverrideRecordRepository(BaseRepository[OverrideRecord]):
    """Append-only store for override records."""

    def _entity_from_row(self, row: Dict[str, Any]) -> OverrideRecord:
        record = OverrideRecord(
            actor_id=row["actor_id"],
            student_id=row["student_id"],
            section_id=row["section_id"],
            reason=row["reason"],
            outcome=OverrideOutcome(row["outcome"]),
            entity_id=row["id"],
        )
        record._created_at = _parse_ts(row["created_at"])
        record._updated_at = record._created_at
        record._timestamp = record._created_at
        return record

    def append(self, conn: sqlite3.Connection, record: OverrideRecord) -> OverrideRecord:
        conn.execute(
            """
            INSERT INTO override_records (id, actor_id, student_id, section_id, reason, outcome, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id, record.actor_id, record.student_id, record.section_id,
                record.reason, record.outcome.value, record.timestamp.isoformat(),
            ),
        )
        return record

    def find(self, conn: sqlite3.Connection, section_id: Optional[str] = None,
             student_id: Optional[str] = None) -> List[OverrideRecord]:
        query = "SELECT * FROM override_records WHERE 1 = 1"
        params: List[Any] = []
        if section_id is not None:
            query += " AND section_id = ?"
            params.append(section_id)
        if student_id is not None:
            query += " AND student_id = ?"
            params.append(student_id)
        query += " ORDER BY seq ASC"
        return self._fetch_all(conn, query, tuple(params))
