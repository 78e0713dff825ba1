"""
Append-only audit trail for enrollment transitions and overrides.
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional

from ..core.entities import AuditEvent, OverrideRecord
from ..core.enums import AuditEventType, OverrideOutcome
from ..persistence.database import DatabaseManager
from ..persistence.repositories import AuditEventRepository, OverrideRecordRepository

logger = logging.getLogger(__name__)


class AuditLog:
    """Hash-chained event log plus the override record store.

    Writes join the caller's transaction so an audit entry exists exactly
    when the change it describes was committed. Each event carries the hash
    of its predecessor; :meth:`verify_chain` recomputes the chain end to end.
    """

    def __init__(self, database: DatabaseManager):
        self._database = database
        self._events = AuditEventRepository()
        self._overrides = OverrideRecordRepository()

    def record_event(self, conn: sqlite3.Connection, event_type: AuditEventType,
                     section_id: str, student_id: str,
                     enrollment_id: Optional[str] = None,
                     actor_id: Optional[str] = None,
                     details: Optional[Dict[str, Any]] = None) -> AuditEvent:
        event = AuditEvent(
            event_type=event_type,
            section_id=section_id,
            student_id=student_id,
            prev_hash=self._events.last_hash(conn),
            enrollment_id=enrollment_id,
            actor_id=actor_id,
            details=details,
        )
        self._events.append(conn, event)
        logger.debug("Audit %s section=%s student=%s", event_type.value, section_id, student_id)
        return event

    def record_override(self, conn: sqlite3.Connection, actor_id: str, student_id: str,
                        section_id: str, reason: str, outcome: OverrideOutcome) -> OverrideRecord:
        record = OverrideRecord(
            actor_id=actor_id,
            student_id=student_id,
            section_id=section_id,
            reason=reason,
            outcome=outcome,
        )
        self._overrides.append(conn, record)
        return record

    def verify_chain(self) -> bool:
        """Check every event's hash and its link to the previous event."""
        with self._database.snapshot() as conn:
            events = self._events.find(conn)
        prev_hash = None
        for event in events:
            if event.prev_hash != prev_hash or event.compute_hash() != event.hash:
                logger.warning("Audit chain broken at event %s", event.id)
                return False
            prev_hash = event.hash
        return True

    def events_for_section(self, section_id: str) -> List[AuditEvent]:
        with self._database.snapshot() as conn:
            return self._events.find(conn, section_id=section_id)

    def events_for_student(self, student_id: str) -> List[AuditEvent]:
        with self._database.snapshot() as conn:
            return self._events.find(conn, student_id=student_id)

    def overrides_for_section(self, section_id: str) -> List[OverrideRecord]:
        with self._database.snapshot() as conn:
            return self._overrides.find(conn, section_id=section_id)

    def overrides_for_student(self, student_id: str) -> List[OverrideRecord]:
        with self._database.snapshot() as conn:
            return self._overrides.find(conn, student_id=student_id)
