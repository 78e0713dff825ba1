"""
Waitlist queue: FIFO ordering of students waiting for a seat in one section.
"""

import logging
import sqlite3
from typing import List, Optional

from ..core.entities import WaitlistEntry, utcnow
from ..core.exceptions import AlreadyEnrolledError
from ..persistence.database import DatabaseManager
from ..persistence.repositories import WaitlistRepository

logger = logging.getLogger(__name__)


class WaitlistQueue:
    """Explicit-position waitlist per section.

    Positions for a section are always the contiguous sequence 1..N. Removal
    anywhere shifts every later entry up by one. Entries with equal
    ``joined_at`` keep their insertion order. Like the ledger, the mutating
    methods run inside the caller's transaction under the section lock.
    """

    def __init__(self, database: DatabaseManager):
        self._database = database
        self._entries = WaitlistRepository()

    def join(self, conn: sqlite3.Connection, student_id: str, section_id: str) -> WaitlistEntry:
        """Append a student at the tail of the section's queue."""
        if self._entries.find(conn, section_id, student_id) is not None:
            raise AlreadyEnrolledError(
                f"Student {student_id} is already waitlisted for section {section_id}",
                details={"student_id": student_id, "section_id": section_id},
            )
        entry = WaitlistEntry(
            section_id=section_id,
            student_id=student_id,
            position=self._entries.count(conn, section_id) + 1,
            joined_at=utcnow(),
        )
        self._entries.insert(conn, entry)
        logger.debug("Student %s joined waitlist of %s at position %d",
                     student_id, section_id, entry.position)
        return entry

    def leave(self, conn: sqlite3.Connection, student_id: str, section_id: str) -> Optional[WaitlistEntry]:
        """Remove a student's entry and shift later entries up by one."""
        entry = self._entries.find(conn, section_id, student_id)
        if entry is None:
            return None
        self._remove(conn, entry)
        return entry

    def promote_next(self, conn: sqlite3.Connection, section_id: str) -> Optional[WaitlistEntry]:
        """Remove and return the head of the queue (position 1)."""
        entry = self._entries.head(conn, section_id)
        if entry is None:
            return None
        self._remove(conn, entry)
        return entry

    def _remove(self, conn: sqlite3.Connection, entry: WaitlistEntry) -> None:
        self._entries.delete(conn, entry.id)
        moved = self._entries.shift_up_after(conn, entry.section_id, entry.position)
        logger.debug("Removed %s from waitlist of %s at position %d, renumbered %d",
                     entry.student_id, entry.section_id, entry.position, moved)

    def position_of(self, conn: sqlite3.Connection, student_id: str, section_id: str) -> Optional[int]:
        """Get the student's 1-based position, or None if not queued."""
        entry = self._entries.find(conn, section_id, student_id)
        return entry.position if entry else None

    def length(self, conn: sqlite3.Connection, section_id: str) -> int:
        """Get the number of students queued for a section."""
        return self._entries.count(conn, section_id)

    def entries(self, section_id: str) -> List[WaitlistEntry]:
        """Get the section's queue in order, from a read snapshot."""
        with self._database.snapshot() as conn:
            return self._entries.list_for_section(conn, section_id)
