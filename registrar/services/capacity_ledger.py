"""
Capacity ledger: the authoritative seat-count state of every section.
"""

import logging
import sqlite3
from dataclasses import dataclass
from typing import Optional

from ..core.entities import Section
from ..core.enums import ReservationOutcome, SectionStatus
from ..core.exceptions import SectionNotFoundError
from ..persistence.database import DatabaseManager
from ..persistence.repositories import SectionRepository, EnrollmentRepository

logger = logging.getLogger(__name__)


@dataclass
class CapacityReport:
    """Cross-check of a section's counter against its enrollment rows."""
    section_id: str
    capacity: int
    enrolled_count: int
    seat_holder_count: int
    override_count: int

    @property
    def within_bounds(self) -> bool:
        """enrolled_count may exceed capacity only by the number of overrides."""
        return self.enrolled_count <= self.capacity + self.override_count

    @property
    def overflow(self) -> int:
        """Seats taken beyond capacity."""
        return max(0, self.enrolled_count - self.capacity)

    @property
    def is_consistent(self) -> bool:
        """The counter matches the seat-holding rows it stands for."""
        return self.enrolled_count == self.seat_holder_count


class CapacityLedger:
    """Atomic reserve/release primitives over ``sections.enrolled_count``.

    The seat primitives take the connection of the caller's transaction and
    must be called while the caller holds the section's write lock.
    """

    def __init__(self, database: DatabaseManager):
        self._database = database
        self._sections = SectionRepository()
        self._enrollments = EnrollmentRepository()

    def get_section(self, conn: sqlite3.Connection, section_id: str) -> Section:
        """Get a section or raise SectionNotFoundError."""
        section = self._sections.find_by_id(conn, section_id)
        if section is None:
            raise SectionNotFoundError(f"Section {section_id} not found", details={"section_id": section_id})
        return section

    def try_reserve_seat(self, conn: sqlite3.Connection, section_id: str) -> ReservationOutcome:
        """Take one seat if ``enrolled_count < capacity``; never mutates when full."""
        if self._sections.increment_if_available(conn, section_id):
            return ReservationOutcome.ACCEPTED
        # Distinguish "full" from "missing".
        self.get_section(conn, section_id)
        return ReservationOutcome.FULL

    def release_seat(self, conn: sqlite3.Connection, section_id: str) -> bool:
        """Give one seat back (floor 0).

        Returns True when the section now has a free seat, which is the
        caller's cue to promote from the waitlist in the same transaction.
        """
        self.get_section(conn, section_id)
        self._sections.decrement(conn, section_id)
        return self.get_section(conn, section_id).available_seats > 0

    def force_reserve_seat(self, conn: sqlite3.Connection, section_id: str) -> Section:
        """Take one seat regardless of capacity. Override path only."""
        self.get_section(conn, section_id)
        self._sections.force_increment(conn, section_id)
        section = self.get_section(conn, section_id)
        if section.enrolled_count > section.capacity:
            logger.info("Section %s over capacity by override: %d/%d",
                        section_id, section.enrolled_count, section.capacity)
        return section

    def has_free_seat(self, conn: sqlite3.Connection, section_id: str) -> bool:
        """Check whether the section has at least one unreserved seat."""
        return self.get_section(conn, section_id).available_seats > 0

    # Catalog management owns section creation and closure; these are its
    # entry points into the ledger.

    def create_section(self, capacity: int, section_id: Optional[str] = None,
                       course_id: Optional[str] = None) -> Section:
        """Create an OPEN section with no seats taken."""
        section = Section(capacity=capacity, course_id=course_id, entity_id=section_id)
        with self._database.transaction() as conn:
            self._sections.insert(conn, section)
        logger.info("Created section %s with capacity %d", section.id, capacity)
        return section

    def close_section(self, section_id: str) -> Section:
        """Mark a section CLOSED; seats already held are kept."""
        with self._database.transaction() as conn:
            self.get_section(conn, section_id)
            self._sections.set_status(conn, section_id, SectionStatus.CLOSED)
            section = self.get_section(conn, section_id)
        logger.info("Closed section %s", section_id)
        return section

    def capacity_report(self, section_id: str) -> CapacityReport:
        """Cross-check the seat counter against enrollment rows."""
        with self._database.snapshot() as conn:
            section = self.get_section(conn, section_id)
            return CapacityReport(
                section_id=section_id,
                capacity=section.capacity,
                enrolled_count=section.enrolled_count,
                seat_holder_count=self._enrollments.count_seat_holders(conn, section_id),
                override_count=self._enrollments.count_seat_holders(conn, section_id, override_only=True),
            )
