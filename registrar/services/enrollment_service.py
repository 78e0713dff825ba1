"""
Enrollment service: the (student, section) lifecycle on top of the ledger and waitlist.
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple, TypeVar

from ..config import RegistrarSettings
from ..core.entities import Enrollment
from ..core.enums import AuditEventType, EnrollmentStatus, ReservationOutcome, SectionStatus
from ..core.exceptions import (
    AlreadyEnrolledError, ConcurrencyConflictError, NotEnrolledError, SectionClosedError,
)
from ..persistence.database import DatabaseManager
from ..persistence.repositories import EnrollmentRepository
from .audit_log import AuditLog
from .capacity_ledger import CapacityLedger
from .concurrency_manager import ConcurrencyManager, LockType
from .waitlist_queue import WaitlistQueue

logger = logging.getLogger(__name__)

R = TypeVar('R')


def section_lock_key(section_id: str) -> str:
    return f"section:{section_id}"


@dataclass
class EnrollmentResult:
    """Result of a registration. WAITLISTED is a success, not an error."""
    status: EnrollmentStatus
    enrollment_id: str
    message: str
    waitlist_position: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'enrollment_id': self.enrollment_id,
            'message': self.message,
            'waitlist_position': self.waitlist_position,
        }


@dataclass
class DropResult:
    """Result of a drop; ``promoted`` is the student who took the freed seat."""
    status: EnrollmentStatus
    enrollment_id: str
    promoted: Optional[str] = None
    promoted_students: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'enrollment_id': self.enrollment_id,
            'promoted': self.promoted,
        }


@dataclass
class SectionState:
    """Read model of one section's seats and queue."""
    section_id: str
    capacity: int
    enrolled_count: int
    waitlist_count: int
    status: SectionStatus
    override_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'section_id': self.section_id,
            'capacity': self.capacity,
            'enrolled_count': self.enrolled_count,
            'waitlist_count': self.waitlist_count,
            'status': self.status.value,
            'override_count': self.override_count,
        }


class EnrollmentService:
    """State machine for enrollments: register, drop, complete, promote.

    Every mutation of a section runs while holding that section's WRITE lock
    and inside one storage transaction, so the seat counter, the enrollment
    row, the waitlist and the audit entries change together. Release followed
    by promotion is a single critical section: a freed seat is never visible
    to another request before the waitlist head has taken it.
    """

    def __init__(self, database: DatabaseManager, concurrency_manager: ConcurrencyManager,
                 ledger: CapacityLedger, waitlist: WaitlistQueue, audit_log: AuditLog,
                 settings: RegistrarSettings):
        self._database = database
        self._concurrency_manager = concurrency_manager
        self._ledger = ledger
        self._waitlist = waitlist
        self._audit_log = audit_log
        self._settings = settings
        self._enrollments = EnrollmentRepository()
        self._stats: Dict[str, int] = {
            'registrations': 0,
            'waitlisted': 0,
            'drops': 0,
            'waitlist_removals': 0,
            'promotions': 0,
            'promotions_skipped': 0,
            'completions': 0,
            'conflicts_retried': 0,
        }
        self._stats_lock = threading.Lock()

    def run_in_section(self, section_id: str, operation: Callable[[], R]) -> R:
        """Run ``operation`` under the section's WRITE lock with conflict retry.

        ``operation`` must open its own transaction so that each retry starts
        from a clean view of storage.
        """
        attempts = 0

        def attempt() -> R:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                self._bump('conflicts_retried')
            return operation()

        with self._concurrency_manager.lock(section_lock_key(section_id), LockType.WRITE,
                                            timeout=self._settings.lock_timeout_seconds):
            return self._concurrency_manager.execute_with_retry(
                attempt,
                max_retries=self._settings.max_conflict_retries,
                backoff_factor=self._settings.retry_backoff_seconds,
            )

    def register(self, student_id: str, section_id: str) -> EnrollmentResult:
        """Take a seat if one is free, otherwise join the waitlist."""
        return self.run_in_section(section_id, lambda: self._register_once(student_id, section_id))

    def _register_once(self, student_id: str, section_id: str) -> EnrollmentResult:
        with self._database.transaction() as conn:
            section = self._ledger.get_section(conn, section_id)
            if section.is_closed:
                raise SectionClosedError(f"Section {section_id} is closed",
                                         details={"section_id": section_id})
            if self._enrollments.find_open(conn, student_id, section_id) is not None:
                raise AlreadyEnrolledError(
                    f"Student {student_id} already holds an enrollment in section {section_id}",
                    details={"student_id": student_id, "section_id": section_id},
                )

            if self._ledger.try_reserve_seat(conn, section_id) is ReservationOutcome.ACCEPTED:
                enrollment = Enrollment(student_id, section_id, EnrollmentStatus.ACTIVE)
                self._enrollments.insert(conn, enrollment)
                self._audit_log.record_event(conn, AuditEventType.ENROLLED, section_id, student_id,
                                             enrollment_id=enrollment.id)
                result = EnrollmentResult(EnrollmentStatus.ACTIVE, enrollment.id,
                                          "Student enrolled successfully")
            else:
                entry = self._waitlist.join(conn, student_id, section_id)
                enrollment = Enrollment(student_id, section_id, EnrollmentStatus.WAITLISTED)
                self._enrollments.insert(conn, enrollment)
                self._audit_log.record_event(conn, AuditEventType.WAITLISTED, section_id, student_id,
                                             enrollment_id=enrollment.id,
                                             details={"position": entry.position})
                result = EnrollmentResult(EnrollmentStatus.WAITLISTED, enrollment.id,
                                          f"Student added to waitlist at position {entry.position}",
                                          waitlist_position=entry.position)

        if result.status is EnrollmentStatus.ACTIVE:
            self._bump('registrations')
        else:
            self._bump('waitlisted')
        logger.info("Student %s %s in section %s", student_id, result.status.value, section_id)
        return result

    def drop(self, enrollment_id: str) -> DropResult:
        """Drop an ACTIVE or WAITLISTED enrollment; a freed seat goes to the waitlist head."""
        section_id = self._section_of(enrollment_id)
        return self.run_in_section(section_id, lambda: self._drop_once(enrollment_id))

    def _drop_once(self, enrollment_id: str) -> DropResult:
        with self._database.transaction() as conn:
            enrollment = self._enrollments.find_by_id(conn, enrollment_id)
            if enrollment is None or enrollment.is_terminal:
                raise NotEnrolledError(f"Enrollment {enrollment_id} is not active or waitlisted",
                                       details={"enrollment_id": enrollment_id})
            section_id = enrollment.section_id
            previous_status = enrollment.status
            expected_version = enrollment.version
            enrollment.drop()
            self._enrollments.update(conn, enrollment, expected_version)
            self._audit_log.record_event(conn, AuditEventType.DROPPED, section_id, enrollment.student_id,
                                         enrollment_id=enrollment.id,
                                         details={"previous_status": previous_status.value})

            promoted: List[Enrollment] = []
            if previous_status is EnrollmentStatus.ACTIVE:
                if self._ledger.release_seat(conn, section_id):
                    promoted = self._promote_next(conn, section_id)
            else:
                self._waitlist.leave(conn, enrollment.student_id, section_id)

        self._bump('drops')
        self._bump('promotions', len(promoted))
        logger.info("Enrollment %s dropped from section %s (was %s)",
                    enrollment_id, section_id, previous_status.value)
        students = [e.student_id for e in promoted]
        return DropResult(EnrollmentStatus.DROPPED, enrollment_id,
                          promoted=students[0] if students else None,
                          promoted_students=students)

    def remove_from_waitlist(self, student_id: str, section_id: str) -> DropResult:
        return self.run_in_section(section_id,
                                   lambda: self._remove_from_waitlist_once(student_id, section_id))

    def _remove_from_waitlist_once(self, student_id: str, section_id: str) -> DropResult:
        with self._database.transaction() as conn:
            self._ledger.get_section(conn, section_id)
            enrollment = self._enrollments.find_open(conn, student_id, section_id)
            if enrollment is None or enrollment.status is not EnrollmentStatus.WAITLISTED:
                raise NotEnrolledError(
                    f"Student {student_id} is not on the waitlist of section {section_id}",
                    details={"student_id": student_id, "section_id": section_id},
                )
            expected_version = enrollment.version
            enrollment.drop()
            self._enrollments.update(conn, enrollment, expected_version)
            entry = self._waitlist.leave(conn, student_id, section_id)
            self._audit_log.record_event(conn, AuditEventType.WAITLIST_REMOVED, section_id, student_id,
                                         enrollment_id=enrollment.id,
                                         details={"position": entry.position if entry else None})

        self._bump('waitlist_removals')
        logger.info("Student %s removed from waitlist of section %s", student_id, section_id)
        return DropResult(EnrollmentStatus.DROPPED, enrollment.id)

    def complete(self, enrollment_id: str, grade: Optional[str] = None) -> Enrollment:
        """ACTIVE -> COMPLETED at term close. The seat stays consumed."""
        section_id = self._section_of(enrollment_id)
        return self.run_in_section(section_id, lambda: self._complete_once(enrollment_id, grade))

    def _complete_once(self, enrollment_id: str, grade: Optional[str]) -> Enrollment:
        with self._database.transaction() as conn:
            enrollment = self._enrollments.find_by_id(conn, enrollment_id)
            if enrollment is None:
                raise NotEnrolledError(f"Enrollment {enrollment_id} not found",
                                       details={"enrollment_id": enrollment_id})
            expected_version = enrollment.version
            enrollment.complete(grade)
            self._enrollments.update(conn, enrollment, expected_version)
            self._audit_log.record_event(conn, AuditEventType.COMPLETED, enrollment.section_id,
                                         enrollment.student_id, enrollment_id=enrollment.id,
                                         details={"grade": grade})

        self._bump('completions')
        logger.info("Enrollment %s completed with grade %s", enrollment_id, grade)
        return enrollment

    def promote_next(self, section_id: str) -> List[Enrollment]:
        """Fill any free seats from the waitlist."""
        def operation() -> List[Enrollment]:
            with self._database.transaction() as conn:
                self._ledger.get_section(conn, section_id)
                promoted = self._promote_next(conn, section_id)
            self._bump('promotions', len(promoted))
            return promoted

        return self.run_in_section(section_id, operation)

    def _promote_next(self, conn, section_id: str) -> List[Enrollment]:
        """Move waitlist heads into free seats while both exist.

        A head whose enrollment is no longer WAITLISTED is discarded and the
        next entry is tried. Must run in the caller's transaction under the
        section's WRITE lock.
        """
        promoted: List[Enrollment] = []
        while self._ledger.has_free_seat(conn, section_id):
            entry = self._waitlist.promote_next(conn, section_id)
            if entry is None:
                break

            enrollment = self._enrollments.find_open(conn, entry.student_id, section_id)
            if enrollment is None or enrollment.status is not EnrollmentStatus.WAITLISTED:
                logger.warning("Skipping stale waitlist entry for student %s in section %s",
                               entry.student_id, section_id)
                self._audit_log.record_event(conn, AuditEventType.PROMOTION_SKIPPED, section_id,
                                             entry.student_id,
                                             enrollment_id=enrollment.id if enrollment else None,
                                             details={"position": entry.position})
                self._bump('promotions_skipped')
                continue

            if self._ledger.try_reserve_seat(conn, section_id) is not ReservationOutcome.ACCEPTED:
                raise ConcurrencyConflictError(f"Seat in section {section_id} vanished during promotion",
                                               details={"section_id": section_id})
            expected_version = enrollment.version
            enrollment.activate()
            self._enrollments.update(conn, enrollment, expected_version)
            self._audit_log.record_event(conn, AuditEventType.PROMOTED, section_id, entry.student_id,
                                         enrollment_id=enrollment.id,
                                         details={"joined_at": entry.joined_at.isoformat()})
            logger.info("Promoted student %s from waitlist into section %s",
                        entry.student_id, section_id)
            promoted.append(enrollment)
        return promoted

    def _section_of(self, enrollment_id: str) -> str:
        with self._database.snapshot() as conn:
            enrollment = self._enrollments.find_by_id(conn, enrollment_id)
        if enrollment is None:
            raise NotEnrolledError(f"Enrollment {enrollment_id} not found",
                                   details={"enrollment_id": enrollment_id})
        return enrollment.section_id

    def get_enrollment(self, enrollment_id: str) -> Optional[Enrollment]:
        with self._database.snapshot() as conn:
            return self._enrollments.find_by_id(conn, enrollment_id)

    def get_section_state(self, section_id: str) -> SectionState:
        with self._concurrency_manager.lock(section_lock_key(section_id), LockType.READ,
                                            timeout=self._settings.lock_timeout_seconds):
            with self._database.snapshot() as conn:
                section = self._ledger.get_section(conn, section_id)
                return SectionState(
                    section_id=section.id,
                    capacity=section.capacity,
                    enrolled_count=section.enrolled_count,
                    waitlist_count=self._waitlist.length(conn, section_id),
                    status=section.status,
                    override_count=self._enrollments.count_seat_holders(conn, section_id,
                                                                        override_only=True),
                )

    def get_student_registrations(self, student_id: str) -> List[Dict[str, Any]]:
        """Open enrollments of a student, with waitlist positions where queued."""
        with self._database.snapshot() as conn:
            registrations = []
            for enrollment in self._enrollments.find_open_for_student(conn, student_id):
                data = enrollment.to_dict()
                data['waitlist_position'] = (
                    self._waitlist.position_of(conn, student_id, enrollment.section_id)
                    if enrollment.status is EnrollmentStatus.WAITLISTED else None
                )
                registrations.append(data)
            return registrations

    def course_history(self, student_id: str) -> Tuple[FrozenSet[str], FrozenSet[str]]:
        """Course ids the student has completed and is actively taking."""
        with self._database.snapshot() as conn:
            completed = self._enrollments.course_ids_by_status(conn, student_id, EnrollmentStatus.COMPLETED)
            active = self._enrollments.course_ids_by_status(conn, student_id, EnrollmentStatus.ACTIVE)
        return frozenset(completed), frozenset(active)

    def _bump(self, counter: str, amount: int = 1) -> None:
        with self._stats_lock:
            self._stats[counter] += amount

    def get_statistics(self) -> Dict[str, Any]:
        """Get enrollment statistics."""
        with self._stats_lock:
            return dict(self._stats)
