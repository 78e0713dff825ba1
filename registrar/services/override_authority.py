"""
Override authority: audited, privileged force-enrollment past capacity.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from ..core.entities import Enrollment
from ..core.enums import AuditEventType, EnrollmentStatus, OverrideOutcome
from ..core.exceptions import (
    AlreadyEnrolledError, OverrideUnauthorizedError, RegistrarException, SectionClosedError,
    ValidationError,
)
from ..core.interfaces import PrivilegeBoundary
from ..persistence.database import DatabaseManager
from ..persistence.repositories import EnrollmentRepository
from .audit_log import AuditLog
from .capacity_ledger import CapacityLedger
from .enrollment_service import EnrollmentService
from .waitlist_queue import WaitlistQueue

logger = logging.getLogger(__name__)


@dataclass
class OverrideResult:
    """Result of a force-enrollment."""
    status: EnrollmentStatus
    enrollment_id: str
    override_record_id: str
    override: bool = True
    replayed: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'override': self.override,
            'enrollment_id': self.enrollment_id,
            'override_record_id': self.override_record_id,
            'replayed': self.replayed,
        }


class OverrideAuthority:
    """Force-enrolls a student regardless of capacity, holds and requisites.

    The caller's privilege is decided by the injected
    :class:`PrivilegeBoundary`; an unprivileged call writes nothing. Every
    privileged call leaves an :class:`OverrideRecord`, whatever its outcome.
    The seat is taken through the ledger's unconditional reserve and the
    enrollment is flagged ``override`` so the capacity overflow it causes is
    accounted for.
    """

    def __init__(self, database: DatabaseManager, enrollment_service: EnrollmentService,
                 ledger: CapacityLedger, waitlist: WaitlistQueue, audit_log: AuditLog,
                 privilege_boundary: PrivilegeBoundary):
        self._database = database
        self._enrollment_service = enrollment_service
        self._ledger = ledger
        self._waitlist = waitlist
        self._audit_log = audit_log
        self._privilege_boundary = privilege_boundary
        self._enrollments = EnrollmentRepository()

    def force_enroll(self, student_id: str, section_id: str, actor_id: str, reason: str) -> OverrideResult:
        if not self._privilege_boundary.is_privileged(actor_id):
            logger.warning("Rejected override by unprivileged actor %s for student %s in section %s",
                           actor_id, student_id, section_id)
            raise OverrideUnauthorizedError(
                f"Actor {actor_id} may not override enrollment rules",
                details={"actor_id": actor_id},
            )
        if not reason or not reason.strip():
            raise ValidationError("An override requires a reason")

        return self._enrollment_service.run_in_section(
            section_id,
            lambda: self._force_enroll_once(student_id, section_id, actor_id, reason.strip()),
        )

    def _force_enroll_once(self, student_id: str, section_id: str,
                           actor_id: str, reason: str) -> OverrideResult:
        rejection: Optional[RegistrarException] = None
        result: Optional[OverrideResult] = None

        with self._database.transaction() as conn:
            section = self._ledger.get_section(conn, section_id)
            existing = self._enrollments.find_open(conn, student_id, section_id)
            if section.is_closed:
                # Committed even though the call fails.
                self._audit_log.record_override(conn, actor_id, student_id, section_id,
                                                reason, OverrideOutcome.REJECTED)
                rejection = SectionClosedError(f"Section {section_id} is closed",
                                               details={"section_id": section_id})
            elif existing is not None and existing.status is EnrollmentStatus.ACTIVE:
                if existing.override:
                    record = self._audit_log.record_override(conn, actor_id, student_id, section_id,
                                                             reason, OverrideOutcome.ALREADY_APPLIED)
                    result = OverrideResult(EnrollmentStatus.ACTIVE, existing.id, record.id, replayed=True)
                else:
                    self._audit_log.record_override(conn, actor_id, student_id, section_id,
                                                    reason, OverrideOutcome.REJECTED)
                    rejection = AlreadyEnrolledError(
                        f"Student {student_id} is already enrolled in section {section_id}",
                        details={"student_id": student_id, "section_id": section_id},
                    )
            else:
                if existing is not None:
                    self._waitlist.leave(conn, student_id, section_id)
                    expected_version = existing.version
                    existing.activate(override=True)
                    self._enrollments.update(conn, existing, expected_version)
                    enrollment = existing
                else:
                    enrollment = Enrollment(student_id, section_id, EnrollmentStatus.ACTIVE, override=True)
                    self._enrollments.insert(conn, enrollment)
                section = self._ledger.force_reserve_seat(conn, section_id)
                record = self._audit_log.record_override(conn, actor_id, student_id, section_id,
                                                         reason, OverrideOutcome.APPLIED)
                self._audit_log.record_event(
                    conn, AuditEventType.OVERRIDE_ENROLL, section_id, student_id,
                    enrollment_id=enrollment.id, actor_id=actor_id,
                    details={
                        "reason": reason,
                        "override_record_id": record.id,
                        "from_waitlist": existing is not None,
                        "enrolled_count": section.enrolled_count,
                        "capacity": section.capacity,
                    },
                )
                result = OverrideResult(EnrollmentStatus.ACTIVE, enrollment.id, record.id)

        if rejection is not None:
            logger.warning("Override by %s rejected: %s", actor_id, rejection.message)
            raise rejection
        if result.replayed:
            logger.info("Override by %s for student %s in section %s already applied",
                        actor_id, student_id, section_id)
        else:
            logger.info("Override by %s enrolled student %s in section %s",
                        actor_id, student_id, section_id)
        return result
