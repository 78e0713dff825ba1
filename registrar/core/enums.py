"""
Enumerations and constants for the Registrar core.
"""

from enum import Enum
from typing import Dict, FrozenSet


class SectionStatus(Enum):
    """Seat availability of a section."""
    OPEN = "OPEN"
    FULL = "FULL"
    CLOSED = "CLOSED"


class EnrollmentStatus(Enum):
    """Lifecycle state of a (student, section) relationship."""
    ACTIVE = "ACTIVE"
    WAITLISTED = "WAITLISTED"
    DROPPED = "DROPPED"
    COMPLETED = "COMPLETED"


# At most one enrollment per (student, section) may sit in one of these.
OPEN_ENROLLMENT_STATUSES: FrozenSet[EnrollmentStatus] = frozenset({
    EnrollmentStatus.ACTIVE,
    EnrollmentStatus.WAITLISTED,
})

TERMINAL_ENROLLMENT_STATUSES: FrozenSet[EnrollmentStatus] = frozenset({
    EnrollmentStatus.DROPPED,
    EnrollmentStatus.COMPLETED,
})


class ReservationOutcome(Enum):
    """Result of a conditional seat reservation."""
    ACCEPTED = "ACCEPTED"
    FULL = "FULL"


class OverrideOutcome(Enum):
    """What an override call actually did."""
    APPLIED = "APPLIED"
    ALREADY_APPLIED = "ALREADY_APPLIED"
    REJECTED = "REJECTED"


class AuditEventType(Enum):
    """Types of audit events."""
    ENROLLED = "ENROLLED"
    WAITLISTED = "WAITLISTED"
    DROPPED = "DROPPED"
    WAITLIST_REMOVED = "WAITLIST_REMOVED"
    PROMOTED = "PROMOTED"
    PROMOTION_SKIPPED = "PROMOTION_SKIPPED"
    COMPLETED = "COMPLETED"
    OVERRIDE_ENROLL = "OVERRIDE_ENROLL"


# Allowed enrollment lifecycle moves. Creation (NONE -> ACTIVE | WAITLISTED)
# is not a transition of an existing row.
ENROLLMENT_TRANSITIONS: Dict[EnrollmentStatus, FrozenSet[EnrollmentStatus]] = {
    EnrollmentStatus.WAITLISTED: frozenset({EnrollmentStatus.ACTIVE, EnrollmentStatus.DROPPED}),
    EnrollmentStatus.ACTIVE: frozenset({EnrollmentStatus.DROPPED, EnrollmentStatus.COMPLETED}),
    EnrollmentStatus.DROPPED: frozenset(),
    EnrollmentStatus.COMPLETED: frozenset(),
}
