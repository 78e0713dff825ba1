"""
Core entities for the Registrar enrollment core.
"""

import hashlib
import json
import uuid
from abc import ABC
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from .enums import (
    SectionStatus, EnrollmentStatus, OverrideOutcome, AuditEventType,
    OPEN_ENROLLMENT_STATUSES, TERMINAL_ENROLLMENT_STATUSES, ENROLLMENT_TRANSITIONS,
)
from .exceptions import ValidationError, InvalidTransitionError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AbstractEntity(ABC):
    """Base abstract entity with universal ID, timestamps, and versioning."""

    def __init__(self, entity_id: Optional[str] = None):
        self._id = entity_id or str(uuid.uuid4())
        self._created_at = utcnow()
        self._updated_at = self._created_at
        self._version = 1

    @property
    def id(self) -> str:
        """Get the entity ID."""
        return self._id

    @property
    def created_at(self) -> datetime:
        """Get creation timestamp."""
        return self._created_at

    @property
    def updated_at(self) -> datetime:
        """Get last update timestamp."""
        return self._updated_at

    @property
    def version(self) -> int:
        """Get current version."""
        return self._version

    def touch(self) -> None:
        """Record a mutation."""
        self._updated_at = utcnow()
        self._version += 1

    def to_dict(self) -> Dict[str, Any]:
        """Convert entity to dictionary."""
        return {
            'id': self._id,
            'created_at': self._created_at.isoformat(),
            'updated_at': self._updated_at.isoformat(),
            'version': self._version,
        }

    def __str__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id})"

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(id={self._id}, version={self._version})"


class Section(AbstractEntity):
    """One scheduled offering of a course with a fixed seat capacity."""

    def __init__(self, capacity: int, course_id: Optional[str] = None, **kwargs):
        super().__init__(**kwargs)
        if capacity <= 0:
            raise ValidationError("Capacity must be greater than zero")
        self._capacity = capacity
        self._course_id = course_id
        self._enrolled_count = 0
        self._status = SectionStatus.OPEN

    @property
    def capacity(self) -> int:
        return self._capacity

    @property
    def course_id(self) -> Optional[str]:
        return self._course_id

    @property
    def enrolled_count(self) -> int:
        return self._enrolled_count

    @property
    def status(self) -> SectionStatus:
        return self._status

    @property
    def is_full(self) -> bool:
        return self._enrolled_count >= self._capacity

    @property
    def is_closed(self) -> bool:
        return self._status == SectionStatus.CLOSED

    @property
    def available_seats(self) -> int:
        return max(0, self._capacity - self._enrolled_count)

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            'capacity': self._capacity,
            'course_id': self._course_id,
            'enrolled_count': self._enrolled_count,
            'status': self._status.value,
        })
        return base_dict


class Enrollment(AbstractEntity):
    """The relationship and status between one student and one section."""

    def __init__(self, student_id: str, section_id: str,
                 status: EnrollmentStatus, override: bool = False, **kwargs):
        super().__init__(**kwargs)
        self._student_id = student_id
        self._section_id = section_id
        self._status = status
        self._override = override
        self._ended_at: Optional[datetime] = None
        self._grade: Optional[str] = None

    @property
    def student_id(self) -> str:
        return self._student_id

    @property
    def section_id(self) -> str:
        return self._section_id

    @property
    def status(self) -> EnrollmentStatus:
        return self._status

    @property
    def override(self) -> bool:
        return self._override

    @property
    def ended_at(self) -> Optional[datetime]:
        return self._ended_at

    @property
    def grade(self) -> Optional[str]:
        return self._grade

    @property
    def is_open(self) -> bool:
        return self._status in OPEN_ENROLLMENT_STATUSES

    @property
    def is_terminal(self) -> bool:
        return self._status in TERMINAL_ENROLLMENT_STATUSES

    def can_transition_to(self, status: EnrollmentStatus) -> bool:
        return status in ENROLLMENT_TRANSITIONS[self._status]

    def _transition(self, status: EnrollmentStatus) -> None:
        if not self.can_transition_to(status):
            raise InvalidTransitionError(
                f"Enrollment {self._id} cannot move from {self._status.value} to {status.value}",
                details={"enrollment_id": self._id, "from": self._status.value, "to": status.value},
            )
        self._status = status
        self.touch()

    def activate(self, override: bool = False) -> None:
        """WAITLISTED -> ACTIVE, by promotion or by override."""
        self._transition(EnrollmentStatus.ACTIVE)
        self._override = self._override or override

    def drop(self) -> None:
        self._transition(EnrollmentStatus.DROPPED)
        self._ended_at = self._updated_at

    def complete(self, grade: Optional[str]) -> None:
        self._transition(EnrollmentStatus.COMPLETED)
        self._ended_at = self._updated_at
        self._grade = grade

    def to_dict(self) -> Dict[str, Any]:
        base_dict = super().to_dict()
        base_dict.update({
            'student_id': self._student_id,
            'section_id': self._section_id,
            'status': self._status.value,
            'override': self._override,
            'ended_at': self._ended_at.isoformat() if self._ended_at else None,
            'grade': self._grade,
        })
        return base_dict


class WaitlistEntry:
    """A student's place in one section's waitlist."""

    def __init__(self, section_id: str, student_id: str, position: int,
                 joined_at: Optional[datetime] = None, entry_id: Optional[int] = None):
        if position < 1:
            raise ValidationError("Waitlist position must be at least 1")
        self.id = entry_id
        self.section_id = section_id
        self.student_id = student_id
        self.position = position
        self.joined_at = joined_at or utcnow()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'section_id': self.section_id,
            'student_id': self.student_id,
            'position': self.position,
            'joined_at': self.joined_at.isoformat(),
        }

    def __repr__(self) -> str:
        return f"WaitlistEntry(section_id={self.section_id}, student_id={self.student_id}, position={self.position})"


class OverrideRecord(AbstractEntity):
    """Immutable record of an administrative override."""

    def __init__(self, actor_id: str, student_id: str, section_id: str,
                 reason: str, outcome: OverrideOutcome, **kwargs):
        super().__init__(**kwargs)
        self._actor_id = actor_id
        self._student_id = student_id
        self._section_id = section_id
        self._reason = reason
        self._outcome = outcome
        self._timestamp = self._created_at

    @property
    def actor_id(self) -> str:
        return self._actor_id

    @property
    def student_id(self) -> str:
        return self._student_id

    @property
    def section_id(self) -> str:
        return self._section_id

    @property
    def reason(self) -> str:
        return self._reason

    @property
    def outcome(self) -> OverrideOutcome:
        return self._outcome

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self._id,
            'actor_id': self._actor_id,
            'student_id': self._student_id,
            'section_id': self._section_id,
            'reason': self._reason,
            'outcome': self._outcome.value,
            'timestamp': self._timestamp.isoformat(),
        }


class AuditEvent(AbstractEntity):
    """Immutable, hash-chained audit log entry."""

    def __init__(self, event_type: AuditEventType, section_id: str, student_id: str,
                 prev_hash: Optional[str], enrollment_id: Optional[str] = None,
                 actor_id: Optional[str] = None, details: Optional[Dict[str, Any]] = None,
                 timestamp: Optional[datetime] = None, **kwargs):
        super().__init__(**kwargs)
        self._event_type = event_type
        self._section_id = section_id
        self._student_id = student_id
        self._enrollment_id = enrollment_id
        self._actor_id = actor_id
        self._details = details or {}
        self._timestamp = timestamp or self._created_at
        self._prev_hash = prev_hash
        self._hash = self.compute_hash()

    @property
    def event_type(self) -> AuditEventType:
        return self._event_type

    @property
    def section_id(self) -> str:
        return self._section_id

    @property
    def student_id(self) -> str:
        return self._student_id

    @property
    def enrollment_id(self) -> Optional[str]:
        return self._enrollment_id

    @property
    def actor_id(self) -> Optional[str]:
        return self._actor_id

    @property
    def details(self) -> Dict[str, Any]:
        return self._details.copy()

    @property
    def timestamp(self) -> datetime:
        return self._timestamp

    @property
    def prev_hash(self) -> Optional[str]:
        return self._prev_hash

    @property
    def hash(self) -> str:
        return self._hash

    def compute_hash(self) -> str:
        h = hashlib.sha256()
        h.update(json.dumps({
            "id": self._id,
            "event_type": self._event_type.value,
            "section_id": self._section_id,
            "student_id": self._student_id,
            "enrollment_id": self._enrollment_id,
            "actor_id": self._actor_id,
            "details": self._details,
            "timestamp": self._timestamp.isoformat(),
            "prev_hash": self._prev_hash,
        }, sort_keys=True).encode())
        return h.hexdigest()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self._id,
            'event_type': self._event_type.value,
            'section_id': self._section_id,
            'student_id': self._student_id,
            'enrollment_id': self._enrollment_id,
            'actor_id': self._actor_id,
            'details': self._details,
            'timestamp': self._timestamp.isoformat(),
            'prev_hash': self._prev_hash,
            'hash': self._hash,
        }
