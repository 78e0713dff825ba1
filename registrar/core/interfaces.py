"""
Interfaces for the collaborators the enrollment core consumes but does not own.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import FrozenSet, List, Optional


@dataclass(frozen=True)
class CourseRequisites:
    """Requisite course ids for one course."""
    prerequisites: FrozenSet[str] = field(default_factory=frozenset)
    corequisites: FrozenSet[str] = field(default_factory=frozenset)
    antirequisites: FrozenSet[str] = field(default_factory=frozenset)


@dataclass(frozen=True)
class CourseProfile:
    """Catalog facts about a course used by approval checks."""
    level: int
    credits: int = 0
    department_id: Optional[str] = None


@dataclass(frozen=True)
class RegistrationContext:
    """Everything a registration policy may look at for one request."""
    student_id: str
    section_id: str
    course_id: Optional[str]
    completed_course_ids: FrozenSet[str]
    active_course_ids: FrozenSet[str]
    now: datetime


class EnrollmentPolicy(ABC):
    """Abstract base class for pre-registration checks."""

    @abstractmethod
    def evaluate(self, context: RegistrationContext) -> None:
        """Raise a RegistrarException subclass if the request must be rejected."""
        pass

    @abstractmethod
    def get_policy_name(self) -> str:
        """Get the name of this policy."""
        pass


class MaintenanceMode(ABC):
    """Source of the maintenance-mode flag."""

    @abstractmethod
    def is_active(self, now: datetime) -> bool:
        """Check whether registration writes are disabled at ``now``."""
        pass

    @abstractmethod
    def get_message(self, now: datetime) -> str:
        """Human-readable reason for the current maintenance state."""
        pass


class HoldRegistry(ABC):
    """Source of account holds (financial, advising, conduct...)."""

    @abstractmethod
    def active_holds(self, student_id: str) -> List[str]:
        """Get the descriptions of holds currently blocking registration."""
        pass


class RequisiteCatalog(ABC):
    """Catalog lookup for course requisites."""

    @abstractmethod
    def requisites_for(self, course_id: str) -> CourseRequisites:
        """Get requisites for a course; empty when the course has none."""
        pass

    @abstractmethod
    def course_profile(self, course_id: str) -> Optional[CourseProfile]:
        """Get level, credits and department for a course, if the catalog knows it."""
        pass


class StudentDirectory(ABC):
    """Source of student records owned by the student information system."""

    @abstractmethod
    def department_of(self, student_id: str) -> Optional[str]:
        """Get the id of the student's home department."""
        pass


class TermCalendar(ABC):
    """Source of term dates for sections."""

    @abstractmethod
    def drop_deadline(self, section_id: str) -> Optional[datetime]:
        """Get the last moment an ACTIVE enrollment in the section may be dropped."""
        pass


class PrivilegeBoundary(ABC):
    """Upstream authorization decision for administrative overrides."""

    @abstractmethod
    def is_privileged(self, actor_id: str) -> bool:
        """Check if the already-authenticated actor may force-enroll."""
        pass
