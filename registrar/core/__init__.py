"""
Core module containing the domain model, interfaces and error taxonomy.
"""

from .entities import *
from .interfaces import *
from .exceptions import *
from .enums import *

__all__ = [
    # Entities
    "AbstractEntity",
    "Section",
    "Enrollment",
    "WaitlistEntry",
    "OverrideRecord",
    "AuditEvent",

    # Interfaces
    "CourseRequisites",
    "CourseProfile",
    "RegistrationContext",
    "EnrollmentPolicy",
    "MaintenanceMode",
    "HoldRegistry",
    "RequisiteCatalog",
    "PrivilegeBoundary",
    "StudentDirectory",
    "TermCalendar",

    # Enums
    "SectionStatus",
    "EnrollmentStatus",
    "ReservationOutcome",
    "OverrideOutcome",
    "AuditEventType",

    # Exceptions
    "RegistrarException",
    "ValidationError",
    "PersistenceError",
    "SectionNotFoundError",
    "SectionClosedError",
    "SectionFullError",
    "AlreadyEnrolledError",
    "NotEnrolledError",
    "InvalidTransitionError",
    "MaintenanceModeError",
    "PrerequisiteNotMetError",
    "HoldOnAccountError",
    "ApprovalRequiredError",
    "DropDeadlinePassedError",
    "OverrideUnauthorizedError",
    "ConcurrencyConflictError",
    "LockTimeoutError",
]
