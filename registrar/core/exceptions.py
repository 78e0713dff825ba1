"""
Custom exceptions for the Registrar core.
"""

from typing import Optional, Any, Dict


class RegistrarException(Exception):
    """Base exception for all Registrar-related errors."""

    default_code = "REGISTRAR_ERROR"
    retryable = False

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.default_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": self.error_code,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class ValidationError(RegistrarException):
    """Raised when data validation fails."""
    default_code = "VALIDATION_ERROR"


class PersistenceError(RegistrarException):
    """Raised when persistence operations fail."""
    default_code = "PERSISTENCE_ERROR"


class SectionNotFoundError(RegistrarException):
    """Raised when a section does not exist."""
    default_code = "SECTION_NOT_FOUND"


class SectionClosedError(RegistrarException):
    """Raised when registering into a CLOSED section."""
    default_code = "SECTION_CLOSED"


class SectionFullError(RegistrarException):
    """Soft condition: the section has no free seat.

    ``register`` never raises this; a full section puts the student on the
    waitlist instead. It exists for callers that want a hard failure.
    """
    default_code = "SECTION_FULL"


class AlreadyEnrolledError(RegistrarException):
    """Raised when the student already holds an ACTIVE or WAITLISTED enrollment."""
    default_code = "ALREADY_ENROLLED"


class NotEnrolledError(RegistrarException):
    """Raised when the enrollment does not exist or is already terminal."""
    default_code = "NOT_ENROLLED"


class InvalidTransitionError(RegistrarException):
    """Raised when an enrollment cannot move to the requested state."""
    default_code = "INVALID_TRANSITION"


class MaintenanceModeError(RegistrarException):
    """Raised when registration writes are disabled for maintenance."""
    default_code = "MAINTENANCE_MODE"


class PrerequisiteNotMetError(RegistrarException):
    """Raised when course requisites are not satisfied."""
    default_code = "PREREQUISITE_NOT_MET"


class HoldOnAccountError(RegistrarException):
    """Raised when the student's account carries a registration hold."""
    default_code = "HOLD_ON_ACCOUNT"


class ApprovalRequiredError(RegistrarException):
    """Raised when a course needs department or advisor approval first."""
    default_code = "APPROVAL_REQUIRED"


class DropDeadlinePassedError(RegistrarException):
    """Raised when dropping an ACTIVE enrollment after the term's drop deadline."""
    default_code = "DROP_DEADLINE_PASSED"


class OverrideUnauthorizedError(RegistrarException):
    """Raised when a non-privileged actor attempts an override."""
    default_code = "OVERRIDE_UNAUTHORIZED"


class ConcurrencyConflictError(RegistrarException):
    """Raised when a write conflict persists after bounded retries."""
    default_code = "CONCURRENCY_CONFLICT"
    retryable = True


class LockTimeoutError(ConcurrencyConflictError):
    """Raised when a section lock cannot be acquired in time."""
    default_code = "LOCK_TIMEOUT"

