"""
Services module containing the allocator components.
"""

from .concurrency_manager import ConcurrencyManager, LockType
from .capacity_ledger import CapacityLedger, CapacityReport
from .waitlist_queue import WaitlistQueue
from .audit_log import AuditLog
from .enrollment_service import EnrollmentService, EnrollmentResult, DropResult, SectionState
from .override_authority import OverrideAuthority, OverrideResult
from .registration_gateway import (
    RegistrationGateway, ManualMaintenanceMode, MaintenanceWindow, InMemoryHoldRegistry,
    StaticRequisiteCatalog, StaticStudentDirectory, StaticTermCalendar, StaticPrivilegeBoundary,
    MaintenancePolicy, HoldPolicy, RequisitePolicy, ApprovalPolicy,
)

__all__ = [
    "ConcurrencyManager",
    "LockType",
    "CapacityLedger",
    "CapacityReport",
    "WaitlistQueue",
    "AuditLog",
    "EnrollmentService",
    "EnrollmentResult",
    "DropResult",
    "SectionState",
    "OverrideAuthority",
    "OverrideResult",
    "RegistrationGateway",
    "ManualMaintenanceMode",
    "MaintenanceWindow",
    "InMemoryHoldRegistry",
    "StaticRequisiteCatalog",
    "StaticStudentDirectory",
    "StaticTermCalendar",
    "StaticPrivilegeBoundary",
    "MaintenancePolicy",
    "HoldPolicy",
    "RequisitePolicy",
    "ApprovalPolicy",
]
