"""
Persistence module for the enrollment store.
"""

from .database import DatabaseManager, SQLiteDatabase
from .repositories import (
    SectionRepository, EnrollmentRepository, WaitlistRepository,
    AuditEventRepository, OverrideRecordRepository,
)

__all__ = [
    "DatabaseManager",
    "SQLiteDatabase",
    "SectionRepository",
    "EnrollmentRepository",
    "WaitlistRepository",
    "AuditEventRepository",
    "OverrideRecordRepository",
]
