"""
Main entry point for the Registrar enrollment core.
"""

import logging
from typing import Optional

from .config import RegistrarSettings, get_settings
from .core.interfaces import (
    HoldRegistry, MaintenanceMode, PrivilegeBoundary, RequisiteCatalog, StudentDirectory, TermCalendar,
)
from .core.logging import setup_logging
from .persistence import SQLiteDatabase
from .services import (
    AuditLog, CapacityLedger, ConcurrencyManager, EnrollmentService, InMemoryHoldRegistry,
    ManualMaintenanceMode, OverrideAuthority, RegistrationGateway, StaticPrivilegeBoundary,
    StaticRequisiteCatalog, StaticStudentDirectory, StaticTermCalendar, WaitlistQueue,
)
from .api.rest_api import RegistrarRestAPI

logger = logging.getLogger(__name__)


class RegistrarPlatform:
    """Wires storage, allocator services, gateway and REST API together.

    The external collaborators (maintenance flag, holds, course catalog,
    student directory, term calendar, privilege boundary) can be injected;
    in-memory versions are used when they are not.
    """

    def __init__(self, settings: Optional[RegistrarSettings] = None,
                 maintenance: Optional[MaintenanceMode] = None,
                 holds: Optional[HoldRegistry] = None,
                 catalog: Optional[RequisiteCatalog] = None,
                 privilege_boundary: Optional[PrivilegeBoundary] = None,
                 students: Optional[StudentDirectory] = None,
                 calendar: Optional[TermCalendar] = None):
        self._settings = settings or get_settings()
        self._maintenance = maintenance or ManualMaintenanceMode()
        self._holds = holds or InMemoryHoldRegistry()
        self._catalog = catalog or StaticRequisiteCatalog()
        self._privilege_boundary = privilege_boundary or StaticPrivilegeBoundary()
        self._students = students or StaticStudentDirectory()
        self._calendar = calendar or StaticTermCalendar()
        self._initialize_platform()

    def _initialize_platform(self):
        """Initialize the platform with all services."""
        logger.info("Initializing Registrar platform...")

        self.database = SQLiteDatabase(
            self._settings.database_path,
            busy_timeout=self._settings.db_busy_timeout_seconds,
        )
        logger.info("Database initialized at %s", self._settings.database_path)

        self.concurrency_manager = ConcurrencyManager(default_timeout=self._settings.lock_timeout_seconds)
        self.ledger = CapacityLedger(self.database)
        self.waitlist = WaitlistQueue(self.database)
        self.audit_log = AuditLog(self.database)
        self.enrollment_service = EnrollmentService(
            self.database, self.concurrency_manager, self.ledger, self.waitlist,
            self.audit_log, self._settings,
        )
        self.override_authority = OverrideAuthority(
            self.database, self.enrollment_service, self.ledger, self.waitlist,
            self.audit_log, self._privilege_boundary,
        )
        self.gateway = RegistrationGateway(
            self.database, self.enrollment_service, self.override_authority,
            self._maintenance, self._holds, self._catalog, self._students, self._calendar,
        )
        self.rest_api = RegistrarRestAPI(self.gateway, self.enrollment_service, self.ledger, self.audit_log)
        logger.info("Registrar platform initialized")

    @property
    def settings(self) -> RegistrarSettings:
        return self._settings

    @property
    def maintenance(self) -> MaintenanceMode:
        return self._maintenance

    @property
    def holds(self) -> HoldRegistry:
        return self._holds

    @property
    def catalog(self) -> RequisiteCatalog:
        return self._catalog

    @property
    def privilege_boundary(self) -> PrivilegeBoundary:
        return self._privilege_boundary

    @property
    def students(self) -> StudentDirectory:
        return self._students

    @property
    def calendar(self) -> TermCalendar:
        return self._calendar

    @property
    def app(self):
        return self.rest_api.app

    def start_rest_server(self, host: Optional[str] = None, port: Optional[int] = None):
        """Run the REST server until interrupted."""
        import uvicorn

        host = host or self._settings.api_host
        port = port or self._settings.api_port
        logger.info("Starting REST server on %s:%d", host, port)
        uvicorn.run(self.app, host=host, port=port, log_level=self._settings.log_level.lower())

    def run_demo(self):
        """Fill a one-seat section, waitlist a second student, then drop the first."""
        section = self.ledger.create_section(capacity=1, course_id="DEMO101")
        first = self.gateway.register("S001", section.id)
        second = self.gateway.register("S002", section.id)
        logger.info("S001 -> %s, S002 -> %s (position %s)",
                    first.status.value, second.status.value, second.waitlist_position)

        dropped = self.gateway.drop(first.enrollment_id)
        logger.info("S001 dropped, promoted: %s", dropped.promoted)
        logger.info("Section state: %s", self.gateway.get_section_state(section.id).to_dict())
        logger.info("Statistics: %s", self.enrollment_service.get_statistics())
        logger.info("Audit chain intact: %s", self.audit_log.verify_chain())


def main():
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Registrar enrollment and waitlist core")
    parser.add_argument("--host", type=str, help="REST server host")
    parser.add_argument("--port", type=int, help="REST server port")
    parser.add_argument("--database", type=str, help="SQLite database path")
    parser.add_argument("--demo", action="store_true", help="Run demo mode")

    args = parser.parse_args()

    settings = get_settings()
    if args.database:
        settings = settings.model_copy(update={"database_path": args.database})
    setup_logging(settings.log_level)

    platform = RegistrarPlatform(settings)
    try:
        if args.demo:
            platform.run_demo()
        else:
            platform.start_rest_server(args.host, args.port)
    except KeyboardInterrupt:
        logger.info("Shutting down...")


if __name__ == "__main__":
    main()
