"""
Registration gateway: pre-checks in front of the enrollment state machine.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set

from ..core.entities import Enrollment, utcnow
from ..core.exceptions import (
    ApprovalRequiredError, DropDeadlinePassedError, HoldOnAccountError, MaintenanceModeError,
    PrerequisiteNotMetError, ValidationError,
)
from ..core.enums import EnrollmentStatus
from ..core.interfaces import (
    CourseProfile, CourseRequisites, EnrollmentPolicy, HoldRegistry, MaintenanceMode,
    PrivilegeBoundary, RegistrationContext, RequisiteCatalog, StudentDirectory, TermCalendar,
)
from ..persistence.database import DatabaseManager
from ..persistence.repositories import SectionRepository
from .enrollment_service import DropResult, EnrollmentResult, EnrollmentService, SectionState
from .override_authority import OverrideAuthority, OverrideResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MaintenanceWindow:
    """A scheduled maintenance period, inclusive of both ends."""
    title: str
    start_time: datetime
    end_time: datetime
    is_active: bool = True

    def covers(self, now: datetime) -> bool:
        return self.is_active and self.start_time <= now <= self.end_time


class ManualMaintenanceMode(MaintenanceMode):
    """Manual on/off switch plus any number of scheduled windows."""

    def __init__(self, enabled: bool = False, windows: Optional[Iterable[MaintenanceWindow]] = None):
        self._enabled = enabled
        self._windows: List[MaintenanceWindow] = list(windows or [])
        self._lock = threading.Lock()

    def enable(self) -> None:
        with self._lock:
            self._enabled = True
        logger.info("Maintenance mode enabled")

    def disable(self) -> None:
        with self._lock:
            self._enabled = False
        logger.info("Maintenance mode disabled")

    def schedule(self, window: MaintenanceWindow) -> None:
        if window.end_time < window.start_time:
            raise ValidationError("Maintenance window ends before it starts")
        with self._lock:
            self._windows.append(window)

    def _current_window(self, now: datetime) -> Optional[MaintenanceWindow]:
        for window in self._windows:
            if window.covers(now):
                return window
        return None

    def is_active(self, now: datetime) -> bool:
        with self._lock:
            return self._enabled or self._current_window(now) is not None

    def get_message(self, now: datetime) -> str:
        with self._lock:
            if self._enabled:
                return "The system is in maintenance mode. Write actions are currently disabled."
            window = self._current_window(now)
        if window is not None:
            return f"Maintenance is currently in progress: {window.title}"
        return ""


class InMemoryHoldRegistry(HoldRegistry):
    """Hold registry fed by the owning system (finance, advising...)."""

    def __init__(self, holds: Optional[Dict[str, List[str]]] = None):
        self._holds: Dict[str, List[str]] = {k: list(v) for k, v in (holds or {}).items()}
        self._lock = threading.Lock()

    def place_hold(self, student_id: str, description: str) -> None:
        with self._lock:
            self._holds.setdefault(student_id, []).append(description)

    def release_holds(self, student_id: str) -> None:
        with self._lock:
            self._holds.pop(student_id, None)

    def active_holds(self, student_id: str) -> List[str]:
        with self._lock:
            return list(self._holds.get(student_id, []))


class StaticRequisiteCatalog(RequisiteCatalog):
    """Requisites and course profiles from a catalog export keyed by course id."""

    def __init__(self, requisites: Optional[Dict[str, CourseRequisites]] = None,
                 profiles: Optional[Dict[str, CourseProfile]] = None):
        self._requisites = dict(requisites or {})
        self._profiles = dict(profiles or {})

    def set_requisites(self, course_id: str, requisites: CourseRequisites) -> None:
        self._requisites[course_id] = requisites

    def requisites_for(self, course_id: str) -> CourseRequisites:
        return self._requisites.get(course_id, CourseRequisites())

    def set_course_profile(self, course_id: str, profile: CourseProfile) -> None:
        self._profiles[course_id] = profile

    def course_profile(self, course_id: str) -> Optional[CourseProfile]:
        return self._profiles.get(course_id)


class StaticStudentDirectory(StudentDirectory):
    """Home departments from a student information system export."""

    def __init__(self, departments: Optional[Dict[str, str]] = None):
        self._departments = dict(departments or {})

    def set_department(self, student_id: str, department_id: str) -> None:
        self._departments[student_id] = department_id

    def department_of(self, student_id: str) -> Optional[str]:
        return self._departments.get(student_id)


class StaticTermCalendar(TermCalendar):
    """Drop deadlines per section, as published in the term calendar."""

    def __init__(self, drop_deadlines: Optional[Dict[str, datetime]] = None):
        self._drop_deadlines = dict(drop_deadlines or {})

    def set_drop_deadline(self, section_id: str, deadline: datetime) -> None:
        self._drop_deadlines[section_id] = deadline

    def drop_deadline(self, section_id: str) -> Optional[datetime]:
        return self._drop_deadlines.get(section_id)


class StaticPrivilegeBoundary(PrivilegeBoundary):
    """Privilege decision from a fixed set of administrator ids."""

    def __init__(self, privileged_actors: Iterable[str] = ()):
        self._privileged: Set[str] = set(privileged_actors)

    def is_privileged(self, actor_id: str) -> bool:
        return actor_id in self._privileged


class MaintenancePolicy(EnrollmentPolicy):
    """Rejects registration writes while maintenance is active."""

    def __init__(self, maintenance: MaintenanceMode):
        self._maintenance = maintenance

    def evaluate(self, context: RegistrationContext) -> None:
        if self._maintenance.is_active(context.now):
            raise MaintenanceModeError(self._maintenance.get_message(context.now)
                                       or "Registration is disabled for maintenance")

    def get_policy_name(self) -> str:
        return "MaintenancePolicy"


class HoldPolicy(EnrollmentPolicy):
    """Rejects students with any active account hold."""

    def __init__(self, holds: HoldRegistry):
        self._holds = holds

    def evaluate(self, context: RegistrationContext) -> None:
        holds = self._holds.active_holds(context.student_id)
        if holds:
            raise HoldOnAccountError(
                f"Student {context.student_id} has a hold on their account: {', '.join(holds)}",
                details={"student_id": context.student_id, "holds": holds},
            )

    def get_policy_name(self) -> str:
        return "HoldPolicy"


class RequisitePolicy(EnrollmentPolicy):
    """Checks prerequisites, corequisites and antirequisites.

    Prerequisites must be COMPLETED. Corequisites must be COMPLETED or
    currently ACTIVE. Antirequisites must be neither.
    """

    def __init__(self, catalog: RequisiteCatalog):
        self._catalog = catalog

    def evaluate(self, context: RegistrationContext) -> None:
        if context.course_id is None:
            return
        requisites = self._catalog.requisites_for(context.course_id)
        taken = context.completed_course_ids | context.active_course_ids

        missing_prerequisites = sorted(requisites.prerequisites - context.completed_course_ids)
        missing_corequisites = sorted(requisites.corequisites - taken)
        conflicting = sorted(requisites.antirequisites & taken)

        if missing_prerequisites or missing_corequisites or conflicting:
            problems = []
            if missing_prerequisites:
                problems.append(f"missing prerequisites {', '.join(missing_prerequisites)}")
            if missing_corequisites:
                problems.append(f"missing corequisites {', '.join(missing_corequisites)}")
            if conflicting:
                problems.append(f"antirequisites taken {', '.join(conflicting)}")
            raise PrerequisiteNotMetError(
                f"Cannot register for {context.course_id}: {'; '.join(problems)}",
                details={
                    "course_id": context.course_id,
                    "missing_prerequisites": missing_prerequisites,
                    "missing_corequisites": missing_corequisites,
                    "antirequisites": conflicting,
                },
            )

    def get_policy_name(self) -> str:
        return "RequisitePolicy"


class ApprovalPolicy(EnrollmentPolicy):
    """Courses that need department or advisor sign-off before registration.

    A student from another department needs department approval for any
    course at level 200 or above. Level 400 courses need advisor approval
    until the student has completed 24 credits. Courses without a catalog
    profile are not checked.
    """

    DEPARTMENT_APPROVAL_LEVEL = 200
    ADVISOR_APPROVAL_LEVEL = 400
    ADVISOR_MIN_CREDITS = 24

    def __init__(self, catalog: RequisiteCatalog, students: StudentDirectory):
        self._catalog = catalog
        self._students = students

    def completed_credits(self, completed_course_ids: Iterable[str]) -> int:
        total = 0
        for course_id in completed_course_ids:
            profile = self._catalog.course_profile(course_id)
            if profile is not None:
                total += profile.credits
        return total

    def evaluate(self, context: RegistrationContext) -> None:
        if context.course_id is None:
            return
        profile = self._catalog.course_profile(context.course_id)
        if profile is None:
            return

        home_department = self._students.department_of(context.student_id)
        if (home_department and profile.department_id
                and home_department != profile.department_id
                and profile.level >= self.DEPARTMENT_APPROVAL_LEVEL):
            raise ApprovalRequiredError(
                f"Department approval required for {context.course_id}",
                error_code="DEPARTMENT_APPROVAL_REQUIRED",
                details={"course_id": context.course_id, "department_id": profile.department_id},
            )

        if profile.level >= self.ADVISOR_APPROVAL_LEVEL:
            credits = self.completed_credits(context.completed_course_ids)
            if credits < self.ADVISOR_MIN_CREDITS:
                raise ApprovalRequiredError(
                    f"Advisor approval required for {context.course_id}: "
                    f"{credits} of {self.ADVISOR_MIN_CREDITS} credits completed",
                    error_code="ADVISOR_APPROVAL_REQUIRED",
                    details={"course_id": context.course_id, "completed_credits": credits},
                )

    def get_policy_name(self) -> str:
        return "ApprovalPolicy"


class RegistrationGateway:
    """Entry point for callers of the enrollment core.

    Registration requests pass maintenance, hold, requisite and approval
    checks first; the external sources are consulted on every call,
    immediately before the section's critical section is entered. Drops of
    ACTIVE enrollments are refused after the term's drop deadline. Overrides
    skip every check and go straight to the override authority.
    """

    def __init__(self, database: DatabaseManager, enrollment_service: EnrollmentService,
                 override_authority: OverrideAuthority, maintenance: MaintenanceMode,
                 holds: HoldRegistry, catalog: RequisiteCatalog,
                 students: StudentDirectory, calendar: TermCalendar):
        self._database = database
        self._enrollment_service = enrollment_service
        self._override_authority = override_authority
        self._maintenance = maintenance
        self._calendar = calendar
        self._policies: List[EnrollmentPolicy] = [
            MaintenancePolicy(maintenance),
            HoldPolicy(holds),
            RequisitePolicy(catalog),
            ApprovalPolicy(catalog, students),
        ]
        self._sections = SectionRepository()

    def add_policy(self, policy: EnrollmentPolicy) -> None:
        """Add an enrollment policy, evaluated after the built-in ones."""
        self._policies.append(policy)

    def remove_policy(self, policy_name: str) -> None:
        """Remove an enrollment policy by name."""
        self._policies = [p for p in self._policies if p.get_policy_name() != policy_name]

    def _build_context(self, student_id: str, section_id: str) -> RegistrationContext:
        with self._database.snapshot() as conn:
            section = self._sections.find_by_id(conn, section_id)
        completed, active = self._enrollment_service.course_history(student_id)
        return RegistrationContext(
            student_id=student_id,
            section_id=section_id,
            course_id=section.course_id if section else None,
            completed_course_ids=completed,
            active_course_ids=active,
            now=utcnow(),
        )

    def _evaluate_policies(self, student_id: str, section_id: str) -> None:
        context = self._build_context(student_id, section_id)
        for policy in self._policies:
            try:
                policy.evaluate(context)
            except (MaintenanceModeError, HoldOnAccountError, PrerequisiteNotMetError,
                    ApprovalRequiredError) as e:
                logger.info("Registration of %s in %s rejected by %s: %s",
                            student_id, section_id, policy.get_policy_name(), e.message)
                raise

    def _check_maintenance(self) -> None:
        now = utcnow()
        if self._maintenance.is_active(now):
            raise MaintenanceModeError(self._maintenance.get_message(now)
                                       or "Registration is disabled for maintenance")

    def _check_drop_deadline(self, enrollment_id: str) -> None:
        enrollment = self._enrollment_service.get_enrollment(enrollment_id)
        if enrollment is None or enrollment.status is not EnrollmentStatus.ACTIVE:
            return
        deadline = self._calendar.drop_deadline(enrollment.section_id)
        if deadline is not None and deadline < utcnow():
            logger.info("Drop of %s refused, deadline for section %s was %s",
                        enrollment_id, enrollment.section_id, deadline.isoformat())
            raise DropDeadlinePassedError(
                f"Drop deadline for section {enrollment.section_id} passed on {deadline.date().isoformat()}",
                details={"section_id": enrollment.section_id, "drop_deadline": deadline.isoformat()},
            )

    def register(self, student_id: str, section_id: str) -> EnrollmentResult:
        self._evaluate_policies(student_id, section_id)
        return self._enrollment_service.register(student_id, section_id)

    def drop(self, enrollment_id: str) -> DropResult:
        self._check_maintenance()
        self._check_drop_deadline(enrollment_id)
        return self._enrollment_service.drop(enrollment_id)

    def remove_from_waitlist(self, student_id: str, section_id: str) -> DropResult:
        self._check_maintenance()
        return self._enrollment_service.remove_from_waitlist(student_id, section_id)

    def complete(self, enrollment_id: str, grade: Optional[str] = None) -> Enrollment:
        self._check_maintenance()
        return self._enrollment_service.complete(enrollment_id, grade)

    def force_enroll(self, student_id: str, section_id: str, actor_id: str, reason: str) -> OverrideResult:
        return self._override_authority.force_enroll(student_id, section_id, actor_id, reason)

    def get_section_state(self, section_id: str) -> SectionState:
        return self._enrollment_service.get_section_state(section_id)
