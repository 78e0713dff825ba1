"""
REST API for the Registrar enrollment core using FastAPI.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from ..core.entities import AuditEvent, Enrollment, OverrideRecord
from ..core.exceptions import (
    AlreadyEnrolledError, ApprovalRequiredError, ConcurrencyConflictError, DropDeadlinePassedError,
    HoldOnAccountError, InvalidTransitionError, MaintenanceModeError, NotEnrolledError,
    OverrideUnauthorizedError, PrerequisiteNotMetError, RegistrarException, SectionClosedError,
    SectionFullError, SectionNotFoundError, ValidationError,
)
from ..services import AuditLog, CapacityLedger, EnrollmentService, RegistrationGateway

logger = logging.getLogger(__name__)

# Most specific class first.
ERROR_STATUS_CODES = [
    (SectionNotFoundError, 404),
    (AlreadyEnrolledError, 409),
    (NotEnrolledError, 409),
    (InvalidTransitionError, 409),
    (SectionFullError, 409),
    (ConcurrencyConflictError, 409),
    (OverrideUnauthorizedError, 403),
    (HoldOnAccountError, 403),
    (ApprovalRequiredError, 403),
    (DropDeadlinePassedError, 403),
    (PrerequisiteNotMetError, 422),
    (ValidationError, 422),
    (SectionClosedError, 423),
    (MaintenanceModeError, 503),
]


def status_code_for(error: RegistrarException) -> int:
    for error_class, code in ERROR_STATUS_CODES:
        if isinstance(error, error_class):
            return code
    return 500


# Pydantic models for API
class RegistrationRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    section_id: str = Field(..., min_length=1)


class RegistrationResponse(BaseModel):
    status: str
    enrollment_id: str
    message: str
    waitlist_position: Optional[int] = None


class DropResponse(BaseModel):
    status: str
    enrollment_id: str
    promoted: Optional[str] = None


class CompleteRequest(BaseModel):
    grade: Optional[str] = Field(None, max_length=10)


class OverrideRequest(BaseModel):
    student_id: str = Field(..., min_length=1)
    section_id: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1, max_length=1000)


class OverrideResponse(BaseModel):
    status: str
    override: bool
    enrollment_id: str
    override_record_id: str
    replayed: bool


class SectionCreate(BaseModel):
    section_id: Optional[str] = Field(None, min_length=1)
    course_id: Optional[str] = Field(None, min_length=1)
    capacity: int = Field(..., ge=1)


class SectionStateResponse(BaseModel):
    section_id: str
    capacity: int
    enrolled_count: int
    waitlist_count: int
    status: str
    override_count: int


class EnrollmentResponse(BaseModel):
    id: str
    student_id: str
    section_id: str
    status: str
    override: bool
    grade: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    ended_at: Optional[datetime] = None
    version: int
    waitlist_position: Optional[int] = None


class AuditEventResponse(BaseModel):
    id: str
    event_type: str
    section_id: str
    student_id: str
    enrollment_id: Optional[str] = None
    actor_id: Optional[str] = None
    details: Dict[str, Any] = {}
    timestamp: datetime


class OverrideRecordResponse(BaseModel):
    id: str
    actor_id: str
    student_id: str
    section_id: str
    reason: str
    outcome: str
    timestamp: datetime


class AuditTrailResponse(BaseModel):
    events: List[AuditEventResponse]
    overrides: List[OverrideRecordResponse]


class RegistrarRestAPI:
    """REST API over the registration gateway.

    Handlers are synchronous so FastAPI runs them in its worker threadpool;
    the section locks they may wait on are thread locks.
    """

    def __init__(self, gateway: RegistrationGateway, enrollment_service: EnrollmentService,
                 ledger: CapacityLedger, audit_log: AuditLog):
        self._gateway = gateway
        self._enrollment_service = enrollment_service
        self._ledger = ledger
        self._audit_log = audit_log

        self.app = FastAPI(
            title="Registrar Enrollment API",
            description="Course-section enrollment, waitlist and override core",
            version="1.0.0",
            docs_url="/docs",
            redoc_url="/redoc"
        )

        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

        self._setup_error_handlers()
        self._setup_routes()

    def _setup_error_handlers(self):
        @self.app.exception_handler(RegistrarException)
        async def registrar_error_handler(request: Request, exc: RegistrarException):
            code = status_code_for(exc)
            headers = {"Retry-After": "1"} if exc.retryable else None
            if code >= 500:
                logger.error("Unhandled registrar error on %s: %s", request.url.path, exc.message)
            return JSONResponse(
                status_code=code,
                content={"error": exc.error_code, "message": exc.message, "retryable": exc.retryable},
                headers=headers,
            )

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/health", response_model=Dict[str, str])
        def health_check():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}

        @self.app.post("/enrollments", response_model=RegistrationResponse, status_code=status.HTTP_201_CREATED)
        def register(request: RegistrationRequest):
            """Register a student; a full section answers WAITLISTED."""
            result = self._gateway.register(request.student_id, request.section_id)
            return RegistrationResponse(**result.to_dict())

        @self.app.get("/enrollments/{enrollment_id}", response_model=EnrollmentResponse)
        def get_enrollment(enrollment_id: str):
            enrollment = self._enrollment_service.get_enrollment(enrollment_id)
            if not enrollment:
                raise HTTPException(status_code=404, detail="Enrollment not found")
            return self._enrollment_to_response(enrollment)

        @self.app.delete("/enrollments/{enrollment_id}", response_model=DropResponse)
        def drop(enrollment_id: str):
            result = self._gateway.drop(enrollment_id)
            return DropResponse(**result.to_dict())

        @self.app.post("/enrollments/{enrollment_id}/complete", response_model=EnrollmentResponse)
        def complete(enrollment_id: str, request: CompleteRequest):
            enrollment = self._gateway.complete(enrollment_id, request.grade)
            return self._enrollment_to_response(enrollment)

        @self.app.post("/overrides", response_model=OverrideResponse, status_code=status.HTTP_201_CREATED)
        def force_enroll(request: OverrideRequest, x_actor_id: str = Header(..., min_length=1)):
            """Force-enroll past capacity. The actor id comes from the upstream auth layer."""
            result = self._gateway.force_enroll(request.student_id, request.section_id,
                                                x_actor_id, request.reason)
            return OverrideResponse(**result.to_dict())

        @self.app.post("/sections", response_model=SectionStateResponse, status_code=status.HTTP_201_CREATED)
        def create_section(request: SectionCreate):
            """Catalog sync: publish a section to the enrollment core."""
            section = self._ledger.create_section(request.capacity, section_id=request.section_id,
                                                  course_id=request.course_id)
            return SectionStateResponse(**self._gateway.get_section_state(section.id).to_dict())

        @self.app.post("/sections/{section_id}/close", response_model=SectionStateResponse)
        def close_section(section_id: str):
            self._ledger.close_section(section_id)
            return SectionStateResponse(**self._gateway.get_section_state(section_id).to_dict())

        @self.app.get("/sections/{section_id}", response_model=SectionStateResponse)
        def get_section_state(section_id: str):
            return SectionStateResponse(**self._gateway.get_section_state(section_id).to_dict())

        @self.app.delete("/sections/{section_id}/waitlist/{student_id}", response_model=DropResponse)
        def remove_from_waitlist(section_id: str, student_id: str):
            result = self._gateway.remove_from_waitlist(student_id, section_id)
            return DropResponse(**result.to_dict())

        @self.app.get("/sections/{section_id}/audit", response_model=AuditTrailResponse)
        def section_audit(section_id: str):
            """Compliance view: transitions and overrides for one section."""
            return AuditTrailResponse(
                events=[self._event_to_response(e) for e in self._audit_log.events_for_section(section_id)],
                overrides=[self._override_to_response(r)
                           for r in self._audit_log.overrides_for_section(section_id)],
            )

        @self.app.get("/students/{student_id}/audit", response_model=AuditTrailResponse)
        def student_audit(student_id: str):
            return AuditTrailResponse(
                events=[self._event_to_response(e) for e in self._audit_log.events_for_student(student_id)],
                overrides=[self._override_to_response(r)
                           for r in self._audit_log.overrides_for_student(student_id)],
            )

        @self.app.get("/students/{student_id}/registrations", response_model=List[EnrollmentResponse])
        def student_registrations(student_id: str):
            return [EnrollmentResponse(**data)
                    for data in self._enrollment_service.get_student_registrations(student_id)]

        @self.app.get("/statistics", response_model=Dict[str, int])
        def statistics():
            return self._enrollment_service.get_statistics()

    def _enrollment_to_response(self, enrollment: Enrollment) -> EnrollmentResponse:
        return EnrollmentResponse(**enrollment.to_dict())

    def _event_to_response(self, event: AuditEvent) -> AuditEventResponse:
        return AuditEventResponse(
            id=event.id,
            event_type=event.event_type.value,
            section_id=event.section_id,
            student_id=event.student_id,
            enrollment_id=event.enrollment_id,
            actor_id=event.actor_id,
            details=event.details,
            timestamp=event.timestamp,
        )

    def _override_to_response(self, record: OverrideRecord) -> OverrideRecordResponse:
        return OverrideRecordResponse(**record.to_dict())
