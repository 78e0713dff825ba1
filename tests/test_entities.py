import pytest

from registrar.core.entities import AuditEvent, Enrollment, Section, WaitlistEntry
from registrar.core.enums import AuditEventType, EnrollmentStatus
from registrar.core.exceptions import InvalidTransitionError, ValidationError


def test_enrollment_lifecycle():
    enrollment = Enrollment("s1", "sec", EnrollmentStatus.WAITLISTED)
    enrollment.activate()
    assert enrollment.status is EnrollmentStatus.ACTIVE
    assert enrollment.version == 2

    enrollment.complete("A")
    assert enrollment.is_terminal
    assert enrollment.grade == "A"
    assert enrollment.ended_at == enrollment.updated_at

    with pytest.raises(InvalidTransitionError):
        enrollment.drop()


def test_terminal_states_have_no_exits():
    dropped = Enrollment("s1", "sec", EnrollmentStatus.ACTIVE)
    assert not dropped.is_terminal
    dropped.drop()
    assert dropped.is_terminal
    for status in EnrollmentStatus:
        assert not dropped.can_transition_to(status)


def test_override_flag_is_set_on_activation():
    enrollment = Enrollment("s1", "sec", EnrollmentStatus.WAITLISTED)
    enrollment.activate(override=True)
    assert enrollment.override


def test_section_validation():
    with pytest.raises(ValidationError):
        Section(capacity=0)
    section = Section(capacity=3)
    assert section.available_seats == 3
    assert not section.is_full


def test_waitlist_position_starts_at_one():
    with pytest.raises(ValidationError):
        WaitlistEntry("sec", "s1", position=0)


def test_audit_hash_covers_payload_and_predecessor():
    event = AuditEvent(AuditEventType.DROPPED, "sec", "s1", prev_hash="abc")
    same = AuditEvent(AuditEventType.DROPPED, "sec", "s1", prev_hash="abc",
                      timestamp=event.timestamp, entity_id=event.id)
    relinked = AuditEvent(AuditEventType.DROPPED, "sec", "s1", prev_hash="xyz",
                          timestamp=event.timestamp, entity_id=event.id)

    assert event.hash == same.hash
    assert event.hash != relinked.hash
