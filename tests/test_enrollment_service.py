import threading
from contextlib import contextmanager

import pytest

from registrar.core.enums import AuditEventType, EnrollmentStatus
from registrar.core.exceptions import (
    AlreadyEnrolledError, ConcurrencyConflictError, InvalidTransitionError, LockTimeoutError,
    NotEnrolledError, SectionClosedError, SectionNotFoundError,
)
from registrar.main import RegistrarPlatform
from registrar.services.concurrency_manager import LockType


def assert_section_invariants(platform, section_id):
    report = platform.ledger.capacity_report(section_id)
    assert report.within_bounds
    assert report.is_consistent
    positions = [e.position for e in platform.waitlist.entries(section_id)]
    assert positions == list(range(1, len(positions) + 1))


def test_register_takes_free_seat(platform, service, make_section):
    section_id = make_section(capacity=2)
    result = service.register("s1", section_id)

    assert result.status is EnrollmentStatus.ACTIVE
    assert result.waitlist_position is None
    state = service.get_section_state(section_id)
    assert (state.capacity, state.enrolled_count, state.waitlist_count) == (2, 1, 0)
    assert_section_invariants(platform, section_id)


def test_scenario_waitlisted_student_promoted_on_drop(platform, service, make_section):
    section_id = make_section(capacity=1)
    first = service.register("a", section_id)
    second = service.register("b", section_id)

    assert second.status is EnrollmentStatus.WAITLISTED
    assert second.waitlist_position == 1

    dropped = service.drop(first.enrollment_id)

    assert dropped.status is EnrollmentStatus.DROPPED
    assert dropped.promoted == "b"
    assert service.get_enrollment(second.enrollment_id).status is EnrollmentStatus.ACTIVE
    state = service.get_section_state(section_id)
    assert state.enrolled_count == 1
    assert state.waitlist_count == 0
    assert_section_invariants(platform, section_id)


def test_scenario_concurrent_registrations_for_last_seat(platform, service, make_section):
    section_id = make_section(capacity=2)
    service.register("existing", section_id)
    barrier = threading.Barrier(2)
    results = {}

    def register(student_id):
        barrier.wait()
        results[student_id] = service.register(student_id, section_id)

    threads = [threading.Thread(target=register, args=(s,)) for s in ("x", "y")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    statuses = sorted(r.status.value for r in results.values())
    assert statuses == ["ACTIVE", "WAITLISTED"]
    waitlisted = [r for r in results.values() if r.status is EnrollmentStatus.WAITLISTED][0]
    assert waitlisted.waitlist_position == 1
    assert service.get_section_state(section_id).enrolled_count == 2
    assert_section_invariants(platform, section_id)


def test_many_concurrent_registrations_never_overfill(platform, service, make_section):
    section_id = make_section(capacity=3)
    barrier = threading.Barrier(10)
    errors = []

    def register(student_id):
        barrier.wait()
        try:
            service.register(student_id, section_id)
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=register, args=(f"s{i}",)) for i in range(10)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=20)

    assert errors == []
    state = service.get_section_state(section_id)
    assert state.enrolled_count == 3
    assert state.waitlist_count == 7
    assert_section_invariants(platform, section_id)


def test_scenario_leaving_waitlist_renumbers(platform, service, make_section, positions):
    section_id = make_section(capacity=1)
    service.register("holder", section_id)
    for student in ("w1", "w2", "w3", "w4", "w5"):
        service.register(student, section_id)

    result = service.remove_from_waitlist("w3", section_id)

    assert result.status is EnrollmentStatus.DROPPED
    entries = platform.waitlist.entries(section_id)
    assert [e.student_id for e in entries] == ["w1", "w2", "w4", "w5"]
    assert positions(section_id) == [1, 2, 3, 4]
    assert_section_invariants(platform, section_id)


def test_promotion_follows_join_order(platform, service, make_section):
    section_id = make_section(capacity=1)
    holder = service.register("holder", section_id)
    for student in ("first", "second", "third"):
        service.register(student, section_id)

    promoted = service.drop(holder.enrollment_id).promoted
    assert promoted == "first"

    registrations = service.get_student_registrations("first")
    promoted = service.drop(registrations[0]["id"]).promoted
    assert promoted == "second"
    assert [e.student_id for e in platform.waitlist.entries(section_id)] == ["third"]


def test_dropping_waitlisted_student_releases_no_seat(platform, service, make_section):
    section_id = make_section(capacity=1)
    service.register("holder", section_id)
    waiting = service.register("waiting", section_id)
    service.register("behind", section_id)

    result = service.drop(waiting.enrollment_id)

    assert result.promoted is None
    state = service.get_section_state(section_id)
    assert state.enrolled_count == 1
    assert state.waitlist_count == 1
    assert platform.waitlist.entries(section_id)[0].student_id == "behind"
    assert_section_invariants(platform, section_id)


def test_stale_waitlist_head_is_skipped(platform, service, make_section):
    section_id = make_section(capacity=1)
    holder = service.register("holder", section_id)
    with platform.database.transaction() as conn:
        platform.waitlist.join(conn, "ghost", section_id)
    service.register("real", section_id)

    result = service.drop(holder.enrollment_id)

    assert result.promoted == "real"
    assert platform.waitlist.entries(section_id) == []
    event_types = [e.event_type for e in platform.audit_log.events_for_section(section_id)]
    assert AuditEventType.PROMOTION_SKIPPED in event_types
    assert service.get_statistics()["promotions_skipped"] == 1
    assert_section_invariants(platform, section_id)


def test_register_twice_is_rejected(service, make_section):
    section_id = make_section(capacity=1)
    service.register("s1", section_id)
    with pytest.raises(AlreadyEnrolledError):
        service.register("s1", section_id)

    service.register("s2", section_id)
    with pytest.raises(AlreadyEnrolledError):
        service.register("s2", section_id)


def test_register_again_after_drop(service, make_section):
    section_id = make_section(capacity=1)
    first = service.register("s1", section_id)
    service.drop(first.enrollment_id)

    again = service.register("s1", section_id)

    assert again.status is EnrollmentStatus.ACTIVE
    assert again.enrollment_id != first.enrollment_id
    assert service.get_enrollment(first.enrollment_id).status is EnrollmentStatus.DROPPED


def test_closed_section_rejects_before_reserving(platform, service, make_section):
    section_id = make_section(capacity=5)
    platform.ledger.close_section(section_id)

    with pytest.raises(SectionClosedError):
        service.register("s1", section_id)
    assert service.get_section_state(section_id).enrolled_count == 0


def test_unknown_section_and_enrollment(service):
    with pytest.raises(SectionNotFoundError):
        service.register("s1", "nope")
    with pytest.raises(NotEnrolledError):
        service.drop("nope")
    with pytest.raises(NotEnrolledError):
        service.complete("nope", "A")


def test_drop_terminal_enrollment_is_not_enrolled(service, make_section):
    section_id = make_section(capacity=1)
    result = service.register("s1", section_id)
    service.drop(result.enrollment_id)

    with pytest.raises(NotEnrolledError):
        service.drop(result.enrollment_id)


def test_remove_from_waitlist_requires_waitlisted(service, make_section):
    section_id = make_section(capacity=1)
    service.register("s1", section_id)

    with pytest.raises(NotEnrolledError):
        service.remove_from_waitlist("s1", section_id)
    with pytest.raises(NotEnrolledError):
        service.remove_from_waitlist("stranger", section_id)


def test_complete_keeps_seat_consumed(platform, service, make_section):
    section_id = make_section(capacity=1)
    result = service.register("s1", section_id)
    service.register("s2", section_id)

    enrollment = service.complete(result.enrollment_id, "A-")

    assert enrollment.status is EnrollmentStatus.COMPLETED
    assert enrollment.grade == "A-"
    assert enrollment.ended_at is not None
    state = service.get_section_state(section_id)
    assert state.enrolled_count == 1
    assert state.waitlist_count == 1
    assert_section_invariants(platform, section_id)

    with pytest.raises(NotEnrolledError):
        service.drop(result.enrollment_id)


def test_complete_requires_active(service, make_section):
    section_id = make_section(capacity=1)
    active = service.register("s1", section_id)
    waiting = service.register("s2", section_id)

    with pytest.raises(InvalidTransitionError):
        service.complete(waiting.enrollment_id, "B")

    service.complete(active.enrollment_id, "B")
    with pytest.raises(InvalidTransitionError):
        service.complete(active.enrollment_id, "C")


def test_every_transition_is_audited(platform, service, make_section):
    section_id = make_section(capacity=1)
    first = service.register("a", section_id)
    service.register("b", section_id)
    service.register("c", section_id)
    service.remove_from_waitlist("c", section_id)
    service.drop(first.enrollment_id)

    event_types = [e.event_type for e in platform.audit_log.events_for_section(section_id)]
    assert event_types == [
        AuditEventType.ENROLLED,
        AuditEventType.WAITLISTED,
        AuditEventType.WAITLISTED,
        AuditEventType.WAITLIST_REMOVED,
        AuditEventType.DROPPED,
        AuditEventType.PROMOTED,
    ]


def test_student_registrations_include_waitlist_position(service, make_section):
    full = make_section(capacity=1)
    open_section = make_section(capacity=5)
    service.register("other", full)
    service.register("s1", full)
    service.register("s1", open_section)

    registrations = {r["section_id"]: r for r in service.get_student_registrations("s1")}

    assert registrations[full]["status"] == "WAITLISTED"
    assert registrations[full]["waitlist_position"] == 1
    assert registrations[open_section]["status"] == "ACTIVE"
    assert registrations[open_section]["waitlist_position"] is None


def test_lock_timeout_is_retryable_and_not_blocking(settings):
    quick = RegistrarPlatform(settings.model_copy(update={"lock_timeout_seconds": 0.1}))
    section_id = quick.ledger.create_section(1).id
    quick.concurrency_manager.acquire_lock(f"section:{section_id}", LockType.WRITE, "someone-else")

    with pytest.raises(LockTimeoutError) as exc_info:
        quick.enrollment_service.register("s1", section_id)
    assert exc_info.value.retryable


def test_transient_conflict_is_retried(platform, service, make_section, monkeypatch):
    section_id = make_section(capacity=1)
    real_transaction = platform.database.transaction
    calls = []

    @contextmanager
    def flaky_transaction():
        calls.append(1)
        if len(calls) == 1:
            raise ConcurrencyConflictError("database busy")
        with real_transaction() as conn:
            yield conn

    monkeypatch.setattr(platform.database, "transaction", flaky_transaction)

    result = service.register("s1", section_id)

    assert result.status is EnrollmentStatus.ACTIVE
    assert service.get_statistics()["conflicts_retried"] == 1
    assert service.get_section_state(section_id).enrolled_count == 1


def test_storage_contention_surfaces_conflict_after_retries(settings):
    contended = RegistrarPlatform(settings.model_copy(update={
        "db_busy_timeout_seconds": 0.05,
        "max_conflict_retries": 1,
    }))
    section_id = contended.ledger.create_section(1).id

    # Another process holding the database write lock.
    blocker = contended.database.connect()
    blocker.execute("BEGIN IMMEDIATE")
    try:
        with pytest.raises(ConcurrencyConflictError):
            contended.enrollment_service.register("s1", section_id)
    finally:
        blocker.execute("ROLLBACK")
        blocker.close()

    assert contended.enrollment_service.register("s1", section_id).status is EnrollmentStatus.ACTIVE
    assert contended.enrollment_service.get_statistics()["conflicts_retried"] == 1
