from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from registrar.core.interfaces import CourseProfile


@pytest.fixture
def client(platform):
    return TestClient(platform.app)


@pytest.fixture
def section_id(client):
    response = client.post("/sections", json={"section_id": "CS101-01", "course_id": "CS101", "capacity": 1})
    assert response.status_code == 201
    return response.json()["section_id"]


def register(client, student_id, section_id):
    return client.post("/enrollments", json={"student_id": student_id, "section_id": section_id})


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_register_waitlist_and_promote(client, section_id):
    first = register(client, "a", section_id)
    second = register(client, "b", section_id)
    assert first.status_code == 201
    assert first.json()["status"] == "ACTIVE"
    assert second.json()["status"] == "WAITLISTED"
    assert second.json()["waitlist_position"] == 1

    dropped = client.delete(f"/enrollments/{first.json()['enrollment_id']}")
    assert dropped.status_code == 200
    assert dropped.json() == {
        "status": "DROPPED",
        "enrollment_id": first.json()["enrollment_id"],
        "promoted": "b",
    }

    state = client.get(f"/sections/{section_id}").json()
    assert state["enrolled_count"] == 1
    assert state["waitlist_count"] == 0


def test_error_mapping(client, section_id):
    register(client, "a", section_id)

    duplicate = register(client, "a", section_id)
    assert duplicate.status_code == 409
    assert duplicate.json() == {
        "error": "ALREADY_ENROLLED",
        "message": duplicate.json()["message"],
        "retryable": False,
    }

    assert register(client, "a", "missing").status_code == 404
    assert client.delete("/enrollments/missing").status_code == 409

    client.post(f"/sections/{section_id}/close")
    closed = register(client, "z", section_id)
    assert closed.status_code == 423
    assert closed.json()["error"] == "SECTION_CLOSED"


def test_maintenance_and_holds(platform, client, section_id):
    platform.holds.place_hold("held", "library fine")
    assert register(client, "held", section_id).status_code == 403

    platform.maintenance.enable()
    response = register(client, "a", section_id)
    assert response.status_code == 503
    assert response.json()["error"] == "MAINTENANCE_MODE"


def test_override_requires_actor_and_privilege(client, section_id, admin):
    register(client, "a", section_id)
    body = {"student_id": "c", "section_id": section_id, "reason": "capstone"}

    assert client.post("/overrides", json=body).status_code == 422
    assert client.post("/overrides", json=body, headers={"X-Actor-Id": "nobody"}).status_code == 403

    response = client.post("/overrides", json=body, headers={"X-Actor-Id": admin})
    assert response.status_code == 201
    assert response.json()["status"] == "ACTIVE"
    assert response.json()["override"] is True

    state = client.get(f"/sections/{section_id}").json()
    assert state["enrolled_count"] == 2
    assert state["override_count"] == 1

    audit = client.get(f"/sections/{section_id}/audit").json()
    assert [r["outcome"] for r in audit["overrides"]] == ["APPLIED"]
    assert audit["events"][-1]["event_type"] == "OVERRIDE_ENROLL"


def test_waitlist_removal_and_registrations(client, section_id):
    register(client, "a", section_id)
    register(client, "b", section_id)

    registrations = client.get("/students/b/registrations").json()
    assert len(registrations) == 1
    assert registrations[0]["waitlist_position"] == 1

    response = client.delete(f"/sections/{section_id}/waitlist/b")
    assert response.status_code == 200
    assert response.json()["status"] == "DROPPED"
    assert client.get("/students/b/registrations").json() == []
    assert client.delete(f"/sections/{section_id}/waitlist/b").status_code == 409


def test_complete_enrollment(client, section_id):
    enrollment_id = register(client, "a", section_id).json()["enrollment_id"]

    response = client.post(f"/enrollments/{enrollment_id}/complete", json={"grade": "A"})
    assert response.status_code == 200
    assert response.json()["status"] == "COMPLETED"
    assert response.json()["grade"] == "A"

    again = client.post(f"/enrollments/{enrollment_id}/complete", json={"grade": "B"})
    assert again.status_code == 409
    assert again.json()["error"] == "INVALID_TRANSITION"

    assert client.get(f"/enrollments/{enrollment_id}").json()["grade"] == "A"
    assert client.get("/enrollments/missing").status_code == 404


def test_drop_deadline_and_approval_errors(platform, client, section_id):
    enrollment_id = register(client, "a", section_id).json()["enrollment_id"]
    platform.calendar.set_drop_deadline(section_id, datetime.now(timezone.utc) - timedelta(hours=1))

    response = client.delete(f"/enrollments/{enrollment_id}")
    assert response.status_code == 403
    assert response.json()["error"] == "DROP_DEADLINE_PASSED"

    client.post("/sections", json={"section_id": "CS450-01", "course_id": "CS450", "capacity": 5})
    platform.catalog.set_course_profile("CS450", CourseProfile(level=400, credits=3))
    response = register(client, "a", "CS450-01")
    assert response.status_code == 403
    assert response.json()["error"] == "ADVISOR_APPROVAL_REQUIRED"
