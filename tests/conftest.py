import pytest

from registrar.config import RegistrarSettings
from registrar.main import RegistrarPlatform
from registrar.services import StaticPrivilegeBoundary

ADMIN = "admin-1"


@pytest.fixture
def settings(tmp_path):
    return RegistrarSettings(
        database_path=str(tmp_path / "registrar.db"),
        lock_timeout_seconds=10.0,
        max_conflict_retries=3,
        retry_backoff_seconds=0.001,
        db_busy_timeout_seconds=2.0,
    )


@pytest.fixture
def platform(settings):
    return RegistrarPlatform(settings, privilege_boundary=StaticPrivilegeBoundary([ADMIN]))


@pytest.fixture
def service(platform):
    return platform.enrollment_service


@pytest.fixture
def make_section(platform):
    def _make(capacity=1, course_id=None, section_id=None):
        return platform.ledger.create_section(capacity, section_id=section_id, course_id=course_id).id
    return _make


@pytest.fixture
def positions(platform):
    def _positions(section_id):
        return [entry.position for entry in platform.waitlist.entries(section_id)]
    return _positions


@pytest.fixture
def admin():
    return ADMIN
