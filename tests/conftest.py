"""Shared fixtures: an in-memory database, a service and a few users."""

import pytest

from gxp_elog import Database, ELogConfig, ELogService, set_config

PASSWORDS = {
    "admin": "admin",
    "jdoe": "operator-pass-1",
    "qauser": "qa-password-1",
    "sup": "supervisor-pass-1",
}


@pytest.fixture
def passwords():
    """Plaintext passwords of the fixture users."""
    return dict(PASSWORDS)


@pytest.fixture
def config():
    """Development configuration with an in-memory database."""
    cfg = ELogConfig(
        environment="development",
        database_url="sqlite:///:memory:",
        timezone="UTC",
    )
    set_config(cfg)
    yield cfg
    set_config(None)


@pytest.fixture
def database(config):
    """Fresh in-memory database with all tables."""
    db = Database.from_config(config)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def service(database, config):
    return ELogService(database, config)


@pytest.fixture
def admin(service):
    """Logged-in default administrator."""
    service.ensure_admin_user()
    return service.login("admin", PASSWORDS["admin"])


def _create_and_login(service, admin, username, full_name, role):
    service.create_user(
        admin,
        {
            "username": username,
            "password": PASSWORDS[username],
            "full_name": full_name,
            "role": role,
            "department": "Production" if role != "QA" else "Quality",
        },
    )
    return service.login(username, PASSWORDS[username])


@pytest.fixture
def operator(service, admin):
    """Logged-in Operator ``jdoe``."""
    return _create_and_login(service, admin, "jdoe", "John Doe", "Operator")


@pytest.fixture
def qa_user(service, admin):
    """Logged-in QA reviewer ``qauser``."""
    return _create_and_login(service, admin, "qauser", "Quinn Auditor", "QA")


@pytest.fixture
def supervisor(service, admin):
    return _create_and_login(service, admin, "sup", "Sam Supervisor", "Supervisor")


@pytest.fixture
def equipment(service, admin):
    """Operational equipment EQ-1."""
    return service.create_equipment(
        admin,
        {
            "equipment_id": "EQ-1",
            "name": "pH Meter",
            "type": "Analytical",
            "location": "QC Lab 2",
            "manufacturer": "Mettler Toledo",
            "pm_frequency": "Monthly",
        },
    )


@pytest.fixture
def draft_entry(service, operator, equipment):
    """Draft calibration entry on EQ-1 authored by jdoe."""
    return service.create_log_entry(
        operator,
        {
            "equipment_id": "EQ-1",
            "activity_type": "Calibration",
            "description": "pH check",
            "start_time": "2024-03-17T08:00:00",
            "readings": {"pH": 7.01, "temperature": 21.5},
        },
    )


@pytest.fixture
def audit_count(service, admin):
    """Callable returning the number of stored audit records."""

    def count():
        return len(service.audit_trail(admin, limit=service.config.audit_max_limit))

    return count
