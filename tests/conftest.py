"""
Shared pytest fixtures for the Maintenance Permit Core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant / other_tenant: Pre-created Tenant entities
    - users: requester, safety officer, manager and watcher in ``tenant``
    - auth_headers: factory for Bearer headers carrying tenant + roles
"""

import pytest

from cmms import create_app
from cmms.models import db as _db
from cmms.models.auth import Tenant, User
from cmms.services import realtime
from cmms.services.jwt_service import generate_access_token


def _make_tenant(slug: str = "plant-a", name: str = "Plant A") -> Tenant:
    t = Tenant(name=name, slug=slug)
    _db.session.add(t)
    _db.session.commit()
    return t


def _make_user(tenant_id: int, email: str, full_name: str = "Test User") -> User:
    u = User(tenant_id=tenant_id, email=email, full_name=full_name, status="active")
    _db.session.add(u)
    _db.session.commit()
    return u


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        realtime.bus.clear()
        yield
        realtime.bus.clear()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def tenant():
    return _make_tenant()


@pytest.fixture()
def other_tenant():
    return _make_tenant(slug="plant-b", name="Plant B")


@pytest.fixture()
def users(tenant):
    """Four users in ``tenant``; returned as ids to avoid detached instances."""
    return {
        "requester": _make_user(tenant.id, "requester@plant-a.test", "Rita Requester").id,
        "officer": _make_user(tenant.id, "officer@plant-a.test", "Sam Safety").id,
        "manager": _make_user(tenant.id, "manager@plant-a.test", "Pat Manager").id,
        "watcher": _make_user(tenant.id, "watcher@plant-a.test", "Wes Watcher").id,
    }


@pytest.fixture()
def auth_headers(app, tenant):
    """Build Authorization headers: ``auth_headers(user_id, roles, tenant_id=None)``."""

    def _headers(user_id, roles=(), tenant_id=None):
        token = generate_access_token(
            user_id, tenant_id if tenant_id is not None else tenant.id, list(roles),
        )
        return {"Authorization": f"Bearer {token}"}

    return _headers


@pytest.fixture()
def events():
    """Capture every realtime event published during the test."""
    captured = []
    realtime.bus.subscribe("*", captured.append)
    return captured
