"""
Shared pytest fixtures for the FIEC process workflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - roles / users: FIEC role set and one active user per role
    - make_user / make_template / make_instance: ORM factories
    - actor: turn a User into the Actor the services expect
    - captured_events: ProcessEvents published during the test
"""

import pytest

from procflow import create_app
from procflow.models import db as _db
from procflow.models.auth import Role, User, UserRole
from procflow.models.catalog import ProcessTemplate, ProcessType, StepTemplate
from procflow.services import instance_service
from procflow.services.events import get_event_bus
from procflow.services.identity import actor_for

ROLE_CODES = ("ADMIN", "DEAN", "SUBDEAN", "DIRECTOR", "SECRETARY", "PROFESSOR")


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
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Identity fixtures ────────────────────────────────────────────────────


@pytest.fixture()
def roles():
    """All FIEC roles keyed by code."""
    created = {}
    for code in ROLE_CODES:
        role = Role(code=code, name=code.title(), description=f"{code} role")
        _db.session.add(role)
        created[code] = role
    _db.session.commit()
    return created


@pytest.fixture()
def make_user(roles):
    """Factory: make_user("DIRECTOR", "PROFESSOR", active=True) → User."""
    counter = {"n": 0}

    def _make(*codes, active=True, name=None):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            full_name=name or f"User {n}",
            email=f"user{n}@fiec.edu.ec",
            is_active=active,
        )
        _db.session.add(user)
        _db.session.flush()
        for code in codes:
            _db.session.add(UserRole(user_id=user.id, role_id=roles[code].id))
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def users(make_user):
    """One active user per working role."""
    return {
        "admin": make_user("ADMIN", name="Admin"),
        "dean": make_user("DEAN", name="Dean"),
        "director": make_user("DIRECTOR", name="Director"),
        "secretary": make_user("SECRETARY", name="Secretary"),
        "professor": make_user("PROFESSOR", name="Professor"),
    }


@pytest.fixture()
def actor():
    """Resolve the Actor for a User row."""
    return actor_for


@pytest.fixture()
def auth():
    """Build request headers identifying a user."""
    return lambda user: {"X-User-Id": str(user.id)}


# ── Catalog / instance factories ─────────────────────────────────────────


@pytest.fixture()
def make_template(roles, users):
    """Factory: make_template([(required, role_code), ...], publish=True) → ProcessTemplate.

    Builds the rows directly so tests can start from any catalog state.
    """
    counter = {"n": 0}

    def _make(steps=None, publish=True, process_type=None, active=True):
        counter["n"] += 1
        if steps is None:
            steps = [(True, "SECRETARY"), (True, "DIRECTOR")]
        pt = process_type or ProcessType(
            code=f"PT_{counter['n']}", name=f"Process type {counter['n']}",
            active=active, created_by=users["admin"].id,
        )
        _db.session.add(pt)
        _db.session.flush()
        tpl = ProcessTemplate(
            process_type_id=pt.id,
            description=f"Template {counter['n']}",
            version=1,
            is_published=publish,
            is_latest=publish,
            created_by=users["admin"].id,
        )
        for ord_, (required, code) in enumerate(steps, start=1):
            tpl.steps.append(StepTemplate(
                ord=ord_, title=f"Step {ord_}", description=f"Step {ord_} description",
                required=required, reviewer_role_id=roles[code].id,
            ))
        _db.session.add(tpl)
        _db.session.commit()
        return tpl

    return _make


@pytest.fixture()
def make_instance(make_template, users):
    """Factory: instantiate a fresh published template for 2025-10."""

    def _make(steps=None, responsible=None, **kwargs):
        tpl = make_template(steps)
        owner = responsible or users["professor"]
        return instance_service.instantiate(
            tpl.id, kwargs.pop("year", 2025), kwargs.pop("month", 10),
            owner.id, users["admin"].id, kwargs.pop("title", "Evaluación Docente 2025-2"),
            **kwargs,
        )

    return _make


@pytest.fixture()
def captured_events(app):
    """List of ProcessEvents published while the test runs."""
    received = []
    unsubscribe = get_event_bus().subscribe(received.append)
    yield received
    unsubscribe()
