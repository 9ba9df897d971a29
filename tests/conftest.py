"""
Shared pytest fixtures for the formflow test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - tenant: Pre-created Tenant entity
    - make_user / make_role / make_member: ORM factories
    - leave_template: two-step approval template (hod_review → principal_review)
    - api_headers: X-Tenant-Id / X-User-Id header builder
"""

import copy

import pytest

from formflow import create_app
from formflow.models import db as _db
from formflow.models.auth import Tenant, User
from formflow.services import membership_service, template_service
from formflow.services.permission_service import invalidate_all_cache

LEAVE_STEPS = [
    {
        "step_name": "Request",
        "sections": [
            {
                "section_name": "Details",
                "fields": [
                    {"field_id": "reason", "type": "text", "label": "Reason", "required": True},
                    {"field_id": "days", "type": "number", "label": "Days", "required": True,
                     "validation": {"min": 1, "max": 30}},
                    {"field_id": "start_date", "type": "date", "label": "Start date"},
                ],
            }
        ],
    }
]

LEAVE_WORKFLOW = {
    "steps": [
        {"step_name": "hod_review", "approver_role": "head_of_department", "sla_hours": 48},
        {"step_name": "principal_review", "approver_role": "principal", "sla_hours": 24},
    ]
}


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


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
        # Tables are recreated per test and ids are reused; a cached
        # permission set keyed by user_id would leak between tests.
        invalidate_all_cache()
        yield
        invalidate_all_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def tenant():
    t = Tenant(name="Hillside School", slug="hillside")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def other_tenant():
    t = Tenant(name="Riverside School", slug="riverside")
    _db.session.add(t)
    _db.session.commit()
    return t


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(name="user", status="active"):
        counter["n"] += 1
        u = User(email=f"{name}{counter['n']}@example.com", full_name=name.title(), status=status)
        _db.session.add(u)
        _db.session.commit()
        return u

    return _make


@pytest.fixture()
def make_role():
    def _make(tenant_id, name, permissions=()):
        return membership_service.create_role(tenant_id, name, list(permissions))

    return _make


@pytest.fixture()
def make_member(make_user):
    """Create a user with an active membership (and optional role) in a tenant."""

    def _make(tenant_id, role_name=None, *, name="member", granted=None, denied=None):
        user = make_user(name)
        membership_service.add_member(user.id, tenant_id, role_name, granted=granted, denied=denied)
        return user

    return _make


@pytest.fixture()
def school_roles(tenant, make_role):
    """Roles of the default tenant used by the workflow tests."""
    return {
        "staff": make_role(tenant.id, "staff", ["forms.create"]),
        "hod": make_role(tenant.id, "head_of_department", ["forms.create", "forms.approve"]),
        "principal": make_role(tenant.id, "principal", ["forms.*"]),
    }


@pytest.fixture()
def leave_template(tenant, school_roles):
    return template_service.create_template(
        tenant.id,
        "Leave request",
        steps=LEAVE_STEPS,
        workflow_configuration=LEAVE_WORKFLOW,
        category="leave",
    )


@pytest.fixture()
def api_headers():
    def _headers(tenant_id, user_id):
        return {"X-Tenant-Id": str(tenant_id), "X-User-Id": str(user_id)}

    return _headers


@pytest.fixture()
def leave_definition():
    """(steps, workflow_configuration) of the leave request template."""
    return copy.deepcopy(LEAVE_STEPS), copy.deepcopy(LEAVE_WORKFLOW)
