"""
Shared pytest fixtures for the Studio Client Portal test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - catalog: Default 8-phase catalog, seeded and loaded
    - tenant / admin / owner / other_client: one studio and its users
    - project: Project owned by ``owner``, initialized at the first phase
    - auth_headers: Bearer headers for a given user
"""

import pytest

from portal import create_app
from portal.auth import Actor
from portal.models import db as _db
from portal.services.phase_catalog import get_catalog, invalidate_catalog_cache, seed_phase_catalog


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
        # Tables are recreated per test and phase ids are reused; drop the
        # cached catalog so no test sees the previous test's snapshot.
        invalidate_catalog_cache()
        yield
        invalidate_catalog_cache()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Domain fixtures ──────────────────────────────────────────────────────


@pytest.fixture()
def catalog():
    """Seed the default phase catalog and return the loaded snapshot."""
    seed_phase_catalog()
    _db.session.commit()
    return get_catalog()


@pytest.fixture()
def make_tenant():
    from portal.models.auth import Tenant

    def _make(slug="studio", name=None):
        tenant = Tenant(name=name or slug.title(), slug=slug)
        _db.session.add(tenant)
        _db.session.commit()
        return tenant

    return _make


@pytest.fixture()
def make_user():
    from portal.models.auth import User

    def _make(tenant, email, role="client", full_name=None):
        user = User(tenant_id=tenant.id, email=email, full_name=full_name, role=role, status="active")
        _db.session.add(user)
        _db.session.commit()
        return user

    return _make


@pytest.fixture()
def tenant(make_tenant):
    return make_tenant("studio", "Pixel & Press")


@pytest.fixture()
def admin(tenant, make_user):
    return make_user(tenant, "admin@studio.test", role="admin", full_name="Ada Admin")


@pytest.fixture()
def owner(tenant, make_user):
    return make_user(tenant, "owner@client.test", full_name="Olive Owner")


@pytest.fixture()
def other_client(tenant, make_user):
    return make_user(tenant, "other@client.test", full_name="Otto Other")


@pytest.fixture()
def admin_actor(admin):
    return Actor(user_id=admin.id, tenant_id=admin.tenant_id, is_admin=True)


@pytest.fixture()
def owner_actor(owner):
    return Actor(user_id=owner.id, tenant_id=owner.tenant_id, is_admin=False)


@pytest.fixture()
def make_project(catalog, admin_actor):
    from portal.services import project_service

    def _make(client_user, name="Spring Campaign", actor=None):
        project, _events = project_service.create_project(
            actor=actor or admin_actor,
            data={"name": name, "client_id": client_user.id, "due_date": "2026-12-01"},
        )
        return project

    return _make


@pytest.fixture()
def project(make_project, owner):
    return make_project(owner)


@pytest.fixture()
def auth_headers():
    """Return a function building Bearer headers for a user."""
    from portal.services.jwt_service import generate_access_token

    def _headers(user, roles=None):
        token = generate_access_token(user.id, user.tenant_id, roles or [user.role])
        return {"Authorization": f"Bearer {token}"}

    return _headers
