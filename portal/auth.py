"""
Studio Client Portal
Authentication & Authorization helpers.

Provides:
    - Actor: the identity a workflow operation runs on behalf of
    - require_auth decorator: 401 unless the JWT middleware resolved a user
    - require_admin decorator: 403 unless the actor is an administrator
    - init_auth: Content-Type enforcement for state-changing API requests

Security model:
    - Identity comes from the Bearer JWT parsed in middleware/jwt_auth.py
    - An actor whose roles include ``admin`` is an administrator; everyone
      else is a client who may act only on projects they own
    - Data is tenant-scoped by the token's ``tenant_id``
"""

import functools
import logging
from dataclasses import dataclass

from flask import g, jsonify, request

from portal.utils.errors import E, api_error

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Actor:
    """Who is performing a workflow operation.

    ``user_id`` is ``None`` only for the system actor used by automation.
    """

    user_id: int | None
    tenant_id: int | None
    is_admin: bool = False

    @property
    def is_system(self) -> bool:
        return self.user_id is None


SYSTEM_ACTOR = Actor(user_id=None, tenant_id=None, is_admin=True)


def actor_from_request() -> Actor | None:
    """Build the Actor for the current request, or None when unauthenticated."""
    user_id = getattr(g, "jwt_user_id", None)
    tenant_id = getattr(g, "jwt_tenant_id", None)
    if user_id is None or tenant_id is None:
        return None
    roles = getattr(g, "jwt_roles", None) or []
    return Actor(user_id=user_id, tenant_id=tenant_id, is_admin=ADMIN_ROLE in roles)


# ── Decorators ───────────────────────────────────────────────────────────────

def require_auth(f):
    """
    Decorator: require a valid bearer token.

    Sets ``g.actor`` for the view.
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor = actor_from_request()
        if actor is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required. Provide a Bearer token.")
        g.actor = actor
        return f(*args, **kwargs)

    return decorated


def require_admin(f):
    """
    Decorator: require an administrator.

    Usage:
        @require_auth
        @require_admin
        def advance_phase(project_id): ...
    """
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        actor = getattr(g, "actor", None)
        if actor is None:
            return api_error(E.UNAUTHENTICATED, "Authentication required")
        if not actor.is_admin:
            logger.warning(
                "Access denied: user %s tried to access admin endpoint %s",
                actor.user_id, request.path,
                extra={"actor_id": actor.user_id, "path": request.path},
            )
            return api_error(E.FORBIDDEN, "Administrator access required")
        return f(*args, **kwargs)

    return decorated


# ── CSRF protection for API ──────────────────────────────────────────────────

def _check_content_type():
    """
    For state-changing requests, require Content-Type: application/json
    when a body is present. HTML forms cannot send that content type.
    """
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        ct = request.content_type or ""
        if "application/json" not in ct and request.content_length and request.content_length > 0:
            return jsonify({
                "error": "Content-Type must be application/json for state-changing requests"
            }), 415
    return None


def init_auth(app):
    """Install the Content-Type guard on API routes."""

    @app.before_request
    def _before_request_auth():
        if not request.path.startswith("/api/v1/"):
            return None
        if request.path.startswith("/api/v1/health"):
            return None
        if request.method == "OPTIONS":
            return None
        return _check_content_type()

    logger.info("Auth middleware installed")
