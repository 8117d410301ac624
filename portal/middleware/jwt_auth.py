"""
JWT Auth Middleware - Parses JWT from Authorization header, sets g.jwt_*.

The middleware never rejects a request by itself: a missing, expired or
invalid token simply leaves ``g.jwt_user_id`` unset and the route decides
(workflow routes answer 401 through ``portal.auth.require_auth``).
"""

import logging

import jwt as pyjwt
from flask import g, request

from portal.services.jwt_service import decode_access_token

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.jwt_user_id = None
        g.jwt_tenant_id = None
        g.jwt_roles = []

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if not auth_header.startswith("Bearer "):
            return

        token = auth_header[7:]  # Strip "Bearer "

        try:
            payload = decode_access_token(token)
        except pyjwt.ExpiredSignatureError:
            logger.info("Expired access token", extra={"path": path})
            return
        except pyjwt.InvalidTokenError as exc:
            logger.warning("Invalid access token: %s", exc, extra={"path": path})
            return

        g.jwt_user_id = payload["sub"]
        g.jwt_tenant_id = payload.get("tenant_id")
        g.jwt_roles = payload.get("roles", []) or []
