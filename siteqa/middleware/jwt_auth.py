"""
JWT Auth Middleware: parses the bearer token and sets g.principal_*.

    Authorization: Bearer <token>  →  g.principal_id, g.principal_name

With API_AUTH_ENABLED on, internal /api/v1/ requests without a valid
principal are answered 401. External release links and the health check
are never touched: possession of the link secret is their authorization.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

from siteqa.services.jwt_service import decode_access_token
from siteqa.utils.errors import E, api_error

logger = logging.getLogger(__name__)

# Paths that skip JWT auth entirely
JWT_SKIP_PREFIXES = (
    "/api/v1/external/",
    "/api/v1/health",
)


def _principal_from_header():
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        return None
    try:
        return decode_access_token(auth_header[7:])
    except pyjwt.ExpiredSignatureError:
        logger.info("Expired bearer token on %s", request.path, extra={"path": request.path})
    except pyjwt.InvalidTokenError:
        logger.info("Invalid bearer token on %s", request.path, extra={"path": request.path})
    return None


def init_jwt_middleware(app):
    """Register JWT middleware as a before_request hook."""

    @app.before_request
    def _jwt_auth():
        g.principal_id = None
        g.principal_name = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return None
        for prefix in JWT_SKIP_PREFIXES:
            if path.startswith(prefix):
                return None

        payload = _principal_from_header()
        if payload is not None:
            g.principal_id = payload.get("sub")
            g.principal_name = payload.get("name") or payload.get("sub")
            return None

        if current_app.config.get("API_AUTH_ENABLED", True) and request.method != "OPTIONS":
            return api_error(E.UNAUTHORIZED, "Authentication required")
        return None
