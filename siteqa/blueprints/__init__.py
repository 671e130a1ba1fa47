"""
Site Quality Workflow Engine
Blueprint registry and shared request helpers.

Layer contract:
    - Blueprint: parse + validate input, check project access, call the
      service, return JSON.
    - NO db.session calls here; all writes are owned by the services.
    - Service exceptions are mapped to HTTP by ``register_error_handlers``.
"""

import logging

from flask import g, jsonify, request
from werkzeug.exceptions import HTTPException

from siteqa.core.exceptions import (
    ConflictError,
    ExpiredError,
    ForbiddenError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from siteqa.services.access import ensure_entity_access
from siteqa.utils.errors import E, api_error
from siteqa.utils.helpers import parse_datetime_input

logger = logging.getLogger(__name__)


def register_error_handlers(bp, *, public: bool = False):
    """Map service exceptions to JSON responses on *bp*.

    ``public=True`` replaces messages with fixed texts so that nothing
    about the underlying entities leaks to unauthenticated callers.
    """

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, "Release link not found" if public else str(error))

    @bp.errorhandler(ForbiddenError)
    def _handle_forbidden(error: ForbiddenError):
        return api_error(E.FORBIDDEN, str(error))

    @bp.errorhandler(ConflictError)
    def _handle_conflict(error: ConflictError):
        if public:
            return api_error(E.CONFLICT_STATE, "This release link can no longer be used")
        details = None
        code = E.CONFLICT_DUPLICATE
        if isinstance(error, TransitionError):
            code = E.CONFLICT_STATE
            details = {"action": error.action, "current_status": error.current_status}
        return api_error(code, str(error), details=details)

    @bp.errorhandler(ExpiredError)
    def _handle_expired(error: ExpiredError):
        return api_error(E.EXPIRED, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_POLICY, str(error), details=error.details or None)

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            return error
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")


# ── Request helpers ─────────────────────────────────────────────────────────

def current_actor() -> str:
    """Principal performing the request (``anonymous`` when auth is off)."""
    return getattr(g, "principal_id", None) or "anonymous"


def current_actor_name() -> str:
    return getattr(g, "principal_name", None) or current_actor()


def json_body() -> dict:
    return request.get_json(silent=True) or {}


def require_fields(data: dict, *fields):
    """Return a 400 response naming the first missing field, else None."""
    for name in fields:
        value = data.get(name)
        if value is None or (isinstance(value, str) and not value.strip()):
            return api_error(E.VALIDATION_REQUIRED, f"{name} is required")
    return None


def parse_datetime_field(data: dict, name: str):
    """Parse an optional ISO datetime field; returns (value, error_response)."""
    try:
        return parse_datetime_input(data.get(name)), None
    except ValueError as exc:
        return None, api_error(E.VALIDATION_INVALID, f"{name}: {exc}")


def parse_int_field(data: dict, name: str):
    value = data.get(name)
    try:
        return int(value), None
    except (TypeError, ValueError):
        return None, api_error(E.VALIDATION_INVALID, f"{name} must be an integer")


def check_access(resource: str, resource_id: int) -> None:
    ensure_entity_access(getattr(g, "principal_id", None), resource, resource_id)


def ok(payload, status: int = 200):
    return jsonify(payload), status
