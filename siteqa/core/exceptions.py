"""
Workflow-wide exception hierarchy.

Every service in ``siteqa.services`` raises one of these types. Blueprints
register handlers against them once (see ``siteqa.blueprints``) and get
consistent HTTP status codes everywhere:

    NotFoundError     404
    ForbiddenError    403
    ConflictError     409   (TransitionError is a ConflictError)
    ExpiredError      410
    ValidationError   422

Usage:
    from siteqa.core.exceptions import NotFoundError, TransitionError

    raise NotFoundError(resource="Checkpoint", resource_id=42)
    raise TransitionError("Issue", issue.id, "close", issue.status)
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "WorkUnit", "Issue").
        resource_id: The PK that was looked up. Omitted for secret lookups
                     so that token material never reaches a message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Covers missing required evidence and policy violations such as an
    escalation attempt against a minor issue. Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional structured breakdown for API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation collides with the current state of a record.

    Duplicate inspection instances, already-consumed release links and
    invalid state transitions all land here. Maps to HTTP 409.
    """

    def __init__(self, resource: str, message: str) -> None:
        self.resource = resource
        super().__init__(message)


class TransitionError(ConflictError):
    """Raised when a lifecycle action is not valid from the current status."""

    def __init__(self, resource: str, resource_id, action: str, current: str,
                 reason: str | None = None) -> None:
        msg = f"Cannot '{action}' {resource} {resource_id} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(resource, msg)
        self.resource_id = resource_id
        self.action = action
        self.current_status = current


class ExpiredError(Exception):
    """Raised when a time-bounded capability is past its deadline or spent. Maps to HTTP 410."""


class ForbiddenError(Exception):
    """Raised when the access checker denies a principal. Maps to HTTP 403."""

    def __init__(self, principal: str | None, project_id: int | None = None) -> None:
        self.principal = principal
        self.project_id = project_id
        super().__init__("Access to this project is not permitted")
