"""
Secure External Release Gateway.

Lets a party with no account (client representative, superintendent)
view the evidence for one hold point and release it through a mailed
link. Possession of the link's secret is the whole authorization.

Secrets:
  - RELEASE_TOKEN_BYTES random bytes from ``secrets``, hex encoded
  - only the SHA-256 hash is stored (``ReleaseToken.token_hash``)
  - returned to the issuer once; never logged, audited or queued

Consumption is a single conditional UPDATE:

    UPDATE release_tokens SET used_at = :now
     WHERE token_hash = :h AND used_at IS NULL AND expires_at > :now

Exactly one of two racing requests sees one affected row. The checkpoint
release runs in the same transaction, so a failed release also un-spends
the token.
"""

import hashlib
import logging
import secrets
from datetime import datetime, timedelta

from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy import delete, select, update

from siteqa.core.exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from siteqa.models import db
from siteqa.models.audit import write_audit
from siteqa.models.checkpoint import TERMINAL_CHECKPOINT_STATUSES, ReleaseToken
from siteqa.models.project import MANAGER_ROLES
from siteqa.services import checkpoint_service
from siteqa.services.helpers.unit_of_work import atomic, best_effort
from siteqa.services.notification import NotificationService, recipients_for_roles
from siteqa.utils.helpers import ensure_utc, utcnow

logger = logging.getLogger(__name__)


def hash_secret(secret: str) -> str:
    """SHA-256 hash of a release-token secret."""
    return hashlib.sha256(secret.encode()).hexdigest()


def _new_secret() -> str:
    return secrets.token_hex(current_app.config.get("RELEASE_TOKEN_BYTES", 32))


def release_url(secret: str) -> str:
    base = current_app.config.get("PUBLIC_BASE_URL", "").rstrip("/")
    return f"{base}/release/{secret}"


# ═════════════════════════════════════════════════════════════════════════════
# Issue / revoke
# ═════════════════════════════════════════════════════════════════════════════

def issue_token(checkpoint_id: int, *, recipient_email: str, recipient_name: str | None = None,
                ttl_hours: float | None = None, issued_by: str | None = None,
                now: datetime | None = None) -> dict:
    """Create the one live release link for a checkpoint.

    Prior unused links for the checkpoint are deleted first. A pending
    checkpoint is notified on the way.

    Returns:
        {"token": {...}, "secret": <raw>, "release_url": <link>}; the secret
        cannot be recovered afterwards.
    """
    try:
        recipient_email = validate_email(recipient_email or "", check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(str(exc), details={"recipient_email": "invalid"}) from exc

    ttl = ttl_hours if ttl_hours is not None else current_app.config.get("RELEASE_TOKEN_TTL_HOURS", 48)
    if ttl <= 0:
        raise ValidationError("ttl_hours must be positive", details={"ttl_hours": ttl})
    now = now or utcnow()

    with atomic():
        cp = checkpoint_service.get_checkpoint(checkpoint_id)
        if cp.status in TERMINAL_CHECKPOINT_STATUSES:
            raise TransitionError("Checkpoint", cp.id, "issue release link", cp.status)
        if cp.status == "pending":
            checkpoint_service.notify(cp.id, notified_to=recipient_email, actor=issued_by, now=now)

        revoked = db.session.execute(
            delete(ReleaseToken)
            .where(ReleaseToken.checkpoint_id == cp.id, ReleaseToken.used_at.is_(None))
            .execution_options(synchronize_session=False)
        ).rowcount

        secret = _new_secret()
        token = ReleaseToken(
            checkpoint_id=cp.id,
            token_hash=hash_secret(secret),
            recipient_email=recipient_email,
            recipient_name=recipient_name,
            issued_by=issued_by,
            expires_at=now + timedelta(hours=ttl),
        )
        db.session.add(token)
        db.session.flush()

        with best_effort("release token audit", checkpoint_id=cp.id):
            write_audit(
                entity_type="release_token", entity_id=token.id, action="release_token.issue",
                actor=issued_by, project_id=cp.work_unit.project_id,
                diff={"checkpoint_id": cp.id, "recipient_email": recipient_email,
                      "expires_at": token.expires_at, "revoked_prior": revoked},
            )
        with best_effort("release link notice", checkpoint_id=cp.id):
            NotificationService.enqueue(
                recipients_for_roles(cp.work_unit.project_id, MANAGER_ROLES),
                "release_link_issued",
                {"lot_number": cp.work_unit.lot_number, "item": cp.description,
                 "recipient_name": recipient_name or recipient_email},
                project_id=cp.work_unit.project_id, entity_type="checkpoint", entity_id=cp.id,
            )
        logger.info(
            "Release token %s issued for checkpoint %s (revoked %d prior)", token.id, cp.id, revoked,
            extra={"checkpoint_id": cp.id, "event_type": "release_token.issue"},
        )
        result = {"token": token.to_dict(), "secret": secret, "release_url": release_url(secret)}
    return result


def revoke_tokens(checkpoint_id: int, *, actor: str | None = None) -> int:
    """Delete every unused link of a checkpoint. Returns the number removed."""
    with atomic():
        cp = checkpoint_service.get_checkpoint(checkpoint_id)
        revoked = db.session.execute(
            delete(ReleaseToken)
            .where(ReleaseToken.checkpoint_id == cp.id, ReleaseToken.used_at.is_(None))
            .execution_options(synchronize_session=False)
        ).rowcount
        with best_effort("release token audit", checkpoint_id=cp.id):
            write_audit(
                entity_type="checkpoint", entity_id=cp.id, action="release_token.revoke",
                actor=actor, project_id=cp.work_unit.project_id, diff={"revoked": revoked},
            )
    return revoked


# ═════════════════════════════════════════════════════════════════════════════
# Public (unauthenticated) side
# ═════════════════════════════════════════════════════════════════════════════

def _find(secret: str) -> ReleaseToken | None:
    if not secret:
        return None
    return db.session.execute(
        select(ReleaseToken)
        .where(ReleaseToken.token_hash == hash_secret(secret))
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def resolve(secret: str, *, now: datetime | None = None) -> dict:
    """Evidence package for a live link.

    Raises:
        NotFoundError: no such link.
        ExpiredError: link already used or past its expiry.
    """
    now = now or utcnow()
    token = _find(secret)
    if token is None:
        raise NotFoundError(resource="Release link")
    if token.used_at is not None:
        raise ExpiredError("This release link has already been used")
    if ensure_utc(token.expires_at) <= now:
        raise ExpiredError("This release link has expired")

    cp = token.checkpoint
    return {
        "evidence_package": checkpoint_service.build_evidence_package(cp, external=True),
        "token_info": {
            "recipient_name": token.recipient_name,
            "expires_at": token.expires_at.isoformat(),
        },
        "is_public_access": True,
    }


def consume_and_release(secret: str, *, released_by_name: str, released_by_org: str | None = None,
                        notes: str | None = None, now: datetime | None = None) -> dict:
    """Spend the link and release its checkpoint in one transaction.

    Raises:
        NotFoundError: no such link.
        ConflictError: link already used (e.g. a retried or racing request).
        ExpiredError: link past its expiry.
    """
    if not released_by_name or not str(released_by_name).strip():
        raise ValidationError("released_by_name is required", details={"released_by_name": "required"})
    now = now or utcnow()
    token_hash = hash_secret(secret or "")

    with atomic():
        claimed = db.session.execute(
            update(ReleaseToken)
            .where(
                ReleaseToken.token_hash == token_hash,
                ReleaseToken.used_at.is_(None),
                ReleaseToken.expires_at > now,
            )
            .values(used_at=now)
            .execution_options(synchronize_session=False)
        ).rowcount

        if claimed != 1:
            token = _find(secret)
            if token is None:
                raise NotFoundError(resource="Release link")
            if token.used_at is not None:
                raise ConflictError("ReleaseToken", "This release link has already been used")
            raise ExpiredError("This release link has expired")

        token = _find(secret)
        result = checkpoint_service.release(
            token.checkpoint_id,
            released_by_name=released_by_name,
            released_by_org=released_by_org,
            notes=notes,
            method="secure_link",
            actor=f"release_token:{token.id}",
            now=now,
        )
        logger.info(
            "Release token %s consumed", token.id,
            extra={"checkpoint_id": token.checkpoint_id, "event_type": "release_token.consume"},
        )
    return result
