"""
Issue (non-conformance) Lifecycle Controller.

State machine (``ISSUE_TRANSITIONS`` in ``siteqa.models.issue``):

    raise_issue           → open
    respond               open → investigating
                          (minor + ISSUE_MINOR_AUTO_ACCEPT: open → rectification)
    qm_review accept      investigating → rectification
    qm_review request_revision
                          investigating → investigating, revision_count += 1
    qm_review escalate    investigating → escalated
                          (ISSUE_ESCALATION_MAJOR_ONLY: minor → ValidationError)
    rectify               rectification → verification once ≥ 1 evidence item,
                          otherwise stays put and returns a warning
    reject_rectification  verification → rectification, revision_count += 1
    close                 verification → closed | closed_concession
                          (major + ISSUE_MAJOR_CLOSE_REQUIRES_QM_APPROVAL:
                           qm_approve must come first)
    reopen                closed | closed_concession → rectification

Every status change re-derives the status of every affected work unit
inside the same transaction. Raising an issue does too.
"""

import logging
from datetime import date, datetime

from email_validator import EmailNotValidError, validate_email
from flask import current_app
from sqlalchemy import func, select

from siteqa.core.exceptions import (
    ConflictError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from siteqa.models import db
from siteqa.models.audit import write_audit
from siteqa.models.issue import (
    EVIDENCE_TYPES,
    ISSUE_CATEGORIES,
    ISSUE_SEVERITIES,
    ISSUE_TRANSITIONS,
    QM_REVIEW_ACTIONS,
    ROOT_CAUSE_CATEGORIES,
    Issue,
    IssueEvidence,
    IssueWorkUnit,
)
from siteqa.models.project import MANAGER_ROLES
from siteqa.models.work_unit import WorkUnit
from siteqa.services import status_sync
from siteqa.services.helpers.unit_of_work import atomic, best_effort, guarded_update
from siteqa.services.notification import NotificationService, recipients_for_roles
from siteqa.utils.helpers import utcnow

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Helpers
# ═════════════════════════════════════════════════════════════════════════════

def get_issue(issue_id: int) -> Issue:
    issue = db.session.get(Issue, issue_id)
    if issue is None:
        raise NotFoundError(resource="Issue", resource_id=issue_id)
    return issue


def _transition(issue: Issue, action: str, values: dict, *extra_criteria) -> None:
    rule = ISSUE_TRANSITIONS[action]
    if not guarded_update(Issue, issue.id, rule["from"], {"status": rule["to"], **values},
                          *extra_criteria):
        raise TransitionError("Issue", issue.issue_number, action.replace("_", " "), issue.status)


def _require_status(issue: Issue, action: str) -> None:
    """Raise TransitionError unless *action* is allowed from the current status."""
    if issue.status not in ISSUE_TRANSITIONS[action]["from"]:
        raise TransitionError("Issue", issue.issue_number, action.replace("_", " "), issue.status)


def _sync(issue: Issue) -> list[dict]:
    return status_sync.recompute_many(issue.work_unit_ids)


def _result(issue: Issue, sync: list[dict], **extra) -> dict:
    return {"issue": issue.to_dict(), "work_unit_status": sync, **extra}


def _audit(issue: Issue, action: str, actor, diff: dict):
    with best_effort("issue audit", issue_id=issue.id):
        write_audit(entity_type="issue", entity_id=issue.id, action=f"issue.{action}",
                    actor=actor, project_id=issue.project_id, diff=diff)


def _notify(issue: Issue, recipients, template: str, **context):
    with best_effort(f"{template} notification", issue_id=issue.id):
        NotificationService.enqueue(
            recipients, template,
            {"issue_number": issue.issue_number, "lot_number": _lot_number(issue),
             "description": issue.description, "severity": issue.severity.capitalize(),
             **context},
            project_id=issue.project_id, entity_type="issue", entity_id=issue.id,
        )


def _lot_number(issue: Issue) -> str:
    unit = db.session.get(WorkUnit, issue.work_unit_id)
    return unit.lot_number if unit else ""


def _log(issue: Issue, message: str, *args, event: str):
    logger.info(message, *args, extra={"issue_id": issue.id, "project_id": issue.project_id,
                                       "event_type": f"issue.{event}"})


def _next_issue_number(project_id: int) -> str:
    count = db.session.execute(
        select(func.count(Issue.id)).where(Issue.project_id == project_id)
    ).scalar_one()
    return f"NCR-{count + 1:04d}"


def _add_evidence(issue: Issue, refs, added_by: str | None, default_type: str = "photo") -> list[IssueEvidence]:
    added = []
    for ref in refs or []:
        if isinstance(ref, dict):
            document_ref = ref.get("document_ref") or ref.get("ref")
            evidence_type = ref.get("evidence_type") or default_type
            filename = ref.get("filename")
        else:
            document_ref, evidence_type, filename = str(ref), default_type, None
        if not document_ref:
            raise ValidationError("Evidence reference is required", details={"document_ref": "required"})
        if evidence_type not in EVIDENCE_TYPES:
            raise ValidationError(f"Unknown evidence type '{evidence_type}'",
                                  details={"evidence_type": sorted(EVIDENCE_TYPES)})
        ev = IssueEvidence(document_ref=document_ref, evidence_type=evidence_type,
                           filename=filename, added_by=added_by)
        issue.evidence.append(ev)
        added.append(ev)
    db.session.flush()
    return added


# ═════════════════════════════════════════════════════════════════════════════
# Raise
# ═════════════════════════════════════════════════════════════════════════════

def raise_issue(work_unit_id: int, *, description: str, category: str, severity: str = "minor",
                due_date: date | None = None, affected_work_units=None, raised_by: str | None = None,
                responsible_party: str | None = None,
                specification_reference: str | None = None) -> dict:
    """Create an open issue and put every affected unit into issue_raised."""
    errors = {}
    if not description or not str(description).strip():
        errors["description"] = "required"
    if category not in ISSUE_CATEGORIES:
        errors["category"] = f"one of {sorted(ISSUE_CATEGORIES)}"
    if severity not in ISSUE_SEVERITIES:
        errors["severity"] = f"one of {sorted(ISSUE_SEVERITIES)}"
    if errors:
        raise ValidationError("Invalid issue", details=errors)

    with atomic():
        unit = db.session.get(WorkUnit, work_unit_id)
        if unit is None:
            raise NotFoundError(resource="WorkUnit", resource_id=work_unit_id)

        unit_ids = {unit.id}
        for other_id in affected_work_units or []:
            other = db.session.get(WorkUnit, int(other_id))
            if other is None:
                raise NotFoundError(resource="WorkUnit", resource_id=other_id)
            if other.project_id != unit.project_id:
                raise ValidationError("Affected work units must belong to the same project",
                                      details={"affected_work_units": other_id})
            unit_ids.add(other.id)

        issue = Issue(
            project_id=unit.project_id,
            work_unit_id=unit.id,
            issue_number=_next_issue_number(unit.project_id),
            description=description,
            category=category,
            severity=severity,
            status="open",
            due_date=due_date,
            raised_by=raised_by,
            responsible_party=responsible_party,
            specification_reference=specification_reference,
        )
        db.session.add(issue)
        db.session.flush()
        for wid in sorted(unit_ids):
            issue.work_unit_links.append(IssueWorkUnit(work_unit_id=wid))
        db.session.flush()

        sync = _sync(issue)
        _audit(issue, "raise", raised_by, {"status": {"old": None, "new": "open"},
                                           "severity": severity, "work_units": sorted(unit_ids)})
        recipients = [responsible_party] if responsible_party else []
        if severity == "major":
            recipients += recipients_for_roles(issue.project_id, MANAGER_ROLES)
        _notify(issue, recipients, "issue_raised")
        _log(issue, "Issue %s raised on work unit %s", issue.issue_number, unit.id, event="raise")
    return _result(issue, sync)


# ═════════════════════════════════════════════════════════════════════════════
# Response & QM review
# ═════════════════════════════════════════════════════════════════════════════

def respond(issue_id: int, *, root_cause_category: str | None = None, root_cause: str,
            proposed_action: str, responded_by: str | None = None,
            now: datetime | None = None) -> dict:
    """Submit the responsible party's response (open → investigating)."""
    errors = {}
    if not root_cause or not str(root_cause).strip():
        errors["root_cause"] = "required"
    if not proposed_action or not str(proposed_action).strip():
        errors["proposed_action"] = "required"
    if root_cause_category and root_cause_category not in ROOT_CAUSE_CATEGORIES:
        errors["root_cause_category"] = f"one of {sorted(ROOT_CAUSE_CATEGORIES)}"
    if errors:
        raise ValidationError("Invalid response", details=errors)
    now = now or utcnow()

    with atomic():
        issue = get_issue(issue_id)
        auto_accept = (issue.severity == "minor"
                       and current_app.config.get("ISSUE_MINOR_AUTO_ACCEPT", False))
        _transition(issue, "auto_accept" if auto_accept else "respond", {
            "root_cause_category": root_cause_category,
            "root_cause_description": root_cause,
            "proposed_corrective_action": proposed_action,
            "responded_by": responded_by,
            "response_submitted_at": now,
            "revision_requested": False,
        })
        sync = _sync(issue)
        _audit(issue, "respond", responded_by, {"status": {"old": "open", "new": issue.status},
                                                "auto_accepted": auto_accept})
        _log(issue, "Issue %s response submitted (auto_accept=%s)", issue.issue_number, auto_accept,
             event="respond")
    return _result(issue, sync, auto_accepted=auto_accept)


def qm_review(issue_id: int, *, action: str, comments: str | None = None,
              reviewed_by: str | None = None, escalated_to: str | None = None,
              now: datetime | None = None) -> dict:
    """Quality manager's decision on an investigating issue.

    Raises:
        ValidationError: unknown action, or escalate on a minor issue while
            ISSUE_ESCALATION_MAJOR_ONLY is on.
        TransitionError: issue not investigating.
    """
    if action not in QM_REVIEW_ACTIONS:
        raise ValidationError(f"Unknown review action '{action}'",
                              details={"action": sorted(QM_REVIEW_ACTIONS)})
    now = now or utcnow()

    with atomic():
        issue = get_issue(issue_id)
        review = {"qm_review_comments": comments, "qm_reviewed_by": reviewed_by, "qm_reviewed_at": now}
        previous = issue.status

        if action == "accept":
            _transition(issue, "accept", {**review, "revision_requested": False})
            _notify(issue, [issue.responsible_party], "issue_accepted", comments=comments or "")

        elif action == "request_revision":
            _transition(issue, "request_revision", {
                **review,
                "revision_requested": True,
                "revision_count": Issue.revision_count + 1,
            })
            _notify(issue, [issue.responsible_party], "issue_revision_requested", comments=comments or "")

        else:
            _require_status(issue, "escalate")
            if issue.severity == "minor" and current_app.config.get("ISSUE_ESCALATION_MAJOR_ONLY", True):
                raise ValidationError("Only major issues can be escalated",
                                      details={"severity": issue.severity})
            if not comments:
                raise ValidationError("An escalation reason is required", details={"comments": "required"})
            target = escalated_to or ", ".join(recipients_for_roles(issue.project_id, MANAGER_ROLES))
            _transition(issue, "escalate", {
                **review,
                "escalated_to": target,
                "escalation_reason": comments,
                "escalated_at": now,
            })
            recipients = [escalated_to] if escalated_to else recipients_for_roles(issue.project_id, MANAGER_ROLES)
            _notify(issue, recipients, "issue_escalated", reason=comments)

        sync = _sync(issue)
        _audit(issue, f"qm_review.{action}", reviewed_by, {
            "status": {"old": previous, "new": issue.status},
            "revision_count": issue.revision_count,
        })
        _log(issue, "Issue %s QM review: %s", issue.issue_number, action, event="qm_review")
    return _result(issue, sync)


# ═════════════════════════════════════════════════════════════════════════════
# Rectification & verification
# ═════════════════════════════════════════════════════════════════════════════

def add_evidence(issue_id: int, *, document_ref: str, evidence_type: str = "photo",
                 filename: str | None = None, added_by: str | None = None) -> dict:
    with atomic():
        issue = get_issue(issue_id)
        if issue.is_closed:
            raise TransitionError("Issue", issue.issue_number, "add evidence", issue.status)
        added = _add_evidence(issue, [{"document_ref": document_ref, "evidence_type": evidence_type,
                                       "filename": filename}], added_by)
        _audit(issue, "add_evidence", added_by, {"document_ref": document_ref})
        result = added[0].to_dict()
    return result


def rectify(issue_id: int, *, rectification_notes: str | None = None, evidence_refs=None,
            rectified_by: str | None = None, now: datetime | None = None) -> dict:
    """Submit corrective work; moves to verification once evidence exists.

    Without any evidence the issue stays in rectification and the result
    carries a warning instead of raising.
    """
    now = now or utcnow()
    with atomic():
        issue = get_issue(issue_id)
        if issue.status != "rectification":
            raise TransitionError("Issue", issue.issue_number, "rectify", issue.status)

        if rectification_notes is not None:
            issue.rectification_notes = rectification_notes
        _add_evidence(issue, evidence_refs, rectified_by)

        warnings = []
        if not issue.evidence:
            warnings.append("At least one evidence item is required before verification")
            db.session.flush()
            sync = _sync(issue)
        else:
            _transition(issue, "submit_for_verification", {"rectification_submitted_at": now})
            sync = _sync(issue)
            _audit(issue, "submit_for_verification", rectified_by, {
                "status": {"old": "rectification", "new": "verification"},
                "evidence_count": len(issue.evidence),
            })
        _log(issue, "Issue %s rectification submitted (warnings=%d)", issue.issue_number, len(warnings),
             event="rectify")
    return _result(issue, sync, warnings=warnings)


def reject_rectification(issue_id: int, *, feedback: str, rejected_by: str | None = None) -> dict:
    if not feedback or not str(feedback).strip():
        raise ValidationError("Feedback is required", details={"feedback": "required"})
    with atomic():
        issue = get_issue(issue_id)
        _transition(issue, "reject_rectification", {
            "verification_feedback": feedback,
            "revision_requested": True,
            "revision_count": Issue.revision_count + 1,
        })
        sync = _sync(issue)
        _audit(issue, "reject_rectification", rejected_by,
               {"status": {"old": "verification", "new": "rectification"}, "feedback": feedback})
        _notify(issue, [issue.responsible_party], "issue_rectification_rejected", feedback=feedback)
    return _result(issue, sync)


def qm_approve(issue_id: int, *, approved_by: str, now: datetime | None = None) -> dict:
    """Record QM approval on a major issue ahead of closure."""
    now = now or utcnow()
    with atomic():
        issue = get_issue(issue_id)
        if issue.is_closed or issue.status == "escalated":
            raise TransitionError("Issue", issue.issue_number, "approve", issue.status)
        if not issue.qm_approval_required:
            raise ValidationError("QM approval applies to major issues only",
                                  details={"severity": issue.severity})
        if issue.qm_approved_at is not None:
            raise ConflictError("Issue", f"{issue.issue_number} is already QM approved")
        issue.qm_approved_by = approved_by
        issue.qm_approved_at = now
        db.session.flush()
        _audit(issue, "qm_approve", approved_by, {"qm_approved_by": approved_by})
        result = _result(issue, [status_sync.get_work_unit_status(w) for w in issue.work_unit_ids])
    return result


def close(issue_id: int, *, verification_notes: str | None = None, lessons_learned: str | None = None,
          closed_by: str | None = None, with_concession: bool = False,
          concession_justification: str | None = None, risk_assessment: str | None = None,
          now: datetime | None = None) -> dict:
    """verification → closed (or closed_concession). Releases the units."""
    if with_concession and not (concession_justification or "").strip():
        raise ValidationError("A concession requires a justification",
                              details={"concession_justification": "required"})
    now = now or utcnow()

    with atomic():
        issue = get_issue(issue_id)
        _require_status(issue, "close_with_concession" if with_concession else "close")
        if (issue.qm_approval_required and issue.qm_approved_at is None
                and current_app.config.get("ISSUE_MAJOR_CLOSE_REQUIRES_QM_APPROVAL", True)):
            raise ValidationError("Major issues require QM approval before closure",
                                  details={"qm_approval_required": True})

        values = {
            "verification_notes": verification_notes,
            "lessons_learned": lessons_learned,
            "closed_by": closed_by,
            "closed_at": now,
        }
        if with_concession:
            values["concession_justification"] = concession_justification
            values["concession_risk_assessment"] = risk_assessment
        _transition(issue, "close_with_concession" if with_concession else "close", values)

        sync = _sync(issue)
        _audit(issue, "close", closed_by, {"status": {"old": "verification", "new": issue.status}})
        _log(issue, "Issue %s closed (%s)", issue.issue_number, issue.status, event="close")
    return _result(issue, sync)


def reopen(issue_id: int, *, reason: str, reopened_by: str | None = None,
           now: datetime | None = None) -> dict:
    if not reason or not str(reason).strip():
        raise ValidationError("A reason is required to reopen", details={"reason": "required"})
    now = now or utcnow()
    with atomic():
        issue = get_issue(issue_id)
        previous = issue.status
        _transition(issue, "reopen", {
            "closed_at": None,
            "closed_by": None,
            "reopened_at": now,
            "reopen_reason": reason,
        })
        sync = _sync(issue)
        _audit(issue, "reopen", reopened_by, {"status": {"old": previous, "new": issue.status},
                                              "reason": reason})
        _log(issue, "Issue %s reopened", issue.issue_number, event="reopen")
    return _result(issue, sync)


# ═════════════════════════════════════════════════════════════════════════════
# Client notification & reads
# ═════════════════════════════════════════════════════════════════════════════

def notify_client(issue_id: int, *, recipient_email: str, message: str | None = None,
                  notified_by: str | None = None, now: datetime | None = None) -> dict:
    """Send the one-off client notice for a major issue."""
    try:
        recipient_email = validate_email(recipient_email or "", check_deliverability=False).normalized
    except EmailNotValidError as exc:
        raise ValidationError(str(exc), details={"recipient_email": "invalid"}) from exc
    now = now or utcnow()

    with atomic():
        issue = get_issue(issue_id)
        if not issue.client_notification_required:
            raise ValidationError("Client notification applies to major issues only",
                                  details={"severity": issue.severity})
        if issue.client_notified_at is not None:
            raise ConflictError("Issue", f"Client was already notified of {issue.issue_number}")

        lot_numbers = [
            u.lot_number for u in db.session.execute(
                select(WorkUnit).where(WorkUnit.id.in_(issue.work_unit_ids)).order_by(WorkUnit.lot_number)
            ).scalars()
        ]
        package = {
            "issue_number": issue.issue_number,
            "description": issue.description,
            "category": issue.category,
            "severity": issue.severity,
            "status": issue.status,
            "specification_reference": issue.specification_reference,
            "lot_numbers": lot_numbers,
            "raised_at": issue.created_at.isoformat() if issue.created_at else None,
            "due_date": issue.due_date.isoformat() if issue.due_date else None,
            "proposed_corrective_action": issue.proposed_corrective_action,
            "message": message,
        }
        issue.client_notified_at = now
        issue.client_notified_to = recipient_email
        db.session.flush()

        _notify(issue, [recipient_email], "issue_client_notice",
                category=issue.category, lot_numbers=", ".join(lot_numbers), message=message or "")
        _audit(issue, "notify_client", notified_by, {"recipient": recipient_email})
        result = {"issue": issue.to_dict(), "notification_package": package}
    return result


def list_project_issues(project_id: int, *, status: str | None = None,
                        open_only: bool = False) -> list[dict]:
    stmt = select(Issue).where(Issue.project_id == project_id).order_by(Issue.id)
    if status:
        stmt = stmt.where(Issue.status == status)
    if open_only:
        stmt = stmt.where(Issue.status.not_in(["closed", "closed_concession"]))
    return [i.to_dict() for i in db.session.execute(stmt).scalars()]
