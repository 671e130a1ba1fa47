"""Issue / NCR lifecycle and its effect on work unit status."""

from datetime import date, datetime, timezone

import pytest
from sqlalchemy import select

from siteqa.core.exceptions import ConflictError, NotFoundError, TransitionError, ValidationError
from siteqa.models import db
from siteqa.models.notification import Notification
from siteqa.models.work_unit import WorkUnit
from siteqa.services import checkpoint_service, issue_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _raise(work_unit, **kwargs):
    kwargs.setdefault("description", "Honeycombing on east face")
    kwargs.setdefault("category", "workmanship")
    kwargs.setdefault("raised_by", "sup-1")
    kwargs.setdefault("responsible_party", "sub@example.test")
    return issue_service.raise_issue(work_unit.id, **kwargs)["issue"]


def _respond(issue):
    return issue_service.respond(issue["id"], root_cause_category="workmanship",
                                 root_cause="Poor vibration", proposed_action="Patch and cure",
                                 responded_by="sub-1", now=T0)


def _to_verification(issue):
    _respond(issue)
    issue_service.qm_review(issue["id"], action="accept", reviewed_by="qm-1", now=T0)
    return issue_service.rectify(issue["id"], rectification_notes="Patched",
                                 evidence_refs=["ncr/1/after.jpg"], rectified_by="sub-1", now=T0)


def _status(work_unit):
    return db.session.get(WorkUnit, work_unit.id).status


class TestRaise:
    def test_raise_marks_unit(self, work_unit):
        result = issue_service.raise_issue(
            work_unit.id, description="Honeycombing", category="workmanship",
            due_date=date(2026, 3, 9), raised_by="sup-1",
        )

        issue = result["issue"]
        assert issue["status"] == "open"
        assert issue["severity"] == "minor"
        assert issue["issue_number"] == "NCR-0001"
        assert issue["due_date"] == "2026-03-09"
        assert result["work_unit_status"][0]["status"] == "issue_raised"
        assert _status(work_unit) == "issue_raised"

    def test_numbers_are_sequential_per_project(self, work_unit):
        _raise(work_unit)
        second = _raise(work_unit, description="Cold joint")
        assert second["issue_number"] == "NCR-0002"

    def test_validation(self, work_unit):
        with pytest.raises(ValidationError) as exc_info:
            issue_service.raise_issue(work_unit.id, description="", category="weather", severity="huge")
        assert set(exc_info.value.details) == {"description", "category", "severity"}

    def test_unknown_work_unit(self, project):
        with pytest.raises(NotFoundError):
            issue_service.raise_issue(9999, description="x", category="other")

    def test_affected_units_all_blocked(self, make_work_unit):
        a, b = make_work_unit(), make_work_unit()

        result = issue_service.raise_issue(a.id, description="Wrong mix", category="materials",
                                           affected_work_units=[b.id])

        assert result["issue"]["affected_work_unit_ids"] == [a.id, b.id]
        assert [s["status"] for s in result["work_unit_status"]] == ["issue_raised", "issue_raised"]
        assert _status(b) == "issue_raised"

    def test_major_issue_notifies_managers(self, work_unit):
        _raise(work_unit, severity="major")

        recipients = sorted(n.recipient for n in db.session.execute(
            select(Notification).where(Notification.template == "issue_raised")
        ).scalars())
        assert recipients == ["pm@example.test", "qm@example.test", "sub@example.test"]


class TestResponseAndReview:
    def test_respond_moves_to_investigating(self, work_unit):
        issue = _raise(work_unit)
        result = _respond(issue)

        assert result["issue"]["status"] == "investigating"
        assert result["issue"]["root_cause_description"] == "Poor vibration"
        assert result["auto_accepted"] is False

    def test_respond_requires_fields(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(ValidationError):
            issue_service.respond(issue["id"], root_cause="", proposed_action="")

    def test_minor_auto_accept(self, app, monkeypatch, work_unit):
        monkeypatch.setitem(app.config, "ISSUE_MINOR_AUTO_ACCEPT", True)
        issue = _raise(work_unit)

        result = _respond(issue)

        assert result["auto_accepted"] is True
        assert result["issue"]["status"] == "rectification"

    def test_major_never_auto_accepted(self, app, monkeypatch, work_unit):
        monkeypatch.setitem(app.config, "ISSUE_MINOR_AUTO_ACCEPT", True)
        issue = _raise(work_unit, severity="major")

        assert _respond(issue)["issue"]["status"] == "investigating"

    def test_request_revision_counts(self, work_unit):
        issue = _raise(work_unit)
        _respond(issue)

        issue_service.qm_review(issue["id"], action="request_revision", comments="More detail")
        result = issue_service.qm_review(issue["id"], action="request_revision", comments="Still vague")

        assert result["issue"]["status"] == "investigating"
        assert result["issue"]["revision_count"] == 2
        assert result["issue"]["revision_requested"] is True

    def test_review_requires_investigating(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(TransitionError):
            issue_service.qm_review(issue["id"], action="accept")

    def test_unknown_action(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(ValidationError):
            issue_service.qm_review(issue["id"], action="ignore")

    def test_minor_cannot_be_escalated(self, work_unit):
        issue = _raise(work_unit)
        _respond(issue)
        with pytest.raises(ValidationError):
            issue_service.qm_review(issue["id"], action="escalate", comments="Needs director")

    @pytest.mark.parametrize("stage", ["open", "rectification"])
    def test_minor_escalation_outside_investigating_is_conflict(self, work_unit, stage):
        issue = _raise(work_unit)
        if stage == "rectification":
            _respond(issue)
            issue_service.qm_review(issue["id"], action="accept")

        with pytest.raises(TransitionError) as exc_info:
            issue_service.qm_review(issue["id"], action="escalate", comments="Needs director")
        assert exc_info.value.current_status == stage

    def test_minor_escalation_when_policy_allows(self, app, monkeypatch, work_unit):
        monkeypatch.setitem(app.config, "ISSUE_ESCALATION_MAJOR_ONLY", False)
        issue = _raise(work_unit)
        _respond(issue)

        result = issue_service.qm_review(issue["id"], action="escalate", comments="Needs director")
        assert result["issue"]["status"] == "escalated"

    def test_escalated_issue_keeps_unit_blocked(self, work_unit):
        issue = _raise(work_unit, severity="major")
        _respond(issue)

        result = issue_service.qm_review(issue["id"], action="escalate", comments="Structural",
                                         escalated_to="director@example.test", now=T0)

        assert result["issue"]["status"] == "escalated"
        assert result["issue"]["escalated_to"] == "director@example.test"
        assert _status(work_unit) == "issue_raised"
        with pytest.raises(TransitionError):
            issue_service.qm_approve(issue["id"], approved_by="qm-1")

    def test_escalation_needs_comments(self, work_unit):
        issue = _raise(work_unit, severity="major")
        _respond(issue)
        with pytest.raises(ValidationError):
            issue_service.qm_review(issue["id"], action="escalate")


class TestRectification:
    def test_rectify_without_evidence_warns(self, work_unit):
        issue = _raise(work_unit)
        _respond(issue)
        issue_service.qm_review(issue["id"], action="accept")

        result = issue_service.rectify(issue["id"], rectification_notes="Patched")

        assert result["issue"]["status"] == "rectification"
        assert result["warnings"]

    def test_rectify_with_evidence(self, work_unit):
        issue = _raise(work_unit)
        result = _to_verification(issue)

        assert result["issue"]["status"] == "verification"
        assert result["warnings"] == []
        assert result["issue"]["evidence"][0]["document_ref"] == "ncr/1/after.jpg"

    def test_evidence_added_beforehand_counts(self, work_unit):
        issue = _raise(work_unit)
        _respond(issue)
        issue_service.qm_review(issue["id"], action="accept")
        added = issue_service.add_evidence(issue["id"], document_ref="ncr/1/cert.pdf",
                                           evidence_type="test_result", filename="cert.pdf")
        assert added["evidence_type"] == "test_result"

        assert issue_service.rectify(issue["id"])["issue"]["status"] == "verification"

    def test_unknown_evidence_type(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(ValidationError):
            issue_service.add_evidence(issue["id"], document_ref="a.jpg", evidence_type="video")

    def test_reject_rectification(self, work_unit):
        issue = _raise(work_unit)
        _to_verification(issue)

        result = issue_service.reject_rectification(issue["id"], feedback="Finish is uneven")

        assert result["issue"]["status"] == "rectification"
        assert result["issue"]["revision_count"] == 1
        assert result["issue"]["verification_feedback"] == "Finish is uneven"


class TestClose:
    def test_close_minor_releases_unit(self, work_unit):
        issue = _raise(work_unit)
        _to_verification(issue)

        result = issue_service.close(issue["id"], verification_notes="Checked", closed_by="qm-1", now=T0)

        assert result["issue"]["status"] == "closed"
        assert result["work_unit_status"][0]["status"] == "not_started"
        assert _status(work_unit) == "not_started"

    def test_major_requires_qm_approval(self, work_unit):
        issue = _raise(work_unit, severity="major")
        _to_verification(issue)

        with pytest.raises(ValidationError):
            issue_service.close(issue["id"], closed_by="qm-1")

        issue_service.qm_approve(issue["id"], approved_by="qm-1", now=T0)
        with pytest.raises(ConflictError):
            issue_service.qm_approve(issue["id"], approved_by="qm-1")

        assert issue_service.close(issue["id"], closed_by="qm-1")["issue"]["status"] == "closed"

    def test_qm_approval_is_for_major_only(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(ValidationError):
            issue_service.qm_approve(issue["id"], approved_by="qm-1")

    def test_close_with_concession(self, work_unit):
        issue = _raise(work_unit)
        _to_verification(issue)

        with pytest.raises(ValidationError):
            issue_service.close(issue["id"], with_concession=True)

        result = issue_service.close(issue["id"], with_concession=True,
                                     concession_justification="Within tolerance per engineer",
                                     risk_assessment="Low")
        assert result["issue"]["status"] == "closed_concession"
        assert result["issue"]["concession_risk_assessment"] == "Low"
        assert _status(work_unit) == "not_started"

    def test_close_requires_verification(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(TransitionError):
            issue_service.close(issue["id"])

    def test_major_close_before_verification_is_conflict(self, work_unit):
        issue = _raise(work_unit, severity="major")

        with pytest.raises(TransitionError) as exc_info:
            issue_service.close(issue["id"], closed_by="qm-1")
        assert exc_info.value.current_status == "open"

        with pytest.raises(TransitionError):
            issue_service.close(issue["id"], with_concession=True, concession_justification="Tolerance")

    def test_one_open_issue_still_blocks(self, work_unit):
        first = _raise(work_unit)
        _raise(work_unit, description="Cold joint")
        _to_verification(first)

        result = issue_service.close(first["id"])

        assert result["work_unit_status"][0]["open_issues"] == 1
        assert _status(work_unit) == "issue_raised"

    def test_reopen(self, work_unit):
        issue = _raise(work_unit)
        _to_verification(issue)
        issue_service.close(issue["id"])

        with pytest.raises(ValidationError):
            issue_service.reopen(issue["id"], reason="")
        result = issue_service.reopen(issue["id"], reason="Cracking returned", now=T0)

        assert result["issue"]["status"] == "rectification"
        assert result["issue"]["closed_at"] is None
        assert _status(work_unit) == "issue_raised"

    def test_no_evidence_after_close(self, work_unit):
        issue = _raise(work_unit)
        _to_verification(issue)
        issue_service.close(issue["id"])

        with pytest.raises(TransitionError):
            issue_service.add_evidence(issue["id"], document_ref="late.jpg")


class TestIssueAndHoldPoint:
    def test_released_hold_point_does_not_clear_open_issue(self, work_unit, checkpoint):
        assert _status(work_unit) == "on_hold"

        issue = _raise(work_unit)
        assert _status(work_unit) == "issue_raised"

        checkpoint_service.notify(checkpoint["id"], now=T0)
        released = checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client", now=T0)
        assert released["checkpoint"]["status"] == "released"
        assert released["work_unit_status"]["status"] == "issue_raised"
        assert released["work_unit_status"]["blocking_checkpoints"] == 0

        _respond(issue)
        assert _status(work_unit) == "issue_raised"
        issue_service.qm_review(issue["id"], action="accept", now=T0)
        assert _status(work_unit) == "issue_raised"
        issue_service.rectify(issue["id"], evidence_refs=["ncr/1/after.jpg"], now=T0)
        assert _status(work_unit) == "issue_raised"

        result = issue_service.close(issue["id"], closed_by="qm-1", now=T0)

        assert result["work_unit_status"][0]["status"] == "in_progress"
        assert _status(work_unit) == "in_progress"


class TestClientNotification:
    def test_major_issue_package_sent_once(self, make_work_unit):
        a, b = make_work_unit(), make_work_unit()
        issue = issue_service.raise_issue(a.id, description="Wrong mix", category="materials",
                                          severity="major", affected_work_units=[b.id],
                                          specification_reference="MRTS70 cl. 12")["issue"]

        result = issue_service.notify_client(issue["id"], recipient_email="client@example.com",
                                             message="Please review", notified_by="pm-1", now=T0)

        package = result["notification_package"]
        assert package["lot_numbers"] == ["LOT-001", "LOT-002"]
        assert package["specification_reference"] == "MRTS70 cl. 12"
        assert result["issue"]["client_notified_at"] is not None
        with pytest.raises(ConflictError):
            issue_service.notify_client(issue["id"], recipient_email="client@example.com")

    def test_minor_issue_rejected(self, work_unit):
        issue = _raise(work_unit)
        with pytest.raises(ValidationError):
            issue_service.notify_client(issue["id"], recipient_email="client@example.com")

    def test_invalid_email(self, work_unit):
        issue = _raise(work_unit, severity="major")
        with pytest.raises(ValidationError):
            issue_service.notify_client(issue["id"], recipient_email="client")


class TestListing:
    def test_filters(self, project, work_unit):
        first = _raise(work_unit)
        _raise(work_unit, description="Cold joint")
        _to_verification(first)
        issue_service.close(first["id"])

        assert len(issue_service.list_project_issues(project.id)) == 2
        open_issues = issue_service.list_project_issues(project.id, open_only=True)
        assert [i["issue_number"] for i in open_issues] == ["NCR-0002"]
        assert len(issue_service.list_project_issues(project.id, status="closed")) == 1
