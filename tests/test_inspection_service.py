"""Inspection instance tracker: assignment, completions, verification, witness notices."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from siteqa.core.exceptions import ConflictError, NotFoundError, TransitionError, ValidationError
from siteqa.models import db
from siteqa.models.checkpoint import Checkpoint
from siteqa.models.notification import Notification
from siteqa.models.work_unit import WorkUnit
from siteqa.services import inspection_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _notifications(template):
    return db.session.execute(
        select(Notification).where(Notification.template == template)
    ).scalars().all()


class TestAssignTemplate:
    def test_assign_creates_instance_with_snapshot(self, work_unit, template):
        view = inspection_service.assign_template(work_unit.id, template.id, assigned_by="pm-1")

        assert view["work_unit_id"] == work_unit.id
        assert view["template_id"] == template.id
        assert view["assigned_by"] == "pm-1"
        assert view["completions"] == []
        assert view["progress"] == {"total_items": 4, "finished_items": 0}

    def test_second_assignment_conflicts(self, work_unit, template, instance):
        with pytest.raises(ConflictError):
            inspection_service.assign_template(work_unit.id, template.id)

    def test_unknown_template(self, work_unit):
        with pytest.raises(NotFoundError):
            inspection_service.assign_template(work_unit.id, 9999)

    def test_unknown_work_unit(self, template):
        with pytest.raises(NotFoundError):
            inspection_service.assign_template(9999, template.id)


class TestGetInstance:
    def test_filter_by_responsible_party(self, work_unit, instance, items):
        inspection_service.record_completion(instance["id"], items["formwork"], "completed", now=T0)
        inspection_service.record_completion(instance["id"], items["hold"], "completed", now=T0)

        view = inspection_service.get_instance(work_unit.id, responsible_party="superintendent")

        assert [i["id"] for i in view["snapshot"]["items"]] == [items["hold"]]
        assert [c["checklist_item_id"] for c in view["completions"]] == [items["hold"]]
        assert view["responsible_party_filter"] == "superintendent"

    def test_missing_instance(self, work_unit):
        with pytest.raises(NotFoundError):
            inspection_service.get_instance(work_unit.id)


class TestRecordCompletion:
    def test_standard_item_completion(self, work_unit, instance, items):
        result = inspection_service.record_completion(
            instance["id"], items["formwork"], "completed",
            evidence_refs=["lots/1/a.jpg"], notes="All good", completed_by="sub-1", now=T0,
        )

        completion = result["completion"]
        assert completion["status"] == "completed"
        assert completion["is_completed"] is True
        assert completion["verification_status"] == "none"
        assert completion["attachments"] == ["lots/1/a.jpg"]
        assert completion["completed_by"] == "sub-1"
        assert result["checkpoint"] is None

    def test_first_finished_item_starts_progress(self, work_unit, instance, items):
        inspection_service.record_completion(instance["id"], items["formwork"], "not_applicable", now=T0)

        unit = db.session.get(WorkUnit, work_unit.id)
        assert unit.progress_status == "in_progress"
        assert unit.status == "in_progress"

    def test_not_applicable_counts_as_finished(self, instance, items):
        result = inspection_service.record_completion(instance["id"], items["formwork"], "not_applicable")
        assert result["completion"]["is_completed"] is True
        assert result["completion"]["is_not_applicable"] is True

    def test_completion_upserts_and_appends_evidence(self, instance, items):
        iid = instance["id"]
        inspection_service.record_completion(iid, items["formwork"], "failed", evidence_refs=["a.jpg"])
        result = inspection_service.record_completion(iid, items["formwork"], "completed",
                                                      evidence_refs=["b.jpg"])

        assert result["completion"]["attachments"] == ["a.jpg", "b.jpg"]
        assert len(inspection_service.get_instance(instance["work_unit_id"])["completions"]) == 1

    def test_hold_item_completion_opens_pending_checkpoint(self, work_unit, instance, items):
        result = inspection_service.record_completion(instance["id"], items["hold"], "completed", now=T0)

        assert result["checkpoint"]["status"] == "pending"
        assert result["completion"]["verification_status"] == "pending_verification"
        assert result["work_unit_status"]["status"] == "on_hold"
        assert db.session.get(WorkUnit, work_unit.id).status == "on_hold"

    def test_completing_hold_item_twice_reuses_checkpoint(self, instance, items):
        first = inspection_service.record_completion(instance["id"], items["hold"], "completed", now=T0)
        second = inspection_service.record_completion(instance["id"], items["hold"], "completed", now=T0)

        assert first["checkpoint"]["id"] == second["checkpoint"]["id"]
        assert len(db.session.execute(select(Checkpoint)).scalars().all()) == 1

    def test_invalid_status(self, instance, items):
        with pytest.raises(ValidationError):
            inspection_service.record_completion(instance["id"], items["formwork"], "done")

    def test_unknown_item(self, instance):
        with pytest.raises(NotFoundError):
            inspection_service.record_completion(instance["id"], 9999, "completed")

    def test_witness_point_notice_sent_once(self, instance, items):
        inspection_service.record_completion(instance["id"], items["formwork"], "completed", now=T0)
        inspection_service.record_completion(instance["id"], items["formwork"], "completed", now=T0)

        notices = _notifications("witness_point_approaching")
        recipients = sorted(n.recipient for n in notices)
        assert recipients == ["pm@example.test", "super@example.test"]
        assert "Slump test" in notices[0].message

    def test_no_witness_notice_when_witness_already_finished(self, instance, items):
        inspection_service.record_completion(instance["id"], items["slump"], "completed", now=T0)
        inspection_service.record_completion(instance["id"], items["formwork"], "completed", now=T0)

        assert _notifications("witness_point_approaching") == []


class TestVerifyCompletion:
    def test_verify_completed_item(self, instance, items):
        result = inspection_service.record_completion(instance["id"], items["slump"], "completed", now=T0)
        assert result["completion"]["is_pending_verification"] is True

        verified = inspection_service.verify_completion(result["completion"]["id"], verified_by="qm-1", now=T0)

        assert verified["verification_status"] == "verified"
        assert verified["verified_by"] == "qm-1"
        assert verified["is_verified"] is True

    def test_verify_requires_completed_status(self, instance, items):
        result = inspection_service.record_completion(instance["id"], items["formwork"], "failed")
        with pytest.raises(TransitionError):
            inspection_service.verify_completion(result["completion"]["id"], verified_by="qm-1")

    def test_verify_unknown_completion(self):
        with pytest.raises(NotFoundError):
            inspection_service.verify_completion(9999, verified_by="qm-1")
