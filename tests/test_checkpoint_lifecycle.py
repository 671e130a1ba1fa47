"""Checkpoint lifecycle: notify, chase, escalate, release, reject, release requests."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from siteqa.core.exceptions import ConflictError, NotFoundError, TransitionError, ValidationError
from siteqa.models import db
from siteqa.models.checkpoint import Checkpoint
from siteqa.models.notification import Notification
from siteqa.models.work_unit import WorkUnit
from siteqa.services import checkpoint_service, inspection_service

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _notifications(template):
    return db.session.execute(
        select(Notification).where(Notification.template == template).order_by(Notification.id)
    ).scalars().all()


def _notify(checkpoint, **kwargs):
    kwargs.setdefault("notified_to", "super@example.test")
    kwargs.setdefault("now", T0)
    return checkpoint_service.notify(checkpoint["id"], **kwargs)


class TestNotify:
    def test_pending_to_notified(self, checkpoint):
        result = _notify(checkpoint)

        assert result["checkpoint"]["status"] == "notified"
        assert result["checkpoint"]["notified_to"] == "super@example.test"
        assert result["checkpoint"]["notification_sent_at"] is not None
        assert result["already_notified"] is False
        assert result["work_unit_status"]["status"] == "on_hold"
        assert [n.recipient for n in _notifications("checkpoint_release_requested")] == [
            "super@example.test"
        ]

    def test_notify_twice_is_a_no_op(self, checkpoint):
        _notify(checkpoint)
        again = _notify(checkpoint, now=T0 + timedelta(hours=2))

        assert again["already_notified"] is True
        assert len(_notifications("checkpoint_release_requested")) == 1

    def test_notify_released_checkpoint(self, checkpoint):
        _notify(checkpoint)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client", now=T0)

        with pytest.raises(TransitionError):
            _notify(checkpoint)

    def test_unknown_checkpoint(self):
        with pytest.raises(NotFoundError):
            checkpoint_service.notify(9999)


class TestChase:
    def test_chase_only_while_notified(self, checkpoint):
        with pytest.raises(TransitionError):
            checkpoint_service.chase(checkpoint["id"], now=T0)

    def test_chase_increments_count(self, checkpoint):
        _notify(checkpoint)
        checkpoint_service.chase(checkpoint["id"], now=T0 + timedelta(hours=4))
        result = checkpoint_service.chase(checkpoint["id"], now=T0 + timedelta(hours=8))

        assert result["checkpoint"]["chase_count"] == 2
        assert result["checkpoint"]["last_chased_at"].startswith("2026-03-02T17:00")
        assert len(_notifications("checkpoint_chased")) == 2


class TestEscalation:
    def test_reason_required(self, checkpoint):
        with pytest.raises(ValidationError):
            checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="  ")

    def test_defaults_to_project_managers(self, checkpoint):
        result = checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1",
                                             reason="Superintendent unreachable", now=T0)

        escalation = result["checkpoint"]["escalation"]
        assert result["checkpoint"]["is_escalated"] is True
        assert result["checkpoint"]["status"] == "pending"
        assert escalation["escalated_to"] == ["pm@example.test", "qm@example.test"]
        assert escalation["resolved"] is False
        assert len(_notifications("checkpoint_escalated")) == 2

    def test_escalations_do_not_stack(self, checkpoint):
        checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="first", now=T0)

        with pytest.raises(ConflictError) as exc_info:
            checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="second")
        assert not isinstance(exc_info.value, TransitionError)

    def test_resolve_then_escalate_again(self, checkpoint):
        checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="first", now=T0)
        resolved = checkpoint_service.resolve_escalation(checkpoint["id"], resolved_by="qm-1", now=T0)
        assert resolved["checkpoint"]["escalation"]["resolved"] is True
        assert resolved["checkpoint"]["escalation"]["resolved_by"] == "qm-1"

        again = checkpoint_service.escalate(checkpoint["id"], escalated_by="qm-1",
                                            recipients=["director@example.test"], reason="second")
        assert again["checkpoint"]["escalation"]["escalated_to"] == ["director@example.test"]
        assert again["checkpoint"]["escalation"]["resolved"] is False

    def test_resolve_without_open_escalation(self, checkpoint):
        with pytest.raises(ConflictError):
            checkpoint_service.resolve_escalation(checkpoint["id"], resolved_by="qm-1")

    def test_cannot_escalate_released_checkpoint(self, checkpoint):
        _notify(checkpoint)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client", now=T0)

        with pytest.raises(TransitionError):
            checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="late")


class TestRelease:
    def test_release_requires_notified(self, checkpoint):
        with pytest.raises(TransitionError):
            checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

    def test_release_clears_hold_and_verifies_item(self, work_unit, checkpoint, items):
        _notify(checkpoint)
        result = checkpoint_service.release(
            checkpoint["id"], released_by_name="Jane Client", released_by_org="Client Co",
            notes="Cover checked", now=T0 + timedelta(hours=1),
        )

        cp = result["checkpoint"]
        assert cp["status"] == "released"
        assert cp["released_by_name"] == "Jane Client"
        assert cp["released_by_org"] == "Client Co"
        assert cp["release_method"] == "digital"
        assert result["work_unit_status"]["status"] == "in_progress"
        assert db.session.get(WorkUnit, work_unit.id).status == "in_progress"

        completions = inspection_service.get_instance(work_unit.id)["completions"]
        hold = next(c for c in completions if c["checklist_item_id"] == items["hold"])
        assert hold["verification_status"] == "verified"
        assert hold["verified_by"] == "Jane Client"

    def test_release_resolves_open_escalation(self, checkpoint):
        checkpoint_service.escalate(checkpoint["id"], escalated_by="pm-1", reason="waiting", now=T0)
        _notify(checkpoint)

        result = checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client", now=T0)

        assert result["checkpoint"]["escalation"]["resolved"] is True
        assert result["checkpoint"]["escalation"]["resolved_by"] == "Jane Client"

    def test_release_twice(self, checkpoint):
        _notify(checkpoint)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

        with pytest.raises(TransitionError):
            checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

    def test_name_and_method_validated(self, checkpoint):
        with pytest.raises(ValidationError):
            checkpoint_service.release(checkpoint["id"], released_by_name="")
        with pytest.raises(ValidationError):
            checkpoint_service.release(checkpoint["id"], released_by_name="Jane", method="pigeon")

    def test_release_notifies_managers(self, checkpoint):
        _notify(checkpoint)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

        recipients = sorted(n.recipient for n in _notifications("checkpoint_released"))
        assert recipients == ["pm@example.test", "qm@example.test"]


class TestReject:
    def test_reason_required(self, checkpoint):
        _notify(checkpoint)
        with pytest.raises(ValidationError):
            checkpoint_service.reject(checkpoint["id"], reason="")

    def test_rejected_checkpoint_keeps_unit_on_hold(self, work_unit, checkpoint):
        _notify(checkpoint)
        result = checkpoint_service.reject(checkpoint["id"], reason="Cover too shallow",
                                           rejected_by="sup-1", now=T0)

        assert result["checkpoint"]["status"] == "rejected"
        assert result["checkpoint"]["rejection_reason"] == "Cover too shallow"
        assert result["work_unit_status"]["status"] == "on_hold"
        assert result["work_unit_status"]["blocking_checkpoints"] == 1

    def test_reject_requires_notified(self, checkpoint):
        with pytest.raises(TransitionError):
            checkpoint_service.reject(checkpoint["id"], reason="No access")

    def test_reinspection_supersedes_rejected_checkpoint(self, project, checkpoint, instance, items):
        _notify(checkpoint)
        checkpoint_service.reject(checkpoint["id"], reason="Cover too shallow")

        result = inspection_service.record_completion(instance["id"], items["hold"], "completed",
                                                      now=T0 + timedelta(days=1))

        fresh = result["checkpoint"]
        assert fresh["id"] != checkpoint["id"]
        assert fresh["status"] == "pending"
        assert db.session.get(Checkpoint, checkpoint["id"]).superseded_at is not None
        listed = checkpoint_service.list_project_checkpoints(project.id)
        assert [c["id"] for c in listed] == [fresh["id"]]


class TestRequestRelease:
    def test_incomplete_items_are_listed(self, work_unit, instance, items):
        with pytest.raises(ValidationError) as exc_info:
            checkpoint_service.request_release(work_unit.id, items["hold"])

        incomplete = exc_info.value.details["incomplete_items"]
        assert [i["id"] for i in incomplete] == [items["formwork"], items["slump"]]
        assert incomplete[0]["status"] == "pending"

    def test_only_hold_points(self, work_unit, instance, items):
        with pytest.raises(ValidationError):
            checkpoint_service.request_release(work_unit.id, items["slump"])

    def test_request_opens_and_notifies(self, work_unit, instance, items):
        iid = instance["id"]
        inspection_service.record_completion(iid, items["formwork"], "completed", now=T0)
        inspection_service.record_completion(iid, items["slump"], "not_applicable", now=T0)

        result = checkpoint_service.request_release(
            work_unit.id, items["hold"], notified_to="super@example.test",
            scheduled_date=T0 + timedelta(days=1), now=T0,
        )

        assert result["checkpoint"]["status"] == "notified"
        assert result["checkpoint"]["scheduled_date"].startswith("2026-03-03")
        assert result["work_unit_status"]["status"] == "on_hold"

    def test_request_after_release(self, work_unit, checkpoint, items):
        _notify(checkpoint)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

        with pytest.raises(TransitionError):
            checkpoint_service.request_release(work_unit.id, items["hold"])


class TestReads:
    def test_detail_before_prerequisites(self, work_unit, instance, items):
        detail = checkpoint_service.get_checkpoint_detail(work_unit.id, items["hold"])

        assert detail["checkpoint"] is None
        assert detail["item"]["is_hold_point"] is True
        assert detail["incomplete_count"] == 2
        assert detail["can_request_release"] is False

    def test_detail_ready_for_release(self, work_unit, checkpoint, items):
        detail = checkpoint_service.get_checkpoint_detail(work_unit.id, items["hold"])

        assert detail["checkpoint"]["id"] == checkpoint["id"]
        assert detail["incomplete_count"] == 0
        assert detail["can_request_release"] is True

    def test_list_filters_by_status(self, project, checkpoint):
        assert len(checkpoint_service.list_project_checkpoints(project.id, status="pending")) == 1
        assert checkpoint_service.list_project_checkpoints(project.id, status="released") == []
        assert checkpoint_service.list_project_checkpoints(project.id)[0]["lot_number"] == "LOT-001"

    def test_external_evidence_package_hides_identities(self, checkpoint):
        cp = db.session.get(Checkpoint, checkpoint["id"])
        package = checkpoint_service.build_evidence_package(cp, external=True)

        assert package["project"] == {"name": "Northern Bypass Stage 2", "code": "NBS2"}
        assert package["summary"]["total_items"] == 3
        assert package["summary"]["completed_items"] == 3
        assert package["summary"]["attachment_count"] == 2
        assert "notified_to" not in package["checkpoint"]
        assert "escalation" not in package["checkpoint"]
        for entry in package["checklist"]:
            assert "completed_by" not in entry["completion"]
        assert package["checklist"][0]["attachments"][0]["url"] == (
            "https://files.example.test/lots/1/formwork.jpg"
        )

    def test_internal_evidence_package_keeps_identities(self, checkpoint):
        cp = db.session.get(Checkpoint, checkpoint["id"])
        package = checkpoint_service.build_evidence_package(cp)

        assert "notified_to" in package["checkpoint"]
        assert "completed_by" in package["checklist"][0]["completion"]


class TestNotificationTime:
    @pytest.mark.parametrize("requested, scheduled, adjusted", [
        # Monday inside hours
        (datetime(2026, 3, 2, 10, 30, tzinfo=timezone.utc), "2026-03-02T10:30:00+00:00", False),
        # Monday before start
        (datetime(2026, 3, 2, 6, 0, tzinfo=timezone.utc), "2026-03-02T07:00:00+00:00", True),
        # Monday after end
        (datetime(2026, 3, 2, 18, 0, tzinfo=timezone.utc), "2026-03-03T07:00:00+00:00", True),
        # Friday evening rolls over the weekend
        (datetime(2026, 3, 6, 19, 0, tzinfo=timezone.utc), "2026-03-09T07:00:00+00:00", True),
        # Saturday
        (datetime(2026, 3, 7, 10, 0, tzinfo=timezone.utc), "2026-03-09T07:00:00+00:00", True),
    ])
    def test_shift_into_working_window(self, project, requested, scheduled, adjusted):
        result = checkpoint_service.calculate_notification_time(project.id, requested)

        assert result["scheduled"] == scheduled
        assert result["adjusted"] is adjusted

    def test_window_applies_in_requested_offset(self, project):
        site = timezone(timedelta(hours=10))
        result = checkpoint_service.calculate_notification_time(
            project.id, datetime(2026, 3, 2, 6, 30, tzinfo=site),
        )
        assert result["scheduled"] == "2026-03-02T07:00:00+10:00"
        assert result["reason"] == "Before working hours; moved to start of day"

    def test_unknown_project(self):
        with pytest.raises(NotFoundError):
            checkpoint_service.calculate_notification_time(9999, T0)

    def test_zero_means_sunday(self, project):
        project.working_days = "0"
        db.session.commit()

        result = checkpoint_service.calculate_notification_time(
            project.id, datetime(2026, 3, 7, 10, 0, tzinfo=timezone.utc),
        )
        assert result["scheduled"] == "2026-03-08T07:00:00+00:00"
        assert result["reason"] == "Non-working day; moved to next working day"

    def test_weekend_only_site_rolls_forward_within_a_week(self, project):
        project.working_days = "6"
        db.session.commit()

        result = checkpoint_service.calculate_notification_time(
            project.id, datetime(2026, 3, 7, 18, 0, tzinfo=timezone.utc),
        )
        assert result["scheduled"] == "2026-03-14T07:00:00+00:00"

    @pytest.mark.parametrize("working_days", ["8", "1,2,x", "-1"])
    def test_invalid_working_days(self, project, working_days):
        project.working_days = working_days
        db.session.commit()

        with pytest.raises(ValidationError) as exc_info:
            checkpoint_service.calculate_notification_time(project.id, T0)
        assert exc_info.value.details == {"working_days": working_days}
