"""Stale checkpoint escalation and overdue issue reminders."""

from datetime import date, datetime, timedelta, timezone

from sqlalchemy import func, select

from siteqa.models import db
from siteqa.models.checkpoint import Checkpoint
from siteqa.models.notification import Notification
from siteqa.services import checkpoint_service, issue_service
from siteqa.services.escalation_scan import (
    SYSTEM_ACTOR,
    find_overdue_issues,
    find_stale_checkpoints,
    run_escalation_scan,
)

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


def _count(template):
    return db.session.execute(
        select(func.count(Notification.id)).where(Notification.template == template)
    ).scalar_one()


def test_pending_checkpoints_are_ignored(checkpoint):
    assert find_stale_checkpoints(T0 + timedelta(days=5)) == []


def test_levels(checkpoint):
    checkpoint_service.notify(checkpoint["id"], now=T0)

    assert find_stale_checkpoints(T0 + timedelta(hours=23)) == []
    assert find_stale_checkpoints(T0 + timedelta(hours=25))[0]["level"] == 1
    assert find_stale_checkpoints(T0 + timedelta(hours=49))[0]["level"] == 2


def test_first_threshold_escalates_once(checkpoint):
    checkpoint_service.notify(checkpoint["id"], now=T0)

    summary = run_escalation_scan(T0 + timedelta(hours=25))
    assert summary == {"escalated": [checkpoint["id"]], "stale_reminders": 0, "overdue_reminders": 0}

    cp = db.session.get(Checkpoint, checkpoint["id"])
    assert cp.is_escalated is True
    assert cp.escalated_by == SYSTEM_ACTOR
    assert cp.status == "notified"

    assert run_escalation_scan(T0 + timedelta(hours=26))["escalated"] == []
    assert _count("checkpoint_escalated") == 2


def test_second_threshold_reminds_daily(checkpoint):
    checkpoint_service.notify(checkpoint["id"], now=T0)

    first = run_escalation_scan(T0 + timedelta(hours=49))
    same_day = run_escalation_scan(T0 + timedelta(hours=50))
    next_day = run_escalation_scan(T0 + timedelta(hours=73))

    assert first["escalated"] == [checkpoint["id"]]
    assert first["stale_reminders"] == 2
    assert same_day["stale_reminders"] == 0
    assert next_day["stale_reminders"] == 2
    assert _count("checkpoint_stale") == 4


def test_chase_resets_idle_time(checkpoint):
    checkpoint_service.notify(checkpoint["id"], now=T0)
    checkpoint_service.chase(checkpoint["id"], now=T0 + timedelta(hours=20))

    assert run_escalation_scan(T0 + timedelta(hours=30))["escalated"] == []


def test_released_checkpoint_is_not_stale(checkpoint):
    checkpoint_service.notify(checkpoint["id"], now=T0)
    checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client", now=T0)

    assert find_stale_checkpoints(T0 + timedelta(days=3)) == []


def test_overdue_issue_reminders(work_unit):
    overdue = issue_service.raise_issue(work_unit.id, description="Low density", category="testing",
                                        due_date=date(2026, 3, 1),
                                        responsible_party="sub@example.test")["issue"]
    issue_service.raise_issue(work_unit.id, description="Not yet due", category="testing",
                              due_date=date(2026, 3, 20))

    assert [i.id for i in find_overdue_issues(date(2026, 3, 2))] == [overdue["id"]]

    summary = run_escalation_scan(T0)
    assert summary["overdue_reminders"] == 3
    assert run_escalation_scan(T0 + timedelta(hours=1))["overdue_reminders"] == 0


def test_closed_issue_is_not_overdue(work_unit):
    issue = issue_service.raise_issue(work_unit.id, description="Low density", category="testing",
                                      due_date=date(2026, 3, 1))["issue"]
    issue_service.respond(issue["id"], root_cause="Moisture", proposed_action="Rework")
    issue_service.qm_review(issue["id"], action="accept")
    issue_service.rectify(issue["id"], evidence_refs=["retest.pdf"])
    issue_service.close(issue["id"])

    assert find_overdue_issues(date(2026, 3, 5)) == []
