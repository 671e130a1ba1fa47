"""Single-use external release links."""

import re
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from siteqa import create_app
from siteqa.config import TestingConfig, config
from siteqa.core.exceptions import (
    ConflictError,
    ExpiredError,
    NotFoundError,
    TransitionError,
    ValidationError,
)
from siteqa.models import db
from siteqa.models.audit import AuditLog
from siteqa.models.checkpoint import Checkpoint, ReleaseToken
from siteqa.models.inspection import ChecklistItem, InspectionTemplate
from siteqa.models.notification import Notification
from siteqa.models.project import Project
from siteqa.models.work_unit import WorkUnit
from siteqa.services import checkpoint_service, inspection_service
from siteqa.services import release_token_service as tokens

T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def issued(checkpoint):
    return tokens.issue_token(checkpoint["id"], recipient_email="Client.Rep@Example.com",
                              recipient_name="Client Rep", issued_by="pm-1", now=T0)


class TestIssue:
    def test_issue_notifies_pending_checkpoint(self, checkpoint, issued):
        cp = db.session.get(Checkpoint, checkpoint["id"])
        assert cp.status == "notified"
        assert cp.notified_to == "Client.Rep@example.com"

    def test_secret_shape_and_link(self, issued):
        assert re.fullmatch(r"[0-9a-f]{64}", issued["secret"])
        assert issued["release_url"] == f"https://qa.example.test/release/{issued['secret']}"
        assert issued["token"]["recipient_email"] == "Client.Rep@example.com"
        assert issued["token"]["used_at"] is None
        assert issued["token"]["expires_at"].startswith("2026-03-04T09:00")

    def test_only_the_hash_is_stored(self, issued):
        row = db.session.execute(select(ReleaseToken)).scalar_one()
        assert row.token_hash == tokens.hash_secret(issued["secret"])
        assert row.token_hash != issued["secret"]

    def test_secret_never_reaches_outbox_or_audit(self, issued):
        secret = issued["secret"]
        for n in db.session.execute(select(Notification)).scalars():
            assert secret not in (n.title or "")
            assert secret not in (n.message or "")
        for entry in db.session.execute(select(AuditLog)).scalars():
            assert secret not in repr(entry.diff)

    def test_reissue_replaces_unused_link(self, checkpoint, issued):
        second = tokens.issue_token(checkpoint["id"], recipient_email="client@example.com", now=T0)

        rows = db.session.execute(select(ReleaseToken)).scalars().all()
        assert [r.token_hash for r in rows] == [tokens.hash_secret(second["secret"])]
        with pytest.raises(NotFoundError):
            tokens.resolve(issued["secret"], now=T0)

    def test_invalid_email(self, checkpoint):
        with pytest.raises(ValidationError):
            tokens.issue_token(checkpoint["id"], recipient_email="not-an-email")

    def test_non_positive_ttl(self, checkpoint):
        with pytest.raises(ValidationError):
            tokens.issue_token(checkpoint["id"], recipient_email="client@example.com", ttl_hours=0)

    def test_terminal_checkpoint(self, checkpoint):
        checkpoint_service.notify(checkpoint["id"], now=T0)
        checkpoint_service.release(checkpoint["id"], released_by_name="Jane Client")

        with pytest.raises(TransitionError):
            tokens.issue_token(checkpoint["id"], recipient_email="client@example.com")

    def test_revoke(self, checkpoint, issued):
        assert tokens.revoke_tokens(checkpoint["id"], actor="pm-1") == 1
        with pytest.raises(NotFoundError):
            tokens.resolve(issued["secret"], now=T0)


class TestResolve:
    def test_resolve_returns_external_package(self, issued):
        view = tokens.resolve(issued["secret"], now=T0 + timedelta(hours=1))

        assert view["is_public_access"] is True
        assert view["token_info"]["recipient_name"] == "Client Rep"
        package = view["evidence_package"]
        assert package["checkpoint"]["status"] == "notified"
        assert "notified_to" not in package["checkpoint"]

    def test_unknown_secret(self, issued):
        with pytest.raises(NotFoundError):
            tokens.resolve("0" * 64, now=T0)

    def test_expired(self, issued):
        with pytest.raises(ExpiredError):
            tokens.resolve(issued["secret"], now=T0 + timedelta(hours=49))


class TestConsume:
    def test_consume_releases_checkpoint(self, work_unit, checkpoint, issued):
        result = tokens.consume_and_release(issued["secret"], released_by_name="Client Rep",
                                            released_by_org="Client Co", now=T0 + timedelta(hours=2))

        assert result["checkpoint"]["status"] == "released"
        assert result["checkpoint"]["release_method"] == "secure_link"
        assert result["work_unit_status"]["status"] == "in_progress"
        assert db.session.get(WorkUnit, work_unit.id).status == "in_progress"
        row = db.session.execute(select(ReleaseToken)).scalar_one()
        assert row.used_at is not None

    def test_second_use_conflicts(self, issued):
        tokens.consume_and_release(issued["secret"], released_by_name="Client Rep", now=T0)

        with pytest.raises(ConflictError):
            tokens.consume_and_release(issued["secret"], released_by_name="Client Rep", now=T0)

    def test_resolve_after_use(self, issued):
        tokens.consume_and_release(issued["secret"], released_by_name="Client Rep", now=T0)

        with pytest.raises(ExpiredError):
            tokens.resolve(issued["secret"], now=T0)

    def test_expired_link_cannot_release(self, checkpoint, issued):
        with pytest.raises(ExpiredError):
            tokens.consume_and_release(issued["secret"], released_by_name="Client Rep",
                                       now=T0 + timedelta(hours=48, seconds=1))
        assert db.session.get(Checkpoint, checkpoint["id"]).status == "notified"

    def test_unknown_secret(self):
        with pytest.raises(NotFoundError):
            tokens.consume_and_release("f" * 64, released_by_name="Client Rep")

    def test_name_required(self, issued):
        with pytest.raises(ValidationError):
            tokens.consume_and_release(issued["secret"], released_by_name=" ")

    def test_failed_release_leaves_token_unspent(self, checkpoint, issued):
        checkpoint_service.notify(checkpoint["id"], now=T0)
        checkpoint_service.reject(checkpoint["id"], reason="Not ready", now=T0)

        with pytest.raises(TransitionError):
            tokens.consume_and_release(issued["secret"], released_by_name="Client Rep", now=T0)

        row = db.session.execute(select(ReleaseToken)).scalar_one()
        assert row.used_at is None


# ── Racing consumers ─────────────────────────────────────────────────────


@pytest.fixture()
def file_backed_app(tmp_path, monkeypatch):
    """A second app on a SQLite file, so each thread gets its own connection."""

    class FileBackedConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'release_race.db'}"
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30}}

    monkeypatch.setitem(config, "file_backed", FileBackedConfig)
    race_app = create_app("file_backed")
    with race_app.app_context():
        db.create_all()
    yield race_app
    with race_app.app_context():
        db.drop_all()
        db.engine.dispose()


def _seed_live_link(race_app):
    with race_app.app_context():
        project = Project(name="Harbour Wall", code="HW1")
        db.session.add(project)
        db.session.flush()
        unit = WorkUnit(project_id=project.id, lot_number="LOT-900", description="Wall pour",
                        activity_type="concrete")
        tpl = InspectionTemplate(project_id=project.id, name="Wall Pour", activity_type="concrete")
        tpl.items = [ChecklistItem(sequence_number=1, description="Pre-pour inspection",
                                   point_type="hold", responsible_party="superintendent")]
        db.session.add_all([unit, tpl])
        db.session.commit()

        instance = inspection_service.assign_template(unit.id, tpl.id)
        cp = inspection_service.record_completion(instance["id"], tpl.items[0].id, "completed")["checkpoint"]
        issued = tokens.issue_token(cp["id"], recipient_email="client@example.com")
        return cp["id"], issued["secret"]


class TestConcurrentConsume:
    def test_exactly_one_racer_releases(self, file_backed_app):
        checkpoint_id, secret = _seed_live_link(file_backed_app)
        barrier = threading.Barrier(2, timeout=10)

        def attempt(name):
            with file_backed_app.app_context():
                barrier.wait()
                try:
                    tokens.consume_and_release(secret, released_by_name=name)
                    return "released"
                except (ConflictError, ExpiredError) as exc:
                    return exc

        with ThreadPoolExecutor(max_workers=2) as executor:
            outcomes = list(executor.map(attempt, ["Client Rep A", "Client Rep B"]))

        assert outcomes.count("released") == 1
        refused = [o for o in outcomes if o != "released"]
        assert len(refused) == 1
        assert isinstance(refused[0], (ConflictError, ExpiredError))

        with file_backed_app.app_context():
            cp = db.session.get(Checkpoint, checkpoint_id)
            assert cp.status == "released"
            assert cp.released_by_name in ("Client Rep A", "Client Rep B")
            row = db.session.execute(select(ReleaseToken)).scalar_one()
            assert row.used_at is not None
