"""
Shared pytest fixtures for the Site Quality Workflow Engine test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - project / work_unit / template / instance: a small seeded workflow
    - make_work_unit, make_checkpoint_ready: factories for extra rows
    - auth_headers: bearer header builder for API tests
"""

from datetime import datetime, timezone

import pytest

from siteqa import create_app
from siteqa.models import db as _db
from siteqa.models.inspection import ChecklistItem, InspectionTemplate
from siteqa.models.project import Project, ProjectMember
from siteqa.models.work_unit import WorkUnit

# Fixed clock for time-dependent tests (a Monday)
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        yield
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Seed data ────────────────────────────────────────────────────────────


@pytest.fixture()
def project():
    proj = Project(name="Northern Bypass Stage 2", code="NBS2",
                   working_hours_start="07:00", working_hours_end="17:00", working_days="1,2,3,4,5")
    _db.session.add(proj)
    _db.session.flush()
    for principal, email, role in (
        ("pm-1", "pm@example.test", "project_manager"),
        ("qm-1", "qm@example.test", "quality_manager"),
        ("sup-1", "super@example.test", "superintendent"),
        ("sub-1", "sub@example.test", "subcontractor"),
    ):
        _db.session.add(ProjectMember(project_id=proj.id, principal_id=principal,
                                      name=principal.upper(), email=email, role=role))
    _db.session.commit()
    return proj


@pytest.fixture()
def make_work_unit(project):
    counter = {"n": 0}

    def _make(lot_number=None, **kwargs):
        counter["n"] += 1
        unit = WorkUnit(
            project_id=project.id,
            lot_number=lot_number or f"LOT-{counter['n']:03d}",
            description=kwargs.pop("description", "Pavement base course"),
            activity_type=kwargs.pop("activity_type", "earthworks"),
            **kwargs,
        )
        _db.session.add(unit)
        _db.session.commit()
        return unit

    return _make


@pytest.fixture()
def work_unit(make_work_unit):
    return make_work_unit("LOT-001")


@pytest.fixture()
def template(project):
    """Four-item template: standard, witness, hold, standard."""
    tpl = InspectionTemplate(project_id=project.id, name="Concrete Pour", description="Structural pour",
                             activity_type="concrete")
    tpl.items = [
        ChecklistItem(sequence_number=1, description="Formwork alignment", point_type="standard",
                      responsible_party="contractor", evidence_required="photo"),
        ChecklistItem(sequence_number=2, description="Slump test", point_type="witness",
                      responsible_party="contractor", evidence_required="test_result",
                      test_type="slump"),
        ChecklistItem(sequence_number=3, description="Pre-pour inspection", point_type="hold",
                      responsible_party="superintendent", evidence_required="signature",
                      acceptance_criteria="Reinforcement cover per drawing S-101"),
        ChecklistItem(sequence_number=4, description="Surface finish", point_type="standard",
                      responsible_party="contractor"),
    ]
    _db.session.add(tpl)
    _db.session.commit()
    return tpl


@pytest.fixture()
def items(template):
    """Checklist item ids keyed by short name."""
    by_seq = {i.sequence_number: i.id for i in template.items}
    return {"formwork": by_seq[1], "slump": by_seq[2], "hold": by_seq[3], "finish": by_seq[4]}


@pytest.fixture()
def instance(work_unit, template):
    """The work unit's inspection instance (service view dict)."""
    from siteqa.services import inspection_service

    return inspection_service.assign_template(work_unit.id, template.id, assigned_by="pm-1")


@pytest.fixture()
def make_checkpoint_ready(items):
    """Complete every item before the hold point, then the hold item itself.

    Returns the pending checkpoint dict.
    """
    from siteqa.services import inspection_service

    def _make(instance_view, now=T0):
        iid = instance_view["id"]
        inspection_service.record_completion(iid, items["formwork"], "completed",
                                             evidence_refs=["lots/1/formwork.jpg"], now=now)
        inspection_service.record_completion(iid, items["slump"], "completed",
                                             evidence_refs=["lots/1/slump.pdf"], now=now)
        result = inspection_service.record_completion(iid, items["hold"], "completed", now=now)
        return result["checkpoint"]

    return _make


@pytest.fixture()
def checkpoint(instance, make_checkpoint_ready):
    return make_checkpoint_ready(instance)


# ── Auth ─────────────────────────────────────────────────────────────────


@pytest.fixture()
def auth_headers(app):
    from siteqa.services.jwt_service import generate_access_token

    def _headers(principal="pm-1", name=None):
        token = generate_access_token(principal, name=name)
        return {"Authorization": f"Bearer {token}"}

    return _headers
