"""
Project access checking.

Authorization here is deliberately narrow: "does this principal have a
relationship to this project". The check is a plain callable

    AccessChecker = Callable[[str | None, int], bool]

registered as ``app.extensions["access_checker"]``. The default is
``project_membership_checker`` (a ProjectMember row must exist).
Deployments with their own policy register a different callable.

The external release endpoints never call into this module.
"""

import logging
from typing import Callable

from flask import current_app
from sqlalchemy import bindparam, select

from siteqa.core.exceptions import ForbiddenError, NotFoundError
from siteqa.models import db
from siteqa.models.checkpoint import Checkpoint
from siteqa.models.inspection import CompletionRecord, InspectionInstance
from siteqa.models.issue import Issue
from siteqa.models.project import Project, ProjectMember
from siteqa.models.work_unit import WorkUnit

logger = logging.getLogger(__name__)

AccessChecker = Callable[[str | None, int], bool]


def project_membership_checker(principal: str | None, project_id: int) -> bool:
    if not principal:
        return False
    return db.session.execute(
        select(ProjectMember.id).where(
            ProjectMember.project_id == project_id,
            ProjectMember.principal_id == str(principal),
        )
    ).first() is not None


def init_access_checker(app, checker: AccessChecker | None = None):
    app.extensions["access_checker"] = checker or project_membership_checker


def ensure_project_access(principal: str | None, project_id: int) -> None:
    """Raise ForbiddenError unless *principal* may act on *project_id*.

    Skipped entirely while ``API_AUTH_ENABLED`` is off (development/tests).
    """
    if not current_app.config.get("API_AUTH_ENABLED"):
        return
    checker = current_app.extensions.get("access_checker", project_membership_checker)
    if not checker(principal, project_id):
        logger.warning(
            "Project access denied for principal=%s", principal,
            extra={"project_id": project_id, "event_type": "access.denied"},
        )
        raise ForbiddenError(principal, project_id)


def _project_lookups():
    return {
        "WorkUnit": select(WorkUnit.project_id).where(WorkUnit.id == bindparam("pk")),
        "Checkpoint": (
            select(WorkUnit.project_id)
            .join(Checkpoint, Checkpoint.work_unit_id == WorkUnit.id)
            .where(Checkpoint.id == bindparam("pk"))
        ),
        "InspectionInstance": (
            select(WorkUnit.project_id)
            .join(InspectionInstance, InspectionInstance.work_unit_id == WorkUnit.id)
            .where(InspectionInstance.id == bindparam("pk"))
        ),
        "CompletionRecord": (
            select(WorkUnit.project_id)
            .join(InspectionInstance, InspectionInstance.work_unit_id == WorkUnit.id)
            .join(CompletionRecord, CompletionRecord.instance_id == InspectionInstance.id)
            .where(CompletionRecord.id == bindparam("pk"))
        ),
        "Issue": select(Issue.project_id).where(Issue.id == bindparam("pk")),
        "Project": select(Project.id).where(Project.id == bindparam("pk")),
    }


def ensure_entity_access(principal: str | None, resource: str, resource_id: int) -> None:
    """Resolve *resource* to its project and check access to that project.

    Raises:
        NotFoundError: the entity does not exist.
        ForbiddenError: the checker denies the principal.
    """
    if not current_app.config.get("API_AUTH_ENABLED"):
        return
    project_id = db.session.execute(
        _project_lookups()[resource], {"pk": resource_id}
    ).scalar_one_or_none()
    if project_id is None:
        raise NotFoundError(resource=resource, resource_id=resource_id)
    ensure_project_access(principal, project_id)
