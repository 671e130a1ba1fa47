"""
Transaction helpers shared by the workflow services.

atomic():       commit on success, roll back and re-raise on any error.
                Re-entrant: only the outermost block commits, so a service
                that calls another service keeps one transaction.
best_effort():  run a side effect (notification, audit row) inside a
                SAVEPOINT and log instead of raising when it fails.
guarded_update(): conditional "UPDATE ... WHERE status IN (...)" used for
                every lifecycle transition; zero rows means someone else
                moved the row first.

Usage:
    from siteqa.services.helpers.unit_of_work import atomic, best_effort

    with atomic():
        guarded_update(Checkpoint, cp.id, ["notified"], {"status": "released"})
        with best_effort("release notification", checkpoint_id=cp.id):
            NotificationService.enqueue(...)
"""

import logging
from contextlib import contextmanager

from sqlalchemy import update

from siteqa.models import db

logger = logging.getLogger(__name__)

_DEPTH_KEY = "siteqa_atomic_depth"


@contextmanager
def atomic():
    session = db.session
    depth = session.info.get(_DEPTH_KEY, 0)
    session.info[_DEPTH_KEY] = depth + 1
    try:
        yield session
        if depth == 0:
            session.commit()
    except Exception:
        if depth == 0:
            session.rollback()
        raise
    finally:
        session.info[_DEPTH_KEY] = depth


@contextmanager
def best_effort(label: str, **log_extra):
    """Swallow and log failures of a non-essential side effect."""
    try:
        with db.session.begin_nested():
            yield
    except Exception:
        logger.warning("%s failed, primary transition unaffected", label,
                       exc_info=True, extra=log_extra)


def guarded_update(model, pk, allowed_from, values, *extra_criteria) -> bool:
    """Apply *values* to row *pk* only while its status is in *allowed_from*.

    Returns True when exactly that row was updated. The in-session instance
    is refreshed either way so callers see the committed state.
    """
    stmt = (
        update(model)
        .where(model.id == pk, model.status.in_(list(allowed_from)), *extra_criteria)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = db.session.execute(stmt)
    instance = db.session.get(model, pk)
    if instance is not None:
        db.session.refresh(instance)
    return result.rowcount == 1
