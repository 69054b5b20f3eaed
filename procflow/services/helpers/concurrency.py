"""
Optimistic-concurrency helpers for state-machine writes.

ProcessInstance and StepInstance map ``lock_version`` as SQLAlchemy's
``version_id_col``: every UPDATE carries ``WHERE lock_version = <read value>``
and bumps it.  Two transitions racing on the same row therefore cannot
both commit; the loser gets StaleDataError, which is translated here into
ConcurrentModificationError after a full rollback so nothing is half
applied.

Usage:
    check_expected_version(step, expected_version, "StepInstance")
    ... mutate ...
    commit_or_conflict("StepInstance", step.id)
"""

import logging

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from procflow.core.exceptions import ConcurrentModificationError
from procflow.models import db

logger = logging.getLogger(__name__)


def check_expected_version(obj, expected_version, resource: str) -> None:
    """Fail fast when the caller based its change on an older version."""
    if expected_version is None:
        return
    try:
        expected = int(expected_version)
    except (TypeError, ValueError):
        expected = None
    if expected != obj.lock_version:
        raise ConcurrentModificationError(
            resource, obj.id,
            expected_version=expected, current_version=obj.lock_version,
        )


def commit_or_conflict(resource: str, resource_id: int) -> None:
    """Commit the unit of work, mapping lock conflicts to ConcurrentModificationError."""
    try:
        db.session.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.session.rollback()
        logger.warning(
            "Concurrent modification on %s id=%s: %s", resource, resource_id, exc,
        )
        raise ConcurrentModificationError(resource, resource_id) from exc
