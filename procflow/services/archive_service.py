"""
Archival — Service Layer.

Contract towards the archival job runner:

    list_closed_instances(date_from, date_to)  → CLOSED, unarchived, created in range
    mark_archived(instance_id, actor)          → CLOSED → ARCHIVED (read-only)

Bulk archival is a long-running, cancellable job.  An ArchiveOperation row
records the range, the total, and how many instances have been processed;
ArchiveJobRunner executes it batch by batch inside an application context
(in a background thread, or inline when ``ARCHIVE_RUN_INLINE`` is set) and
checks ``cancel_requested`` before each batch.
"""

import logging
import threading
from datetime import date, datetime, time, timedelta, timezone

from flask import Flask, current_app
from sqlalchemy import select

from procflow.core.exceptions import (
    ArchivedInstanceError,
    InvalidProcessTransitionError,
    NotFoundError,
    UnauthorizedReviewerError,
    ValidationError,
)
from procflow.models import _utcnow, db
from procflow.models.archive import (
    ARCHIVE_CANCELLED,
    ARCHIVE_COMPLETED,
    ARCHIVE_FAILED,
    ARCHIVE_IN_PROGRESS,
    ArchiveOperation,
)
from procflow.models.process import (
    PROCESS_ARCHIVED,
    PROCESS_CLOSED,
    ProcessInstance,
)
from procflow.services import events
from procflow.services.helpers.concurrency import commit_or_conflict
from procflow.services.identity import Actor, process_approver_codes
from procflow.services.instance_service import event_payload, get_instance

logger = logging.getLogger(__name__)


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_date(val, field: str) -> date:
    if isinstance(val, datetime):
        return val.date()
    if isinstance(val, date):
        return val
    if isinstance(val, str) and val.strip():
        try:
            return date.fromisoformat(val.strip()[:10])
        except ValueError as exc:
            raise ValidationError(f"Invalid date {val!r}", details={field: "YYYY-MM-DD expected"}) from exc
    raise ValidationError(f"{field} is required", details={field: "required"})


def _check_range(date_from, date_to) -> tuple[date, date]:
    start = _parse_date(date_from, "date_from")
    end = _parse_date(date_to, "date_to")
    if start > end:
        raise ValidationError(
            "date_from must not be after date_to",
            details={"date_from": start.isoformat(), "date_to": end.isoformat()},
        )
    return start, end


def _require_archiver(actor: Actor, action: str) -> None:
    if not (actor.is_admin or actor.has_any_code(process_approver_codes())):
        raise UnauthorizedReviewerError(actor.user_id, list(process_approver_codes()), action)


def _closed_in_range_query(start: date, end: date):
    lower = datetime.combine(start, time.min, tzinfo=timezone.utc)
    upper = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc)
    return (
        select(ProcessInstance)
        .where(
            ProcessInstance.state == PROCESS_CLOSED,
            ProcessInstance.archived.is_(False),
            ProcessInstance.created_at >= lower,
            ProcessInstance.created_at < upper,
        )
        .order_by(ProcessInstance.created_at, ProcessInstance.id)
    )


def _archive(instance: ProcessInstance) -> None:
    if instance.archived:
        raise ArchivedInstanceError(instance.id, "archive")
    if instance.state != PROCESS_CLOSED:
        raise InvalidProcessTransitionError(
            "ProcessInstance", instance.id, "archive", instance.state,
            reason="only CLOSED instances can be archived",
        )
    instance.archived = True
    instance.archived_at = _utcnow()
    instance.state = PROCESS_ARCHIVED


def _publish_archived(instance: ProcessInstance, actor_id) -> None:
    events.publish(events.ProcessEvent(
        type=events.PROCESS_STATE_CHANGED,
        process_instance_id=instance.id,
        actor_id=actor_id,
        payload=event_payload(instance, action="archive", **{"from": PROCESS_CLOSED, "to": PROCESS_ARCHIVED}),
    ))


# ── Contract ─────────────────────────────────────────────────────────────────


def list_closed_instances(date_from, date_to) -> list[ProcessInstance]:
    """CLOSED, unarchived instances created between the two dates (inclusive)."""
    start, end = _check_range(date_from, date_to)
    return db.session.execute(_closed_in_range_query(start, end)).scalars().all()


def mark_archived(instance_id: int, actor: Actor) -> ProcessInstance:
    """Archive one CLOSED instance.  Archived instances are read-only."""
    _require_archiver(actor, "archive")
    instance = get_instance(instance_id)
    _archive(instance)
    commit_or_conflict("ProcessInstance", instance.id)
    logger.info(
        "ProcessInstance archived id=%s by=%s", instance.id, actor.user_id,
        extra={"process_instance_id": instance.id, "event_type": events.PROCESS_STATE_CHANGED},
    )
    _publish_archived(instance, actor.user_id)
    return instance


# ── Bulk operations ──────────────────────────────────────────────────────────


def get_operation(operation_id: int) -> ArchiveOperation:
    op = db.session.get(ArchiveOperation, operation_id)
    if op is None:
        raise NotFoundError("ArchiveOperation", operation_id)
    return op


def list_operations() -> list[ArchiveOperation]:
    return ArchiveOperation.query.order_by(ArchiveOperation.created_at.desc(), ArchiveOperation.id.desc()).all()


def start_archive_operation(date_from, date_to, actor: Actor) -> ArchiveOperation:
    """Create an ArchiveOperation for the range and hand it to the job runner.

    Raises:
        ValidationError: bad range, or no CLOSED instances in it.
    """
    _require_archiver(actor, "archive")
    start, end = _check_range(date_from, date_to)
    total = len(db.session.execute(_closed_in_range_query(start, end)).scalars().all())
    if total == 0:
        raise ValidationError(
            "No closed instances found in the given date range",
            details={"date_from": start.isoformat(), "date_to": end.isoformat()},
        )
    op = ArchiveOperation(
        user_id=actor.user_id,
        date_from=start,
        date_to=end,
        total_processes=total,
        processed_processes=0,
        status=ARCHIVE_IN_PROGRESS,
    )
    db.session.add(op)
    db.session.commit()
    logger.info("ArchiveOperation started id=%s range=%s..%s total=%d", op.id, start, end, total)
    ArchiveJobRunner.submit(current_app._get_current_object(), op.id)
    return op


def cancel_operation(operation_id: int, actor: Actor) -> ArchiveOperation:
    """Ask a running operation to stop before its next batch."""
    _require_archiver(actor, "cancel archive")
    op = get_operation(operation_id)
    if op.status != ARCHIVE_IN_PROGRESS:
        raise ValidationError(
            f"ArchiveOperation id={op.id} is already {op.status}",
            details={"status": op.status},
        )
    op.cancel_requested = True
    db.session.commit()
    logger.info("ArchiveOperation cancel requested id=%s by=%s", op.id, actor.user_id)
    return op


def run_archive_operation(operation_id: int) -> ArchiveOperation:
    """Execute an operation batch by batch.  Needs an application context."""
    op = get_operation(operation_id)
    batch_size = max(1, int(current_app.config.get("ARCHIVE_BATCH_SIZE", 50)))
    ids = [
        inst.id for inst in
        db.session.execute(_closed_in_range_query(op.date_from, op.date_to)).scalars().all()
    ]
    try:
        for offset in range(0, len(ids), batch_size):
            db.session.refresh(op)
            if op.cancel_requested:
                op.status = ARCHIVE_CANCELLED
                op.completed_at = _utcnow()
                db.session.commit()
                logger.info(
                    "ArchiveOperation cancelled id=%s processed=%d/%d",
                    op.id, op.processed_processes, op.total_processes,
                )
                return op

            archived = []
            for inst_id in ids[offset:offset + batch_size]:
                instance = db.session.get(ProcessInstance, inst_id)
                # state may have changed since the range was listed
                if instance is not None and instance.state == PROCESS_CLOSED and not instance.archived:
                    _archive(instance)
                    archived.append(instance)
                op.processed_processes += 1
            commit_or_conflict("ArchiveOperation", op.id)
            for instance in archived:
                _publish_archived(instance, op.user_id)
            logger.info(
                "ArchiveOperation batch id=%s processed=%d/%d",
                op.id, op.processed_processes, op.total_processes,
            )

        op.status = ARCHIVE_COMPLETED
        op.completed_at = _utcnow()
        db.session.commit()
        logger.info("ArchiveOperation completed id=%s archived=%d", op.id, op.processed_processes)
    except Exception as exc:
        db.session.rollback()
        logger.exception("ArchiveOperation failed id=%s", operation_id)
        op = get_operation(operation_id)
        op.status = ARCHIVE_FAILED
        op.error = str(exc)
        op.completed_at = _utcnow()
        db.session.commit()
    return op


class ArchiveJobRunner:
    """Runs archive operations off the request thread, inside an app context."""

    @classmethod
    def submit(cls, app: Flask, operation_id: int) -> None:
        if app.config.get("ARCHIVE_RUN_INLINE"):
            run_archive_operation(operation_id)
            return
        thread = threading.Thread(
            target=cls._run, args=(app, operation_id),
            name=f"archive-op-{operation_id}", daemon=True,
        )
        thread.start()

    @staticmethod
    def _run(app: Flask, operation_id: int) -> None:
        with app.app_context():
            try:
                run_archive_operation(operation_id)
            finally:
                db.session.remove()
