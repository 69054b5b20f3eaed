"""
Versioned Artifact Ledger — Service Layer.

Records uploads against a step as immutable FileVersion rows.  The file
content itself lives in external storage; the ledger keeps the metadata
(filename, size, SHA-256, uploader) and the version chain.

    record_upload()  → validates, appends version max+1, moves the step
                       PENDING/REJECTED → IN_PROGRESS (IN_PROGRESS stays)

The step row is touched on every upload so its ``lock_version`` bumps;
an upload racing a submit/approve on the same step loses with
ConcurrentModificationError rather than landing on a reviewed step.
"""

import logging
import re

from flask import current_app
from sqlalchemy import func, select

from procflow.core.exceptions import NotFoundError, ValidationError
from procflow.models import _utcnow, db
from procflow.models.artifact import FileVersion
from procflow.models.process import StepInstance
from procflow.services import events
from procflow.services.helpers.concurrency import check_expected_version, commit_or_conflict
from procflow.services.identity import Actor
from procflow.services.instance_service import event_payload
from procflow.services.step_lifecycle import load_for_action, publish_step_event

logger = logging.getLogger(__name__)

_SHA256_RE = re.compile(r"^[0-9a-fA-F]{64}$")


def _validate_upload(filename, size_bytes, content_hash, content_type=None, version_comment=None) -> dict:
    errors = {}
    if not isinstance(filename, str) or not filename.strip():
        errors["filename"] = "required"
    elif len(filename.strip()) > 255:
        errors["filename"] = "max 255 characters"
    max_size = current_app.config.get("MAX_UPLOAD_SIZE_BYTES", 10 * 1024 * 1024)
    if not isinstance(size_bytes, int) or isinstance(size_bytes, bool):
        errors["size_bytes"] = "integer required"
    elif size_bytes <= 0:
        errors["size_bytes"] = "must be greater than 0"
    elif size_bytes > max_size:
        errors["size_bytes"] = f"exceeds maximum of {max_size} bytes"
    if not isinstance(content_hash, str) or not _SHA256_RE.match(content_hash):
        errors["sha256"] = "64 hexadecimal characters required"
    for field, value in (("content_type", content_type), ("version_comment", version_comment)):
        if value is not None and not isinstance(value, str):
            errors[field] = "must be a string"
    return errors


def _get_step(step_instance_id: int) -> StepInstance:
    step = db.session.get(StepInstance, step_instance_id)
    if step is None:
        raise NotFoundError("StepInstance", step_instance_id)
    return step


def latest_version(step_instance_id: int) -> int:
    """Highest version number recorded for the step, 0 when none."""
    _get_step(step_instance_id)
    return db.session.execute(
        select(func.coalesce(func.max(FileVersion.version), 0))
        .where(FileVersion.step_instance_id == step_instance_id)
    ).scalar() or 0


def get_latest_file(step_instance_id: int) -> FileVersion | None:
    _get_step(step_instance_id)
    return db.session.execute(
        select(FileVersion)
        .where(FileVersion.step_instance_id == step_instance_id)
        .order_by(FileVersion.version.desc())
        .limit(1)
    ).scalar_one_or_none()


def list_versions(step_instance_id: int) -> list[FileVersion]:
    """All versions of the step, oldest first."""
    _get_step(step_instance_id)
    return db.session.execute(
        select(FileVersion)
        .where(FileVersion.step_instance_id == step_instance_id)
        .order_by(FileVersion.version)
    ).scalars().all()


def get_version(step_instance_id: int, version: int) -> FileVersion:
    fv = db.session.execute(
        select(FileVersion).where(
            FileVersion.step_instance_id == step_instance_id,
            FileVersion.version == version,
        )
    ).scalar_one_or_none()
    if fv is None:
        raise NotFoundError("FileVersion", f"{step_instance_id}/v{version}")
    return fv


def record_upload(
    step_instance_id: int,
    filename: str,
    size_bytes: int,
    content_hash: str,
    uploader: Actor,
    *,
    content_type: str | None = None,
    version_comment: str | None = None,
    expected_version: int | None = None,
) -> FileVersion:
    """Append the next FileVersion for a step and apply the upload transition.

    Raises:
        NotFoundError: unknown step.
        ArchivedInstanceError: the instance is archived.
        InvalidStepTransitionError: step is SUBMITTED, APPROVED or SKIPPED,
            or the process is no longer IN_PROGRESS.
        ValidationError: bad filename, size or hash.
        ConcurrentModificationError: stale ``expected_version`` or a racing write.
    """
    step = _get_step(step_instance_id)
    instance, step, new_status = load_for_action(
        step.process_instance_id, step.id, "upload", uploader,
    )
    errors = _validate_upload(filename, size_bytes, content_hash, content_type, version_comment)
    if errors:
        raise ValidationError("Invalid upload", details=errors)
    check_expected_version(step, expected_version, "StepInstance")

    previous = get_latest_file(step.id)
    fv = FileVersion(
        step_instance_id=step.id,
        version=(previous.version if previous else 0) + 1,
        filename=filename.strip(),
        content_type=content_type,
        size_bytes=size_bytes,
        sha256=content_hash.lower(),
        version_comment=(version_comment or "").strip() or None,
        replaced_file_id=previous.id if previous else None,
        uploaded_by=uploader.user_id,
    )
    db.session.add(fv)

    old_status = step.status
    step.status = new_status
    step.updated_at = _utcnow()
    commit_or_conflict("StepInstance", step.id)

    logger.info(
        "FileVersion recorded id=%s step=%s v%s size=%s by=%s",
        fv.id, step.id, fv.version, fv.size_bytes, uploader.user_id,
        extra={
            "process_instance_id": instance.id,
            "step_instance_id": step.id,
            "event_type": events.ARTIFACT_UPLOADED,
        },
    )
    events.publish(events.ProcessEvent(
        type=events.ARTIFACT_UPLOADED,
        process_instance_id=instance.id,
        step_instance_id=step.id,
        actor_id=uploader.user_id,
        payload=event_payload(
            instance,
            file_version_id=fv.id,
            version=fv.version,
            filename=fv.filename,
            size_bytes=fv.size_bytes,
            sha256=fv.sha256,
            step_title=step.title,
        ),
    ))
    if old_status != step.status:
        publish_step_event(instance, step, old_status, "upload", uploader.user_id)
    return fv
