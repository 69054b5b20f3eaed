"""
Instantiation Engine — Service Layer.

Creates a ProcessInstance and its StepInstances from a published
template.  The step list is copied (ord, title, description, required,
reviewer_role_id) so later template versions never alter running
instances.  Every new step starts PENDING, regardless of order, and the
instance starts IN_PROGRESS: there is no draft phase and no step
unlocking dependency.

Also owns instance reads/filters and the typed metadata map.
"""

import logging
from datetime import datetime

from sqlalchemy import or_, select

from procflow.core.exceptions import (
    ArchivedInstanceError,
    InactiveUserError,
    InvalidProcessTransitionError,
    NotFoundError,
    TemplateNotPublishedError,
    ValidationError,
)
from procflow.models import db
from procflow.models.auth import User
from procflow.models.catalog import ProcessTemplate
from procflow.models.process import (
    METADATA_EXTENSION_PREFIX,
    METADATA_SCHEMA,
    PROCESS_CLOSED,
    PROCESS_IN_PROGRESS,
    PROCESS_STATES,
    STEP_PENDING,
    ProcessInstance,
    StepInstance,
)
from procflow.services import events
from procflow.services.helpers.concurrency import check_expected_version, commit_or_conflict

logger = logging.getLogger(__name__)

MIN_YEAR = 2000
MAX_YEAR = 2100


# ── Helpers ──────────────────────────────────────────────────────────────────


def _parse_dt(val):
    """Convert an ISO-format string to datetime; pass through None/datetime."""
    if val is None or isinstance(val, datetime):
        return val
    if isinstance(val, str):
        val = val.strip()
        if not val:
            return None
        try:
            return datetime.fromisoformat(val)
        except ValueError as exc:
            raise ValidationError(f"Invalid datetime {val!r}", details={"due_at": "ISO-8601 expected"}) from exc
    raise ValidationError(f"Invalid datetime {val!r}", details={"due_at": "ISO-8601 expected"})


def validate_metadata(changes: dict) -> dict:
    """Check *changes* against METADATA_SCHEMA.

    Known keys must hold their declared type (``None`` deletes the key);
    other keys are accepted only with the ``x-`` prefix.
    """
    if not isinstance(changes, dict):
        raise ValidationError("metadata must be an object", details={"metadata": "object expected"})
    errors = {}
    for key, value in changes.items():
        expected = METADATA_SCHEMA.get(key)
        if expected is None:
            if not str(key).startswith(METADATA_EXTENSION_PREFIX):
                errors[key] = f"unknown key; custom keys must start with '{METADATA_EXTENSION_PREFIX}'"
            continue
        if value is None:
            continue
        # bool is an int subclass; keep the two apart
        if expected is int and isinstance(value, bool):
            errors[key] = "expected int"
        elif not isinstance(value, expected):
            errors[key] = f"expected {expected.__name__}"
    if errors:
        raise ValidationError("Invalid metadata", details=errors)
    return changes


def _merge_metadata(current: dict, changes: dict) -> dict:
    merged = dict(current or {})
    for key, value in changes.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


def event_payload(instance: ProcessInstance, **extra) -> dict:
    """Common payload fields for events about *instance*."""
    payload = {
        "title": instance.title,
        "year": instance.year,
        "month": instance.month,
        "responsible_user_id": instance.responsible_user_id,
        "state": instance.state,
    }
    payload.update(extra)
    return payload


# ── Instantiation ────────────────────────────────────────────────────────────


def instantiate(
    template_id: int,
    year: int,
    month: int,
    responsible_user_id: int,
    creator_user_id: int,
    title: str | None = None,
    *,
    comment: str | None = None,
    due_at=None,
    security_level: str | None = None,
    metadata: dict | None = None,
) -> ProcessInstance:
    """Materialise a published template as a new IN_PROGRESS process instance.

    Preconditions are all checked before anything is written, and the
    instance plus its steps are committed together, so a failure never
    leaves a partial instance behind.

    Raises:
        NotFoundError: unknown template or user.
        TemplateNotPublishedError: template is a draft.
        InactiveUserError: responsible user is inactive.
        ValidationError: bad period, inactive process type, bad metadata.
    """
    tpl = db.session.get(ProcessTemplate, template_id)
    if tpl is None:
        raise NotFoundError("ProcessTemplate", template_id)
    if not tpl.is_published:
        raise TemplateNotPublishedError(template_id)

    errors = {}
    if not isinstance(year, int) or isinstance(year, bool) or not MIN_YEAR <= year <= MAX_YEAR:
        errors["year"] = f"must be an integer between {MIN_YEAR} and {MAX_YEAR}"
    if not isinstance(month, int) or isinstance(month, bool) or not 1 <= month <= 12:
        errors["month"] = "must be an integer between 1 and 12"
    for field, value in (("title", title), ("comment", comment), ("security_level", security_level)):
        if value is not None and not isinstance(value, str):
            errors[field] = "must be a string"
    if errors:
        raise ValidationError("Invalid instance fields", details=errors)
    if not tpl.process_type.active:
        raise ValidationError(
            f"ProcessType id={tpl.process_type_id} is inactive",
            details={"process_type_id": "inactive"},
        )

    responsible = db.session.get(User, responsible_user_id)
    if responsible is None:
        raise NotFoundError("User", responsible_user_id)
    if not responsible.is_active:
        raise InactiveUserError(responsible_user_id)

    meta = {"created_via": "api"}
    meta.update(validate_metadata({} if metadata is None else metadata))
    due = _parse_dt(due_at)

    instance = ProcessInstance(
        process_type_id=tpl.process_type_id,
        template_id=tpl.id,
        template_version=tpl.version,
        year=year,
        month=month,
        state=PROCESS_IN_PROGRESS,
        responsible_user_id=responsible_user_id,
        title=(title or "").strip() or None,
        comment=(comment or "").strip() or None,
        due_at=due,
        security_level=security_level,
        archived=False,
        metadata_json=_merge_metadata({}, meta),
        created_by=creator_user_id,
    )
    for st in sorted(tpl.steps, key=lambda s: s.ord):
        instance.steps.append(StepInstance(
            step_template_id=st.id,
            ord=st.ord,
            title=st.title,
            description=st.description,
            required=st.required,
            reviewer_role_id=st.reviewer_role_id,
            status=STEP_PENDING,
            due_at=due,
        ))
    db.session.add(instance)
    db.session.commit()

    logger.info(
        "ProcessInstance created id=%s template=%s v%s steps=%d",
        instance.id, tpl.id, tpl.version, len(instance.steps),
        extra={"process_instance_id": instance.id, "event_type": events.INSTANCE_CREATED},
    )
    events.publish(events.ProcessEvent(
        type=events.INSTANCE_CREATED,
        process_instance_id=instance.id,
        actor_id=creator_user_id,
        payload=event_payload(
            instance,
            template_id=tpl.id,
            template_version=tpl.version,
            step_count=len(instance.steps),
        ),
    ))
    return instance


# ── Reads ────────────────────────────────────────────────────────────────────


def get_instance(instance_id: int) -> ProcessInstance:
    instance = db.session.get(ProcessInstance, instance_id)
    if instance is None:
        raise NotFoundError("ProcessInstance", instance_id)
    return instance


def get_steps(instance_id: int) -> list[StepInstance]:
    """Current steps of an instance, ordered by ``ord``, read fresh from the DB."""
    get_instance(instance_id)
    return db.session.execute(
        select(StepInstance)
        .where(StepInstance.process_instance_id == instance_id)
        .order_by(StepInstance.ord)
    ).scalars().all()


def get_step(instance_id: int, step_id: int) -> StepInstance:
    """Fetch a step scoped to its instance; a step of another instance is not found."""
    step = db.session.execute(
        select(StepInstance).where(
            StepInstance.id == step_id,
            StepInstance.process_instance_id == instance_id,
        )
    ).scalar_one_or_none()
    if step is None:
        raise NotFoundError("StepInstance", step_id)
    return step


def build_instance_query(filters: dict):
    """Return a query over ProcessInstance applying the supported filters.

    Filters: process_type_id, template_id, year, month, state,
    responsible_user_id, archived (bool), q (substring of title).
    """
    q = ProcessInstance.query
    for field in ("process_type_id", "template_id", "year", "month", "responsible_user_id"):
        value = filters.get(field)
        if value is not None:
            q = q.filter(getattr(ProcessInstance, field) == value)
    state = filters.get("state")
    if state:
        if state not in PROCESS_STATES:
            raise ValidationError(f"Unknown state {state!r}", details={"state": sorted(PROCESS_STATES)})
        q = q.filter(ProcessInstance.state == state)
    if filters.get("archived") is not None:
        q = q.filter(ProcessInstance.archived.is_(bool(filters["archived"])))
    text = (filters.get("q") or "").strip()
    if text:
        like = f"%{text}%"
        q = q.filter(or_(ProcessInstance.title.ilike(like), ProcessInstance.comment.ilike(like)))
    return q.order_by(ProcessInstance.year.desc(), ProcessInstance.month.desc(), ProcessInstance.id.desc())


def list_instances(filters: dict | None = None) -> list[ProcessInstance]:
    return build_instance_query(filters or {}).all()


# ── Metadata ─────────────────────────────────────────────────────────────────


def update_metadata(
    instance_id: int,
    changes: dict,
    actor_id: int | None = None,
    expected_version: int | None = None,
) -> ProcessInstance:
    """Merge validated *changes* into the instance's metadata (``None`` removes a key)."""
    instance = get_instance(instance_id)
    if instance.archived:
        raise ArchivedInstanceError(instance.id, "update_metadata")
    if instance.state == PROCESS_CLOSED:
        raise InvalidProcessTransitionError(
            "ProcessInstance", instance.id, "update_metadata", instance.state,
            reason="closed instances are read-only",
        )
    check_expected_version(instance, expected_version, "ProcessInstance")
    validate_metadata(changes)
    instance.metadata_json = _merge_metadata(instance.metadata_json, changes)
    commit_or_conflict("ProcessInstance", instance.id)
    logger.info(
        "ProcessInstance metadata updated id=%s keys=%s by=%s",
        instance.id, sorted(changes), actor_id,
    )
    return instance
