"""
Catalog Store — Service Layer.

Holds ProcessType, ProcessTemplate and StepTemplate definitions.

Business rules:
    - ProcessType codes are unique (stored upper-case); types are toggled
      active/inactive, never deleted.
    - A template needs at least one step to be saved and at least one
      required step to be published.
    - Step ``ord`` is unique and contiguous 1..N within a template.
    - Published templates are immutable; changes go into a new version
      created with ``create_template_version``.
    - Publishing makes the template the only ``is_latest`` version of its
      process type.

Every violation raises ValidationError with field-level ``details``;
unknown ids raise NotFoundError.
"""

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select

from procflow.core.exceptions import NotFoundError, ValidationError
from procflow.models import db
from procflow.models.auth import Role
from procflow.models.catalog import ProcessTemplate, ProcessType, StepTemplate

logger = logging.getLogger(__name__)


# ── Lookups ──────────────────────────────────────────────────────────────────


def get_process_type(process_type_id: int) -> ProcessType:
    pt = db.session.get(ProcessType, process_type_id)
    if pt is None:
        raise NotFoundError("ProcessType", process_type_id)
    return pt


def get_template(template_id: int) -> ProcessTemplate:
    tpl = db.session.get(ProcessTemplate, template_id)
    if tpl is None:
        raise NotFoundError("ProcessTemplate", template_id)
    return tpl


def get_active_process_types() -> list[ProcessType]:
    """Return active process types ordered by code."""
    return db.session.execute(
        select(ProcessType)
        .where(ProcessType.active.is_(True))
        .order_by(ProcessType.code)
    ).scalars().all()


def list_process_types(include_inactive: bool = False) -> list[ProcessType]:
    if not include_inactive:
        return get_active_process_types()
    return db.session.execute(select(ProcessType).order_by(ProcessType.code)).scalars().all()


def get_published_templates(process_type_id: int) -> list[ProcessTemplate]:
    """Return published templates of a type, newest version first."""
    get_process_type(process_type_id)
    return db.session.execute(
        select(ProcessTemplate)
        .where(
            ProcessTemplate.process_type_id == process_type_id,
            ProcessTemplate.is_published.is_(True),
        )
        .order_by(ProcessTemplate.version.desc())
    ).scalars().all()


def list_templates(process_type_id: int) -> list[ProcessTemplate]:
    """Return every template (drafts included) of a type, newest version first."""
    get_process_type(process_type_id)
    return db.session.execute(
        select(ProcessTemplate)
        .where(ProcessTemplate.process_type_id == process_type_id)
        .order_by(ProcessTemplate.version.desc())
    ).scalars().all()


def get_latest_template(process_type_id: int) -> ProcessTemplate | None:
    return db.session.execute(
        select(ProcessTemplate).where(
            ProcessTemplate.process_type_id == process_type_id,
            ProcessTemplate.is_latest.is_(True),
        )
    ).scalar_one_or_none()


def get_step_templates(template_id: int) -> list[StepTemplate]:
    """Return the template's steps ordered by ``ord``."""
    get_template(template_id)
    return db.session.execute(
        select(StepTemplate)
        .where(StepTemplate.template_id == template_id)
        .order_by(StepTemplate.ord)
    ).scalars().all()


# ── Validation helpers ───────────────────────────────────────────────────────


def _require_draft(tpl: ProcessTemplate) -> None:
    if tpl.is_published:
        raise ValidationError(
            f"ProcessTemplate id={tpl.id} is published and cannot be modified",
            details={"template_id": "published templates are immutable"},
        )


def _text(data: dict, key: str, errors: dict, prefix: str = "") -> str:
    """Stripped string value of *key*; a non-string records an error and yields ""."""
    value = data.get(key)
    if value is None:
        return ""
    if not isinstance(value, str):
        errors[f"{prefix}{key}"] = "must be a string"
        return ""
    return value.strip()


def _clean_step(data: dict, index: int | None = None) -> dict:
    """Validate one step payload and return normalised field values."""
    prefix = f"steps[{index}]." if index is not None else ""
    errors = {}
    if not isinstance(data, dict):
        raise ValidationError(
            "Invalid step definition", details={prefix.rstrip(".") or "step": "object expected"},
        )
    title = _text(data, "title", errors, prefix)
    description = _text(data, "description", errors, prefix)
    if not title and f"{prefix}title" not in errors:
        errors[f"{prefix}title"] = "required"
    role_id = data.get("reviewer_role_id")
    if role_id in (None, ""):
        errors[f"{prefix}reviewer_role_id"] = "required"
    elif not isinstance(role_id, int) or db.session.get(Role, role_id) is None:
        errors[f"{prefix}reviewer_role_id"] = f"unknown role {role_id!r}"
    ord_value = data.get("ord")
    if ord_value is not None and (not isinstance(ord_value, int) or isinstance(ord_value, bool)):
        errors[f"{prefix}ord"] = "must be an integer"
    if errors:
        raise ValidationError("Invalid step definition", details=errors)
    return {
        "title": title,
        "description": description,
        "required": bool(data.get("required", False)),
        "reviewer_role_id": role_id,
        "ord": ord_value,
    }


def _check_ord(tpl_id, requested, expected):
    if requested is not None and requested != expected:
        raise ValidationError(
            f"Step ord {requested} is not allowed; next ord for template {tpl_id} is {expected}",
            details={"ord": "duplicate or non-contiguous step order"},
        )


def _renumber(steps: list[StepTemplate]) -> None:
    """Assign ord 1..N in list order without tripping the unique (template, ord) index."""
    for offset, step in enumerate(steps, 1):
        step.ord = -offset
    db.session.flush()
    for position, step in enumerate(steps, 1):
        step.ord = position
    db.session.flush()


def _next_version(process_type_id: int) -> int:
    current = db.session.execute(
        select(func.max(ProcessTemplate.version))
        .where(ProcessTemplate.process_type_id == process_type_id)
    ).scalar()
    return (current or 0) + 1


# ── ProcessType mutations ────────────────────────────────────────────────────


def create_process_type(data: dict, created_by: int | None = None) -> ProcessType:
    """Create an active ProcessType.

    Args:
        data: ``code`` and ``name`` required; ``description`` optional.
        created_by: Admin user id recorded on the row.
    """
    errors = {}
    code = _text(data, "code", errors).upper()
    name = _text(data, "name", errors)
    description = _text(data, "description", errors)
    if not code and "code" not in errors:
        errors["code"] = "required"
    if not name and "name" not in errors:
        errors["name"] = "required"
    if errors:
        raise ValidationError("Invalid process type", details=errors)

    exists = db.session.execute(
        select(ProcessType.id).where(ProcessType.code == code)
    ).scalar_one_or_none()
    if exists is not None:
        raise ValidationError(
            f"ProcessType code {code!r} already exists", details={"code": "duplicate"},
        )

    pt = ProcessType(
        code=code,
        name=name,
        description=description,
        active=bool(data.get("active", True)),
        created_by=created_by,
    )
    db.session.add(pt)
    db.session.commit()
    logger.info("ProcessType created id=%s code=%s", pt.id, pt.code)
    return pt


def set_process_type_active(process_type_id: int, active: bool) -> ProcessType:
    pt = get_process_type(process_type_id)
    pt.active = bool(active)
    db.session.commit()
    logger.info("ProcessType id=%s active=%s", pt.id, pt.active)
    return pt


# ── Template mutations ───────────────────────────────────────────────────────


def create_template(data: dict, created_by: int | None = None) -> ProcessTemplate:
    """Create a DRAFT template with its initial steps.

    Args:
        data: ``process_type_id``, ``description`` and a non-empty ``steps``
              list of ``{title, description?, required?, reviewer_role_id, ord?}``.
        created_by: Author user id.

    Returns:
        The persisted draft; ``version`` is the next number for the type.
    """
    errors = {}
    description = _text(data, "description", errors)
    if not description and "description" not in errors:
        errors["description"] = "required"
    steps = data.get("steps")
    if not isinstance(steps, list) or not steps:
        errors["steps"] = "a template needs at least one step"
    process_type_id = data.get("process_type_id")
    if not process_type_id:
        errors["process_type_id"] = "required"
    if errors:
        raise ValidationError("Invalid template", details=errors)

    get_process_type(process_type_id)
    cleaned = [_clean_step(s, i) for i, s in enumerate(steps)]
    for expected, step in enumerate(cleaned, 1):
        _check_ord("(new)", step["ord"], expected)

    tpl = ProcessTemplate(
        process_type_id=process_type_id,
        description=description,
        version=_next_version(process_type_id),
        is_published=False,
        is_latest=False,
        created_by=created_by,
    )
    for expected, step in enumerate(cleaned, 1):
        step["ord"] = expected
        tpl.steps.append(StepTemplate(**step))
    db.session.add(tpl)
    db.session.commit()
    logger.info(
        "ProcessTemplate created id=%s type=%s version=%s steps=%d",
        tpl.id, tpl.process_type_id, tpl.version, len(cleaned),
    )
    return tpl


def add_step(template_id: int, data: dict) -> StepTemplate:
    """Append a step to a draft template (ord defaults to N+1)."""
    tpl = get_template(template_id)
    _require_draft(tpl)
    cleaned = _clean_step(data)
    expected = len(tpl.steps) + 1
    _check_ord(tpl.id, cleaned["ord"], expected)
    cleaned["ord"] = expected
    step = StepTemplate(template_id=tpl.id, **cleaned)
    db.session.add(step)
    db.session.commit()
    db.session.refresh(tpl)
    logger.info("StepTemplate added id=%s template=%s ord=%s", step.id, tpl.id, step.ord)
    return step


def remove_step(template_id: int, step_id: int) -> ProcessTemplate:
    """Remove a step from a draft and close the gap in ``ord``."""
    tpl = get_template(template_id)
    _require_draft(tpl)
    step = next((s for s in tpl.steps if s.id == step_id), None)
    if step is None:
        raise NotFoundError("StepTemplate", step_id)
    if len(tpl.steps) == 1:
        raise ValidationError(
            "A template needs at least one step", details={"steps": "cannot remove the last step"},
        )
    remaining = [s for s in tpl.steps if s.id != step_id]
    tpl.steps.remove(step)
    db.session.flush()
    _renumber(remaining)
    db.session.commit()
    db.session.refresh(tpl)
    logger.info("StepTemplate removed id=%s template=%s", step_id, tpl.id)
    return tpl


def reorder_steps(template_id: int, step_ids: list[int]) -> ProcessTemplate:
    """Re-sequence a draft's steps; *step_ids* must list every step exactly once."""
    tpl = get_template(template_id)
    _require_draft(tpl)
    by_id = {s.id: s for s in tpl.steps}
    if not isinstance(step_ids, list) or sorted(step_ids) != sorted(by_id):
        raise ValidationError(
            "step_ids must be a permutation of the template's step ids",
            details={"step_ids": sorted(by_id)},
        )
    _renumber([by_id[i] for i in step_ids])
    db.session.commit()
    db.session.refresh(tpl)
    logger.info("StepTemplate order updated template=%s", tpl.id)
    return tpl


def publish_template(template_id: int) -> ProcessTemplate:
    """Freeze a draft and make it the latest version of its type."""
    tpl = get_template(template_id)
    _require_draft(tpl)
    steps = list(tpl.steps)
    if not steps:
        raise ValidationError("A template needs at least one step", details={"steps": "empty"})
    if not any(s.required for s in steps):
        raise ValidationError(
            "At least one required step is needed to publish",
            details={"steps": "no required step"},
        )
    ords = [s.ord for s in steps]
    if sorted(ords) != list(range(1, len(steps) + 1)):
        raise ValidationError(
            "Step order must be contiguous from 1", details={"ord": sorted(ords)},
        )

    db.session.execute(
        ProcessTemplate.__table__.update()
        .where(ProcessTemplate.process_type_id == tpl.process_type_id)
        .values(is_latest=False)
    )
    tpl.is_published = True
    tpl.is_latest = True
    tpl.published_at = datetime.now(timezone.utc)
    db.session.commit()
    db.session.refresh(tpl)
    logger.info(
        "ProcessTemplate published id=%s type=%s version=%s",
        tpl.id, tpl.process_type_id, tpl.version,
    )
    return tpl


def create_template_version(template_id: int, created_by: int | None = None) -> ProcessTemplate:
    """Clone a published template into a new DRAFT with the next version number."""
    source = get_template(template_id)
    if not source.is_published:
        raise ValidationError(
            "Only published templates can be versioned",
            details={"template_id": "template is still a draft"},
        )
    draft = ProcessTemplate(
        process_type_id=source.process_type_id,
        description=source.description,
        version=_next_version(source.process_type_id),
        is_published=False,
        is_latest=False,
        created_by=created_by,
    )
    for step in source.steps:
        draft.steps.append(StepTemplate(
            ord=step.ord,
            title=step.title,
            description=step.description,
            required=step.required,
            reviewer_role_id=step.reviewer_role_id,
        ))
    db.session.add(draft)
    db.session.commit()
    logger.info(
        "ProcessTemplate version drafted id=%s from=%s version=%s",
        draft.id, source.id, draft.version,
    )
    return draft
