"""
Step State Machine — Service Layer.

Drives StepInstance transitions through ``STEP_TRANSITIONS``:

    PENDING ──upload──▶ IN_PROGRESS ──submit──▶ SUBMITTED ──approve──▶ APPROVED
        │                   │                      │
        └──skip──▶ SKIPPED ◀┘                      └──reject──▶ REJECTED ──upload/submit──▶ …

Guards run in a fixed order so every caller sees the same error for the
same situation:

    1. archived instance          → ArchivedInstanceError
    2. skip on a required step    → CannotSkipRequiredStepError
    3. process not IN_PROGRESS    → InvalidStepTransitionError
    4. action illegal from status → InvalidStepTransitionError
    5. approve/reject by a user without the reviewer role → UnauthorizedReviewerError
    6. stale expected_version     → ConcurrentModificationError

Uploads are recorded by ``artifact_service.record_upload``, which reuses
``load_for_action`` for the same guards.
"""

import logging

from procflow.core.exceptions import (
    ArchivedInstanceError,
    CannotSkipRequiredStepError,
    InvalidStepTransitionError,
    UnauthorizedReviewerError,
    ValidationError,
)
from procflow.models import _utcnow
from procflow.models.process import (
    PROCESS_CLOSED,
    PROCESS_IN_PROGRESS,
    STEP_ACTIONS,
    StepInstance,
    next_step_status,
)
from procflow.services import events
from procflow.services.helpers.concurrency import check_expected_version, commit_or_conflict
from procflow.services.identity import Actor
from procflow.services.instance_service import event_payload, get_instance, get_step

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = {"approve", "reject"}

# Actions dispatched through apply_step_action; "upload" goes through the ledger.
TRANSITION_ACTIONS = STEP_ACTIONS - {"upload"}


def load_for_action(instance_id: int, step_id: int, action: str, actor: Actor | None):
    """Load (instance, step, new_status) after running every transition guard."""
    instance = get_instance(instance_id)
    step = get_step(instance_id, step_id)

    if instance.archived:
        raise ArchivedInstanceError(instance.id, action)
    if action == "skip" and step.required:
        raise CannotSkipRequiredStepError(step.id, step.status)
    if instance.state != PROCESS_IN_PROGRESS:
        raise InvalidStepTransitionError(
            "StepInstance", step.id, action, step.status,
            reason=f"process is {instance.state}",
        )
    new_status = next_step_status(step.status, action)
    if new_status is None:
        raise InvalidStepTransitionError("StepInstance", step.id, action, step.status)
    if action in REVIEW_ACTIONS:
        if actor is None or not (actor.is_admin or actor.has_role(step.reviewer_role_id)):
            raise UnauthorizedReviewerError(
                actor.user_id if actor else None, step.reviewer_role_id, action,
            )
    return instance, step, new_status


def publish_step_event(instance, step: StepInstance, old_status: str, action: str,
                       actor_id, comment: str | None = None) -> None:
    events.publish(events.ProcessEvent(
        type=events.STEP_TRANSITIONED,
        process_instance_id=instance.id,
        step_instance_id=step.id,
        actor_id=actor_id,
        payload=event_payload(
            instance,
            action=action,
            step_title=step.title,
            step_ord=step.ord,
            reviewer_role_id=step.reviewer_role_id,
            comment=comment,
            **{"from": old_status, "to": step.status},
        ),
    ))


def apply_step_action(
    instance_id: int,
    step_id: int,
    action: str,
    actor: Actor,
    comment: str | None = None,
    expected_version: int | None = None,
) -> StepInstance:
    """Run *action* on a step and commit it atomically.

    Returns:
        The updated StepInstance.
    """
    if action not in TRANSITION_ACTIONS:
        raise ValidationError(
            f"Unknown step action {action!r}",
            details={"action": sorted(TRANSITION_ACTIONS)},
        )
    instance, step, new_status = load_for_action(instance_id, step_id, action, actor)
    check_expected_version(step, expected_version, "StepInstance")

    old_status = step.status
    now = _utcnow()
    step.status = new_status
    if comment is not None:
        step.comment = comment.strip() or None
    if action == "submit":
        step.submitted_at = now
        step.reviewed_by = None
        step.reviewed_at = None
    elif action in REVIEW_ACTIONS:
        step.reviewed_by = actor.user_id
        step.reviewed_at = now
    commit_or_conflict("StepInstance", step.id)

    logger.info(
        "StepInstance %s id=%s %s → %s by=%s",
        action, step.id, old_status, new_status, actor.user_id,
        extra={
            "process_instance_id": instance.id,
            "step_instance_id": step.id,
            "event_type": events.STEP_TRANSITIONED,
        },
    )
    publish_step_event(instance, step, old_status, action, actor.user_id, comment)
    return step


def submit_step(instance_id, step_id, actor, comment=None, expected_version=None):
    return apply_step_action(instance_id, step_id, "submit", actor, comment, expected_version)


def approve_step(instance_id, step_id, actor, comment=None, expected_version=None):
    return apply_step_action(instance_id, step_id, "approve", actor, comment, expected_version)


def reject_step(instance_id, step_id, actor, comment=None, expected_version=None):
    return apply_step_action(instance_id, step_id, "reject", actor, comment, expected_version)


def skip_step(instance_id, step_id, actor, comment=None, expected_version=None):
    return apply_step_action(instance_id, step_id, "skip", actor, comment, expected_version)


def add_observation(
    instance_id: int,
    step_id: int,
    text: str,
    actor: Actor,
    expected_version: int | None = None,
) -> StepInstance:
    """Attach a reviewer observation to a step without changing its status.

    Only reviewers of the step (or admins) may annotate it.
    """
    instance = get_instance(instance_id)
    step = get_step(instance_id, step_id)
    if instance.archived:
        raise ArchivedInstanceError(instance.id, "observe")
    if instance.state == PROCESS_CLOSED:
        raise InvalidStepTransitionError(
            "StepInstance", step.id, "observe", step.status,
            reason=f"process is {instance.state}",
        )
    text = text.strip() if isinstance(text, str) else ""
    if not text:
        raise ValidationError("observation text is required", details={"observation": "required"})
    if not (actor.is_admin or actor.has_role(step.reviewer_role_id)):
        raise UnauthorizedReviewerError(actor.user_id, step.reviewer_role_id, "observe")
    check_expected_version(step, expected_version, "StepInstance")

    step.observation = text
    commit_or_conflict("StepInstance", step.id)
    logger.info(
        "StepInstance observation id=%s by=%s", step.id, actor.user_id,
        extra={"process_instance_id": instance.id, "step_instance_id": step.id},
    )
    return step
