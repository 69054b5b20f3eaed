"""
Process State Machine — Service Layer.

Drives ProcessInstance state through ``PROCESS_TRANSITIONS``:

    IN_PROGRESS ──submit──▶ PENDING_APPROVAL ──approve──▶ APPROVED ──close──▶ CLOSED
         │                        └──reject──▶ REJECTED ──rework──▶ IN_PROGRESS
         └──close (all non-skipped steps approved)──▶ CLOSED ──archive──▶ ARCHIVED

Submitting skips every optional step still PENDING or IN_PROGRESS in the
same commit, so an APPROVED instance always satisfies the closing rule.
An instance whose sign-off was rejected must be submitted again; it
cannot be closed straight from IN_PROGRESS after ``rework``.

Archival itself lives in ``archive_service``; everything here refuses to
touch an archived instance.
"""

import logging

from procflow.core.exceptions import (
    ArchivedInstanceError,
    InvalidProcessTransitionError,
    UnauthorizedReviewerError,
    ValidationError,
)
from procflow.models import _utcnow
from procflow.models.process import (
    PROCESS_APPROVED,
    PROCESS_IN_PROGRESS,
    STEP_APPROVED,
    STEP_SKIPPED,
    ProcessInstance,
    closing_rule_satisfied,
    next_process_state,
    next_step_status,
)
from procflow.services import events
from procflow.services.helpers.concurrency import check_expected_version, commit_or_conflict
from procflow.services.identity import Actor, process_approver_codes
from procflow.services.instance_service import event_payload, get_instance, get_steps
from procflow.services.step_lifecycle import publish_step_event

logger = logging.getLogger(__name__)

# Actions dispatched through apply_process_action; archive goes through archive_service.
PROCESS_API_ACTIONS = {"submit", "approve", "reject", "rework", "close"}

CLOSING_TYPES = {"NORMAL", "ADMINISTRATIVE"}


def _is_approver(actor: Actor) -> bool:
    return actor.is_admin or actor.has_any_code(process_approver_codes())


def _is_owner(actor: Actor, instance: ProcessInstance) -> bool:
    return actor.is_admin or actor.user_id == instance.responsible_user_id


def _sign_off_rejected(instance: ProcessInstance) -> bool:
    # reject stamps reviewed_at and rework keeps it; submit clears it
    return instance.state == PROCESS_IN_PROGRESS and instance.reviewed_at is not None


def can_close(instance: ProcessInstance) -> bool:
    """True when *instance* may be closed right now."""
    if instance.archived or instance.state not in (PROCESS_IN_PROGRESS, PROCESS_APPROVED):
        return False
    if _sign_off_rejected(instance):
        return False
    return closing_rule_satisfied([s.status for s in get_steps(instance.id)])


def _guard(instance: ProcessInstance, action: str) -> str:
    if instance.archived:
        raise ArchivedInstanceError(instance.id, action)
    new_state = next_process_state(instance.state, action)
    if new_state is None:
        raise InvalidProcessTransitionError("ProcessInstance", instance.id, action, instance.state)
    return new_state


def _authorize(instance: ProcessInstance, action: str, actor: Actor) -> None:
    if action in ("approve", "reject"):
        if not _is_approver(actor):
            raise UnauthorizedReviewerError(actor.user_id, list(process_approver_codes()), action)
    elif action == "rework":
        if not (_is_owner(actor, instance) or _is_approver(actor)):
            raise UnauthorizedReviewerError(actor.user_id, "responsible user", action)
    elif action == "close":
        if not (_is_owner(actor, instance) or _is_approver(actor)):
            raise UnauthorizedReviewerError(
                actor.user_id, ["responsible user", *process_approver_codes()], action,
            )


def _check_preconditions(instance: ProcessInstance, action: str) -> list:
    """Raise if *action* may not run; for submit, return the optional steps to skip."""
    steps = get_steps(instance.id)
    to_skip = []
    if action == "submit":
        pending = [s.ord for s in steps if s.required and s.status != STEP_APPROVED]
        if pending:
            raise InvalidProcessTransitionError(
                "ProcessInstance", instance.id, action, instance.state,
                reason=f"required steps not approved: {pending}",
            )
        open_optional = [s for s in steps if s.status not in (STEP_APPROVED, STEP_SKIPPED)]
        in_review = [s.ord for s in open_optional if next_step_status(s.status, "skip") is None]
        if in_review:
            raise InvalidProcessTransitionError(
                "ProcessInstance", instance.id, action, instance.state,
                reason=f"optional steps still under review: {in_review}",
            )
        to_skip = open_optional
    elif action == "close":
        if _sign_off_rejected(instance):
            raise InvalidProcessTransitionError(
                "ProcessInstance", instance.id, action, instance.state,
                reason="sign-off was rejected; submit for approval again",
            )
        if not closing_rule_satisfied([s.status for s in steps]):
            open_steps = [s.ord for s in steps if s.status not in (STEP_APPROVED, STEP_SKIPPED)]
            raise InvalidProcessTransitionError(
                "ProcessInstance", instance.id, action, instance.state,
                reason=f"steps not approved: {open_steps}",
            )
    return to_skip


def apply_process_action(
    instance_id: int,
    action: str,
    actor: Actor,
    comment: str | None = None,
    expected_version: int | None = None,
    closing_type: str | None = None,
) -> ProcessInstance:
    """Run a process-level *action* and commit it atomically."""
    if action not in PROCESS_API_ACTIONS:
        raise ValidationError(
            f"Unknown process action {action!r}",
            details={"action": sorted(PROCESS_API_ACTIONS)},
        )
    instance = get_instance(instance_id)
    new_state = _guard(instance, action)
    _authorize(instance, action, actor)
    to_skip = _check_preconditions(instance, action)
    if action == "close":
        closing_type = (closing_type or "NORMAL").upper()
        if closing_type not in CLOSING_TYPES:
            raise ValidationError(
                f"Unknown closing type {closing_type!r}",
                details={"closing_type": sorted(CLOSING_TYPES)},
            )
    check_expected_version(instance, expected_version, "ProcessInstance")

    old_state = instance.state
    now = _utcnow()
    instance.state = new_state
    if action in ("approve", "reject"):
        instance.reviewed_by = actor.user_id
        instance.reviewed_at = now
    elif action == "submit":
        instance.reviewed_by = None
        instance.reviewed_at = None
    elif action == "close":
        instance.closing_type = closing_type
        instance.closed_at = now
    skipped = []
    for step in to_skip:
        skipped.append((step, step.status))
        step.status = STEP_SKIPPED
    commit_or_conflict("ProcessInstance", instance.id)

    for step, old_status in skipped:
        publish_step_event(instance, step, old_status, "skip", actor.user_id,
                           comment="skipped on submission for approval")

    logger.info(
        "ProcessInstance %s id=%s %s → %s by=%s",
        action, instance.id, old_state, new_state, actor.user_id,
        extra={"process_instance_id": instance.id, "event_type": events.PROCESS_STATE_CHANGED},
    )
    events.publish(events.ProcessEvent(
        type=events.PROCESS_STATE_CHANGED,
        process_instance_id=instance.id,
        actor_id=actor.user_id,
        payload=event_payload(
            instance, action=action, comment=comment, closing_type=instance.closing_type,
            **{"from": old_state, "to": new_state},
        ),
    ))
    return instance


def submit_for_approval(instance_id, actor, comment=None, expected_version=None):
    return apply_process_action(instance_id, "submit", actor, comment, expected_version)


def approve_process(instance_id, actor, comment=None, expected_version=None):
    return apply_process_action(instance_id, "approve", actor, comment, expected_version)


def reject_process(instance_id, actor, comment=None, expected_version=None):
    return apply_process_action(instance_id, "reject", actor, comment, expected_version)


def rework_process(instance_id, actor, comment=None, expected_version=None):
    return apply_process_action(instance_id, "rework", actor, comment, expected_version)


def close_process(instance_id, actor, closing_type=None, comment=None, expected_version=None):
    return apply_process_action(
        instance_id, "close", actor, comment, expected_version, closing_type=closing_type,
    )

