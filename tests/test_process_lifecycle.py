"""
Process state-machine tests: submit/approve/reject/rework/close, closing
rule, authorization and the archived read-only guard.
"""

import pytest

from procflow.core.exceptions import (
    ArchivedInstanceError,
    InvalidProcessTransitionError,
    InvalidStepTransitionError,
    UnauthorizedReviewerError,
    ValidationError,
)
from procflow.models import db
from procflow.services import artifact_service, instance_service, process_lifecycle, step_lifecycle


def _set_steps(instance, *statuses):
    for step, status in zip(instance.steps, statuses):
        step.status = status
    db.session.commit()


@pytest.fixture()
def instance(make_instance):
    return make_instance([(True, "SECRETARY"), (False, "DIRECTOR"), (True, "SECRETARY")])


class TestSubmitAndSignOff:
    def test_submit_requires_required_steps_approved(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "PENDING", "SUBMITTED")
        with pytest.raises(InvalidProcessTransitionError) as exc:
            process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        assert "[3]" in str(exc.value)
        assert instance.state == "IN_PROGRESS"

    def test_full_sign_off_cycle(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "PENDING", "APPROVED")
        inst = process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        assert inst.state == "PENDING_APPROVAL"

        inst = process_lifecycle.reject_process(instance.id, actor(users["dean"]), comment="Rehacer")
        assert inst.state == "REJECTED"
        assert inst.reviewed_by == users["dean"].id

        inst = process_lifecycle.rework_process(instance.id, actor(users["professor"]))
        assert inst.state == "IN_PROGRESS"

        process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        inst = process_lifecycle.approve_process(instance.id, actor(users["admin"]))
        assert inst.state == "APPROVED"
        assert inst.reviewed_by == users["admin"].id

    def test_submit_skips_open_optional_step(self, make_instance, users, actor, captured_events):
        inst = make_instance([(True, "SECRETARY"), (False, "DIRECTOR")])
        _set_steps(inst, "APPROVED", "PENDING")
        process_lifecycle.submit_for_approval(inst.id, actor(users["professor"]))
        assert [s.status for s in inst.steps] == ["APPROVED", "SKIPPED"]

        process_lifecycle.approve_process(inst.id, actor(users["dean"]))
        assert process_lifecycle.can_close(inst) is True
        closed = process_lifecycle.close_process(inst.id, actor(users["professor"]))
        assert closed.state == "CLOSED"

        skips = [e for e in captured_events if e.type == "step.transitioned"]
        assert [(e.step_instance_id, e.payload["from"], e.payload["to"]) for e in skips] == [
            (inst.steps[1].id, "PENDING", "SKIPPED"),
        ]

    @pytest.mark.parametrize("status", ["SUBMITTED", "REJECTED"])
    def test_submit_refused_while_optional_step_in_review(self, make_instance, users, actor, status):
        inst = make_instance([(True, "SECRETARY"), (False, "DIRECTOR")])
        _set_steps(inst, "APPROVED", status)
        with pytest.raises(InvalidProcessTransitionError) as exc:
            process_lifecycle.submit_for_approval(inst.id, actor(users["professor"]))
        assert "[2]" in str(exc.value)
        assert inst.state == "IN_PROGRESS"
        assert inst.steps[1].status == status

    def test_rejected_sign_off_blocks_direct_close(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        professor = actor(users["professor"])
        process_lifecycle.submit_for_approval(instance.id, professor)
        process_lifecycle.reject_process(instance.id, actor(users["dean"]))
        process_lifecycle.rework_process(instance.id, professor)

        assert process_lifecycle.can_close(instance) is False
        with pytest.raises(InvalidProcessTransitionError) as exc:
            process_lifecycle.close_process(instance.id, professor)
        assert "rejected" in str(exc.value)

        process_lifecycle.submit_for_approval(instance.id, professor)
        process_lifecycle.approve_process(instance.id, actor(users["dean"]))
        assert process_lifecycle.close_process(instance.id, professor).state == "CLOSED"

    def test_only_approvers_sign_off(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        for who in ("professor", "director", "secretary"):
            with pytest.raises(UnauthorizedReviewerError):
                process_lifecycle.approve_process(instance.id, actor(users[who]))
        assert instance.state == "PENDING_APPROVAL"

    def test_steps_frozen_while_pending_approval(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "PENDING", "APPROVED")
        process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        with pytest.raises(InvalidStepTransitionError):
            step_lifecycle.skip_step(instance.id, instance.steps[1].id, actor(users["professor"]))

    def test_rework_by_stranger_refused(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "PENDING", "APPROVED")
        process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        process_lifecycle.reject_process(instance.id, actor(users["dean"]))
        with pytest.raises(UnauthorizedReviewerError):
            process_lifecycle.rework_process(instance.id, actor(users["secretary"]))

    @pytest.mark.parametrize("action", ["approve", "reject", "rework"])
    def test_actions_illegal_from_in_progress(self, instance, users, actor, action):
        with pytest.raises(InvalidProcessTransitionError) as exc:
            process_lifecycle.apply_process_action(instance.id, action, actor(users["admin"]))
        assert exc.value.current_state == "IN_PROGRESS"

    def test_unknown_action(self, instance, users, actor):
        with pytest.raises(ValidationError):
            process_lifecycle.apply_process_action(instance.id, "archive", actor(users["admin"]))


class TestClose:
    def test_close_blocked_until_steps_resolved(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "PENDING", "APPROVED")
        assert process_lifecycle.can_close(instance) is False
        with pytest.raises(InvalidProcessTransitionError) as exc:
            process_lifecycle.close_process(instance.id, actor(users["professor"]))
        assert "[2]" in str(exc.value)

    def test_close_with_skipped_optional_step(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        assert process_lifecycle.can_close(instance) is True
        inst = process_lifecycle.close_process(instance.id, actor(users["professor"]))
        assert inst.state == "CLOSED"
        assert inst.closing_type == "NORMAL"
        assert inst.closed_at is not None
        assert process_lifecycle.can_close(inst) is False

    def test_close_after_sign_off(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "APPROVED", "APPROVED")
        process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))
        process_lifecycle.approve_process(instance.id, actor(users["dean"]))
        inst = process_lifecycle.close_process(
            instance.id, actor(users["dean"]), closing_type="administrative",
        )
        assert inst.state == "CLOSED"
        assert inst.closing_type == "ADMINISTRATIVE"

    def test_unknown_closing_type(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        with pytest.raises(ValidationError):
            process_lifecycle.close_process(instance.id, actor(users["admin"]), closing_type="FORCED")
        assert instance.state == "IN_PROGRESS"

    def test_close_by_unrelated_user_refused(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        with pytest.raises(UnauthorizedReviewerError):
            process_lifecycle.close_process(instance.id, actor(users["director"]))

    def test_closed_instance_cannot_be_resubmitted(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        process_lifecycle.close_process(instance.id, actor(users["professor"]))
        with pytest.raises(InvalidProcessTransitionError):
            process_lifecycle.submit_for_approval(instance.id, actor(users["professor"]))

    def test_closed_instance_is_read_only(self, instance, users, actor):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        process_lifecycle.close_process(instance.id, actor(users["professor"]))
        version = instance.lock_version

        with pytest.raises(InvalidStepTransitionError):
            step_lifecycle.add_observation(
                instance.id, instance.steps[0].id, "late note", actor(users["secretary"]),
            )
        with pytest.raises(InvalidProcessTransitionError) as exc:
            instance_service.update_metadata(instance.id, {"priority": 5}, actor_id=users["admin"].id)
        assert exc.value.current_state == "CLOSED"

        db.session.expire_all()
        assert instance.steps[0].observation is None
        assert "priority" not in instance.metadata_json
        assert instance.lock_version == version

    def test_end_to_end_through_services(self, instance, users, actor):
        professor, secretary = actor(users["professor"]), actor(users["secretary"])
        for step in (instance.steps[0], instance.steps[2]):
            artifact_service.record_upload(step.id, "informe.pdf", 2048, "b" * 64, professor)
            step_lifecycle.submit_step(instance.id, step.id, professor)
            step_lifecycle.approve_step(instance.id, step.id, secretary)
        step_lifecycle.skip_step(instance.id, instance.steps[1].id, professor)

        inst = process_lifecycle.close_process(instance.id, professor)
        assert inst.state == "CLOSED"


class TestArchivedGuard:
    @pytest.mark.parametrize("action", ["submit", "approve", "reject", "rework", "close"])
    def test_archived_instance_is_read_only(self, instance, users, actor, action):
        instance.state = "ARCHIVED"
        instance.archived = True
        db.session.commit()
        with pytest.raises(ArchivedInstanceError):
            process_lifecycle.apply_process_action(instance.id, action, actor(users["admin"]))


class TestEvents:
    def test_state_change_event(self, instance, users, actor, captured_events):
        _set_steps(instance, "APPROVED", "SKIPPED", "APPROVED")
        process_lifecycle.close_process(instance.id, actor(users["professor"]), comment="Fin")

        changed = [e for e in captured_events if e.type == "process.state_changed"]
        assert len(changed) == 1
        payload = changed[0].payload
        assert payload["from"] == "IN_PROGRESS"
        assert payload["to"] == "CLOSED"
        assert payload["closing_type"] == "NORMAL"
        assert payload["comment"] == "Fin"
