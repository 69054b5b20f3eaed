"""
Progress calculator tests.

Only APPROVED steps count as completed.  SKIPPED steps stay in the total,
so an instance with a skipped optional step never reaches 100% even when
it is closable.
"""

import pytest

from procflow.core.exceptions import NotFoundError
from procflow.services import artifact_service, process_lifecycle, step_lifecycle
from procflow.services.progress import compute_progress, percent


@pytest.mark.parametrize("completed,total,expected", [
    (0, 0, 0),
    (0, 3, 0),
    (1, 3, 33),
    (2, 3, 67),
    (1, 8, 13),   # 12.5 rounds half up
    (3, 8, 38),   # 37.5 rounds half up
    (5, 5, 100),
])
def test_percent(completed, total, expected):
    assert percent(completed, total) == expected


class TestComputeProgress:
    def test_new_instance_is_zero(self, make_instance):
        inst = make_instance([(True, "SECRETARY"), (False, "DIRECTOR"), (True, "SECRETARY")])
        assert compute_progress(inst.id) == {
            "process_instance_id": inst.id,
            "total_steps": 3,
            "completed_steps": 0,
            "progress_percent": 0,
        }

    def test_skipped_step_is_not_completed(self, make_instance, users, actor):
        inst = make_instance([(True, "SECRETARY"), (False, "DIRECTOR"), (True, "SECRETARY")])
        professor, secretary = actor(users["professor"]), actor(users["secretary"])
        first, optional, last = inst.steps

        artifact_service.record_upload(first.id, "acta.pdf", 100, "a" * 64, professor)
        step_lifecycle.submit_step(inst.id, first.id, professor)
        step_lifecycle.approve_step(inst.id, first.id, secretary)
        step_lifecycle.skip_step(inst.id, optional.id, professor)

        progress = compute_progress(inst.id)
        assert progress["completed_steps"] == 1
        assert progress["progress_percent"] == 33

        artifact_service.record_upload(last.id, "informe.pdf", 100, "c" * 64, professor)
        step_lifecycle.submit_step(inst.id, last.id, professor)
        step_lifecycle.approve_step(inst.id, last.id, secretary)

        assert compute_progress(inst.id)["progress_percent"] == 67
        assert process_lifecycle.close_process(inst.id, professor).state == "CLOSED"

    def test_submitted_and_rejected_do_not_count(self, make_instance, users, actor):
        inst = make_instance([(True, "SECRETARY"), (True, "SECRETARY")])
        professor, secretary = actor(users["professor"]), actor(users["secretary"])
        for step in inst.steps:
            artifact_service.record_upload(step.id, "x.pdf", 10, "d" * 64, professor)
            step_lifecycle.submit_step(inst.id, step.id, professor)
        step_lifecycle.reject_step(inst.id, inst.steps[1].id, secretary)

        assert compute_progress(inst.id)["completed_steps"] == 0

    def test_unknown_instance(self, app):
        with pytest.raises(NotFoundError):
            compute_progress(12345)
