"""
Optimistic concurrency tests.

Two writers racing on the same row are simulated by bumping
``lock_version`` underneath an already-loaded ORM object, the same thing a
concurrent committed transaction would do.
"""

import pytest
from sqlalchemy import text

from procflow.core.exceptions import ConcurrentModificationError
from procflow.models import db
from procflow.services import instance_service, process_lifecycle, step_lifecycle
from procflow.services.helpers.concurrency import check_expected_version


def _bump(table, row_id):
    db.session.execute(
        text(f"UPDATE {table} SET lock_version = lock_version + 1 WHERE id = :id"),
        {"id": row_id},
    )


@pytest.fixture()
def instance(make_instance):
    inst = make_instance([(True, "SECRETARY"), (False, "DIRECTOR")])
    inst.steps[0].status = "IN_PROGRESS"
    db.session.commit()
    return inst


class TestExpectedVersion:
    def test_check_expected_version(self, instance):
        check_expected_version(instance, None, "ProcessInstance")
        check_expected_version(instance, str(instance.lock_version), "ProcessInstance")
        with pytest.raises(ConcurrentModificationError) as exc:
            check_expected_version(instance, "abc", "ProcessInstance")
        assert exc.value.current_version == instance.lock_version

    def test_stale_step_version_rejected(self, instance, users, actor):
        step = instance.steps[0]
        stale = step.lock_version
        step_lifecycle.skip_step(instance.id, instance.steps[1].id, actor(users["professor"]))
        step_lifecycle.submit_step(instance.id, step.id, actor(users["professor"]), expected_version=stale)

        with pytest.raises(ConcurrentModificationError) as exc:
            step_lifecycle.approve_step(
                instance.id, step.id, actor(users["secretary"]), expected_version=stale,
            )
        assert exc.value.expected_version == stale
        assert exc.value.current_version == stale + 1
        assert step.status == "SUBMITTED"

    def test_stale_process_version_rejected(self, instance, users, actor):
        with pytest.raises(ConcurrentModificationError):
            instance_service.update_metadata(
                instance.id, {"priority": 1}, expected_version=instance.lock_version - 1,
            )
        updated = instance_service.update_metadata(
            instance.id, {"priority": 1}, expected_version=instance.lock_version,
        )
        assert updated.metadata_json["priority"] == 1

    def test_versions_bump_on_every_write(self, instance, users, actor):
        before = instance.steps[0].lock_version
        step_lifecycle.submit_step(instance.id, instance.steps[0].id, actor(users["professor"]))
        assert instance.steps[0].lock_version == before + 1


class TestLostUpdates:
    def test_racing_step_write_loses(self, instance, users, actor):
        step = instance.steps[0]
        assert step.lock_version is not None  # load the row before the concurrent write
        _bump("step_instances", step.id)

        with pytest.raises(ConcurrentModificationError):
            step_lifecycle.submit_step(instance.id, step.id, actor(users["professor"]))

        db.session.expire_all()
        assert step.status == "IN_PROGRESS"

    def test_racing_process_write_loses(self, instance, users, actor):
        instance.steps[0].status = "APPROVED"
        instance.steps[1].status = "SKIPPED"
        db.session.commit()
        assert instance.lock_version is not None
        _bump("process_instances", instance.id)

        with pytest.raises(ConcurrentModificationError):
            process_lifecycle.close_process(instance.id, actor(users["professor"]))

        db.session.expire_all()
        assert instance.state == "IN_PROGRESS"
        assert instance.closed_at is None
