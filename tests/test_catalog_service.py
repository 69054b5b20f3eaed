"""
Catalog store tests: process types, template drafting, publishing, versioning.
"""

import pytest

from procflow.core.exceptions import NotFoundError, ValidationError
from procflow.models.catalog import ProcessTemplate
from procflow.services import catalog_service


@pytest.fixture()
def process_type(users):
    return catalog_service.create_process_type(
        {"code": "eval_docente", "name": "Evaluación Docente"}, created_by=users["admin"].id,
    )


def _steps(roles, *shape):
    return [
        {"title": f"Step {i}", "required": required, "reviewer_role_id": roles[code].id}
        for i, (required, code) in enumerate(shape, start=1)
    ]


@pytest.fixture()
def draft(process_type, roles, users):
    return catalog_service.create_template(
        {
            "process_type_id": process_type.id,
            "description": "Plantilla estándar",
            "steps": _steps(roles, (True, "SECRETARY"), (False, "DIRECTOR"), (True, "SUBDEAN")),
        },
        created_by=users["admin"].id,
    )


class TestProcessTypes:
    def test_code_is_upper_cased(self, process_type):
        assert process_type.code == "EVAL_DOCENTE"
        assert process_type.active is True

    def test_duplicate_code_rejected(self, process_type):
        with pytest.raises(ValidationError) as exc:
            catalog_service.create_process_type({"code": "EVAL_DOCENTE", "name": "Again"})
        assert exc.value.details == {"code": "duplicate"}

    def test_missing_fields_rejected(self, roles):
        with pytest.raises(ValidationError) as exc:
            catalog_service.create_process_type({"code": ""})
        assert set(exc.value.details) == {"code", "name"}

    def test_inactive_types_hidden_from_active_list(self, process_type):
        other = catalog_service.create_process_type({"code": "PLAN", "name": "Plan"})
        catalog_service.set_process_type_active(other.id, False)
        active = catalog_service.get_active_process_types()
        assert [pt.code for pt in active] == ["EVAL_DOCENTE"]
        assert len(catalog_service.list_process_types(include_inactive=True)) == 2

    def test_unknown_type_is_not_found(self, roles):
        with pytest.raises(NotFoundError):
            catalog_service.get_process_type(999)


class TestTemplateDrafting:
    def test_create_draft_assigns_contiguous_ord(self, draft):
        assert draft.is_published is False
        assert draft.version == 1
        assert [s.ord for s in catalog_service.get_step_templates(draft.id)] == [1, 2, 3]

    def test_template_needs_steps(self, process_type):
        with pytest.raises(ValidationError) as exc:
            catalog_service.create_template(
                {"process_type_id": process_type.id, "description": "Empty", "steps": []},
            )
        assert "steps" in exc.value.details

    def test_step_needs_title_and_known_role(self, process_type):
        with pytest.raises(ValidationError) as exc:
            catalog_service.create_template({
                "process_type_id": process_type.id,
                "description": "Bad",
                "steps": [{"title": "", "reviewer_role_id": 999}],
            })
        assert set(exc.value.details) == {"steps[0].title", "steps[0].reviewer_role_id"}

    def test_duplicate_ord_rejected(self, process_type, roles):
        steps = _steps(roles, (True, "SECRETARY"), (True, "DIRECTOR"))
        steps[0]["ord"] = 1
        steps[1]["ord"] = 1
        with pytest.raises(ValidationError):
            catalog_service.create_template(
                {"process_type_id": process_type.id, "description": "Dup", "steps": steps},
            )

    def test_add_step_appends(self, draft, roles):
        step = catalog_service.add_step(
            draft.id, {"title": "Archivo", "reviewer_role_id": roles["SECRETARY"].id},
        )
        assert step.ord == 4

    def test_add_step_with_taken_ord_rejected(self, draft, roles):
        with pytest.raises(ValidationError):
            catalog_service.add_step(
                draft.id, {"title": "X", "ord": 2, "reviewer_role_id": roles["DEAN"].id},
            )

    def test_remove_step_closes_gap(self, draft):
        first = catalog_service.get_step_templates(draft.id)[0]
        tpl = catalog_service.remove_step(draft.id, first.id)
        steps = catalog_service.get_step_templates(tpl.id)
        assert [s.ord for s in steps] == [1, 2]
        assert [s.title for s in steps] == ["Step 2", "Step 3"]

    def test_cannot_remove_last_step(self, process_type, roles):
        tpl = catalog_service.create_template({
            "process_type_id": process_type.id, "description": "One",
            "steps": _steps(roles, (True, "DEAN")),
        })
        with pytest.raises(ValidationError):
            catalog_service.remove_step(tpl.id, tpl.steps[0].id)

    def test_reorder_steps(self, draft):
        ids = [s.id for s in catalog_service.get_step_templates(draft.id)]
        catalog_service.reorder_steps(draft.id, list(reversed(ids)))
        steps = catalog_service.get_step_templates(draft.id)
        assert [s.title for s in steps] == ["Step 3", "Step 2", "Step 1"]
        assert [s.ord for s in steps] == [1, 2, 3]

    def test_reorder_requires_permutation(self, draft):
        ids = [s.id for s in catalog_service.get_step_templates(draft.id)]
        with pytest.raises(ValidationError):
            catalog_service.reorder_steps(draft.id, ids[:2])


class TestPublishing:
    def test_publish_marks_latest(self, draft):
        tpl = catalog_service.publish_template(draft.id)
        assert tpl.is_published is True
        assert tpl.is_latest is True
        assert tpl.published_at is not None
        assert catalog_service.get_published_templates(tpl.process_type_id) == [tpl]

    def test_publish_requires_required_step(self, process_type, roles):
        tpl = catalog_service.create_template({
            "process_type_id": process_type.id, "description": "Optional only",
            "steps": _steps(roles, (False, "DEAN"), (False, "DIRECTOR")),
        })
        with pytest.raises(ValidationError) as exc:
            catalog_service.publish_template(tpl.id)
        assert exc.value.details == {"steps": "no required step"}

    def test_published_template_is_immutable(self, draft, roles):
        catalog_service.publish_template(draft.id)
        with pytest.raises(ValidationError):
            catalog_service.add_step(draft.id, {"title": "Late", "reviewer_role_id": roles["DEAN"].id})
        with pytest.raises(ValidationError):
            catalog_service.publish_template(draft.id)

    def test_new_version_becomes_latest(self, draft):
        v1 = catalog_service.publish_template(draft.id)
        v2 = catalog_service.create_template_version(v1.id)
        assert v2.version == 2
        assert v2.is_published is False
        assert [s.title for s in v2.steps] == [s.title for s in v1.steps]

        catalog_service.publish_template(v2.id)
        latest = catalog_service.get_latest_template(v1.process_type_id)
        assert latest.id == v2.id
        assert ProcessTemplate.query.filter_by(is_latest=True).count() == 1
        published = catalog_service.get_published_templates(v1.process_type_id)
        assert [t.version for t in published] == [2, 1]

    def test_draft_cannot_be_versioned(self, draft):
        with pytest.raises(ValidationError):
            catalog_service.create_template_version(draft.id)
