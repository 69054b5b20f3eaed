"""
Process Instance Blueprint — instantiation, step/process transitions,
artifacts, progress and metadata.

Routes:
  POST   /instances                                   – instantiate a published template
  GET    /instances                                   – list (filters + limit/offset)
  GET    /instances/<id>                              – instance with steps
  GET    /instances/<id>/steps                        – steps in ord order
  POST   /instances/<id>/steps/<sid>/transition       – submit | approve | reject | skip
  POST   /instances/<id>/steps/<sid>/files            – record an uploaded artifact
  GET    /instances/<id>/steps/<sid>/files            – artifact versions
  POST   /instances/<id>/steps/<sid>/observation      – reviewer observation
  POST   /instances/<id>/transition                   – submit | approve | reject | rework | close
  GET    /instances/<id>/progress                     – derived progress
  PATCH  /instances/<id>/metadata                     – typed metadata update

Mutations identify the caller with ``X-User-Id``.  Transitions accept the
entity's ``lock_version`` as body ``expected_version`` or ``If-Match``.
"""

from flask import Blueprint, abort, jsonify, request

from procflow.blueprints import current_actor, expected_version, int_field, json_body, paginate_query
from procflow.services import (
    artifact_service,
    instance_service,
    process_lifecycle,
    progress,
    step_lifecycle,
)
from procflow.utils.errors import register_error_handlers

instance_bp = Blueprint("instance", __name__, url_prefix="/api/v1")
register_error_handlers(instance_bp)


def _action(data: dict) -> str:
    action = data.get("action")
    if not isinstance(action, str) or not action.strip():
        abort(400, description="action is required")
    return action.strip().lower()


def _comment(data: dict):
    comment = data.get("comment")
    if comment is not None and not isinstance(comment, str):
        abort(400, description="comment must be a string")
    return comment


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


@instance_bp.route("/instances", methods=["POST"])
def create_instance():
    """Instantiate a published template.

    Body: { template_id, year, month, responsible_user_id?, title?, comment?,
            due_at?, security_level?, metadata? }
    """
    actor = current_actor()
    data = json_body()
    instance = instance_service.instantiate(
        template_id=int_field(data, "template_id"),
        year=data.get("year"),
        month=data.get("month"),
        responsible_user_id=int_field(data, "responsible_user_id", required=False) or actor.user_id,
        creator_user_id=actor.user_id,
        title=data.get("title"),
        comment=data.get("comment"),
        due_at=data.get("due_at"),
        security_level=data.get("security_level"),
        metadata=data.get("metadata"),
    )
    return jsonify(instance.to_dict(include_steps=True)), 201


@instance_bp.route("/instances", methods=["GET"])
def list_instances():
    archived = request.args.get("archived")
    filters = {
        "process_type_id": request.args.get("process_type_id", type=int),
        "template_id": request.args.get("template_id", type=int),
        "year": request.args.get("year", type=int),
        "month": request.args.get("month", type=int),
        "responsible_user_id": request.args.get("responsible_user_id", type=int),
        "state": request.args.get("state"),
        "archived": None if archived is None else archived.lower() == "true",
        "q": request.args.get("q"),
    }
    items, total = paginate_query(instance_service.build_instance_query(filters))
    return jsonify({"items": [i.to_dict() for i in items], "total": total})


@instance_bp.route("/instances/<int:instance_id>", methods=["GET"])
def get_instance(instance_id):
    instance = instance_service.get_instance(instance_id)
    result = instance.to_dict(include_steps=True)
    result["can_close"] = process_lifecycle.can_close(instance)
    return jsonify(result)


@instance_bp.route("/instances/<int:instance_id>/steps", methods=["GET"])
def list_steps(instance_id):
    return jsonify([s.to_dict() for s in instance_service.get_steps(instance_id)])


@instance_bp.route("/instances/<int:instance_id>/progress", methods=["GET"])
def get_progress(instance_id):
    return jsonify(progress.compute_progress(instance_id))


@instance_bp.route("/instances/<int:instance_id>/metadata", methods=["PATCH"])
def update_metadata(instance_id):
    """Body: { metadata: {key: value | null}, expected_version? }"""
    actor = current_actor()
    data = json_body()
    changes = data.get("metadata")
    if not isinstance(changes, dict):
        abort(400, description="metadata must be an object")
    instance = instance_service.update_metadata(
        instance_id, changes, actor_id=actor.user_id, expected_version=expected_version(data),
    )
    return jsonify(instance.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# TRANSITIONS
# ═════════════════════════════════════════════════════════════════════════════


@instance_bp.route("/instances/<int:instance_id>/steps/<int:step_id>/transition", methods=["POST"])
def step_transition(instance_id, step_id):
    """Body: { action: submit|approve|reject|skip, comment?, expected_version? }"""
    actor = current_actor()
    data = json_body()
    step = step_lifecycle.apply_step_action(
        instance_id, step_id, _action(data), actor,
        comment=_comment(data), expected_version=expected_version(data),
    )
    return jsonify(step.to_dict())


@instance_bp.route("/instances/<int:instance_id>/transition", methods=["POST"])
def process_transition(instance_id):
    """Body: { action: submit|approve|reject|rework|close, comment?, closing_type?, expected_version? }"""
    actor = current_actor()
    data = json_body()
    instance = process_lifecycle.apply_process_action(
        instance_id, _action(data), actor,
        comment=_comment(data),
        expected_version=expected_version(data),
        closing_type=data.get("closing_type"),
    )
    return jsonify(instance.to_dict())


@instance_bp.route("/instances/<int:instance_id>/steps/<int:step_id>/observation", methods=["POST"])
def add_observation(instance_id, step_id):
    """Body: { observation, expected_version? }"""
    actor = current_actor()
    data = json_body()
    step = step_lifecycle.add_observation(
        instance_id, step_id, data.get("observation"), actor,
        expected_version=expected_version(data),
    )
    return jsonify(step.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# ARTIFACTS
# ═════════════════════════════════════════════════════════════════════════════


@instance_bp.route("/instances/<int:instance_id>/steps/<int:step_id>/files", methods=["POST"])
def upload_step_file(instance_id, step_id):
    """Record an upload stored externally.

    Body: { filename, size_bytes, sha256, content_type?, version_comment?, expected_version? }
    """
    actor = current_actor()
    data = json_body()
    step = instance_service.get_step(instance_id, step_id)
    fv = artifact_service.record_upload(
        step.id,
        data.get("filename"),
        data.get("size_bytes"),
        data.get("sha256"),
        actor,
        content_type=data.get("content_type"),
        version_comment=data.get("version_comment"),
        expected_version=expected_version(data),
    )
    return jsonify(fv.to_dict()), 201


@instance_bp.route("/instances/<int:instance_id>/steps/<int:step_id>/files", methods=["GET"])
def list_step_files(instance_id, step_id):
    step = instance_service.get_step(instance_id, step_id)
    versions = artifact_service.list_versions(step.id)
    return jsonify({
        "step_instance_id": step.id,
        "latest_version": versions[-1].version if versions else 0,
        "items": [fv.to_dict() for fv in versions],
    })
