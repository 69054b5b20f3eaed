"""
Catalog Blueprint — process types, templates and step templates.

Routes:
  GET    /process-types                         – list (?include_inactive=true)
  POST   /process-types                         – create
  POST   /process-types/<id>/active             – activate / deactivate
  GET    /process-types/<id>/templates          – templates (?published=true)
  POST   /templates                             – create draft with steps
  GET    /templates/<id>                        – template with steps
  POST   /templates/<id>/steps                  – append step to draft
  DELETE /templates/<id>/steps/<step_id>        – remove step from draft
  PUT    /templates/<id>/steps/order            – reorder draft steps
  POST   /templates/<id>/publish                – publish draft
  POST   /templates/<id>/versions               – new draft from published

Reads are open; mutations require an ADMIN caller (X-User-Id).
"""

from flask import Blueprint, abort, current_app, jsonify, request

from procflow.blueprints import current_actor, json_body
from procflow.core.exceptions import UnauthorizedReviewerError
from procflow.services import catalog_service
from procflow.utils.errors import register_error_handlers

catalog_bp = Blueprint("catalog", __name__, url_prefix="/api/v1")
register_error_handlers(catalog_bp)


def _admin(action: str):
    actor = current_actor()
    if not actor.is_admin:
        raise UnauthorizedReviewerError(actor.user_id, current_app.config["ADMIN_ROLE_CODE"], action)
    return actor


# ═════════════════════════════════════════════════════════════════════════════
# PROCESS TYPES
# ═════════════════════════════════════════════════════════════════════════════


@catalog_bp.route("/process-types", methods=["GET"])
def list_process_types():
    include_inactive = request.args.get("include_inactive", "false").lower() == "true"
    types = catalog_service.list_process_types(include_inactive=include_inactive)
    return jsonify([pt.to_dict() for pt in types])


@catalog_bp.route("/process-types", methods=["POST"])
def create_process_type():
    """Body: { code, name, description? }"""
    actor = _admin("create process type")
    pt = catalog_service.create_process_type(json_body(), created_by=actor.user_id)
    return jsonify(pt.to_dict()), 201


@catalog_bp.route("/process-types/<int:process_type_id>/active", methods=["POST"])
def set_process_type_active(process_type_id):
    """Body: { active: bool }"""
    _admin("change process type")
    data = json_body()
    if not isinstance(data.get("active"), bool):
        abort(400, description="active must be a boolean")
    pt = catalog_service.set_process_type_active(process_type_id, data["active"])
    return jsonify(pt.to_dict())


@catalog_bp.route("/process-types/<int:process_type_id>/templates", methods=["GET"])
def list_templates(process_type_id):
    catalog_service.get_process_type(process_type_id)
    if request.args.get("published", "false").lower() == "true":
        templates = catalog_service.get_published_templates(process_type_id)
    else:
        templates = catalog_service.list_templates(process_type_id)
    return jsonify([t.to_dict() for t in templates])


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════


@catalog_bp.route("/templates", methods=["POST"])
def create_template():
    """Body: { process_type_id, description, steps: [{title, description?, required?, reviewer_role_id}] }"""
    actor = _admin("create template")
    tpl = catalog_service.create_template(json_body(), created_by=actor.user_id)
    return jsonify(tpl.to_dict(include_steps=True)), 201


@catalog_bp.route("/templates/<int:template_id>", methods=["GET"])
def get_template(template_id):
    return jsonify(catalog_service.get_template(template_id).to_dict(include_steps=True))


@catalog_bp.route("/templates/<int:template_id>/steps", methods=["POST"])
def add_step(template_id):
    _admin("edit template")
    step = catalog_service.add_step(template_id, json_body())
    return jsonify(step.to_dict()), 201


@catalog_bp.route("/templates/<int:template_id>/steps/<int:step_id>", methods=["DELETE"])
def remove_step(template_id, step_id):
    _admin("edit template")
    tpl = catalog_service.remove_step(template_id, step_id)
    return jsonify(tpl.to_dict(include_steps=True))


@catalog_bp.route("/templates/<int:template_id>/steps/order", methods=["PUT"])
def reorder_steps(template_id):
    """Body: { step_ids: [..] }"""
    _admin("edit template")
    step_ids = json_body().get("step_ids")
    if not isinstance(step_ids, list):
        abort(400, description="step_ids must be an array")
    tpl = catalog_service.reorder_steps(template_id, step_ids)
    return jsonify(tpl.to_dict(include_steps=True))


@catalog_bp.route("/templates/<int:template_id>/publish", methods=["POST"])
def publish_template(template_id):
    _admin("publish template")
    tpl = catalog_service.publish_template(template_id)
    return jsonify(tpl.to_dict(include_steps=True))


@catalog_bp.route("/templates/<int:template_id>/versions", methods=["POST"])
def create_template_version(template_id):
    actor = _admin("version template")
    tpl = catalog_service.create_template_version(template_id, created_by=actor.user_id)
    return jsonify(tpl.to_dict(include_steps=True)), 201
