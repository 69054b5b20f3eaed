"""
Archive Blueprint — closed-instance listing, single archival, bulk jobs.

Routes:
  GET    /archive/closed-instances?date_from=&date_to=   – archival candidates
  POST   /instances/<id>/archive                         – archive one CLOSED instance
  GET    /archive/operations                             – bulk operations, newest first
  POST   /archive/operations                             – start bulk archival
  GET    /archive/operations/<op_id>                     – progress
  POST   /archive/operations/<op_id>/cancel              – request cancellation
"""

from flask import Blueprint, jsonify, request

from procflow.blueprints import current_actor, json_body
from procflow.services import archive_service
from procflow.utils.errors import register_error_handlers

archive_bp = Blueprint("archive", __name__, url_prefix="/api/v1")
register_error_handlers(archive_bp)


@archive_bp.route("/archive/closed-instances", methods=["GET"])
def list_closed_instances():
    instances = archive_service.list_closed_instances(
        request.args.get("date_from"), request.args.get("date_to"),
    )
    return jsonify([i.to_dict() for i in instances])


@archive_bp.route("/instances/<int:instance_id>/archive", methods=["POST"])
def archive_instance(instance_id):
    instance = archive_service.mark_archived(instance_id, current_actor())
    return jsonify(instance.to_dict())


@archive_bp.route("/archive/operations", methods=["GET"])
def list_operations():
    return jsonify([op.to_dict() for op in archive_service.list_operations()])


@archive_bp.route("/archive/operations", methods=["POST"])
def start_operation():
    """Body: { date_from: YYYY-MM-DD, date_to: YYYY-MM-DD }"""
    actor = current_actor()
    data = json_body()
    op = archive_service.start_archive_operation(data.get("date_from"), data.get("date_to"), actor)
    return jsonify(op.to_dict()), 202


@archive_bp.route("/archive/operations/<int:operation_id>", methods=["GET"])
def get_operation(operation_id):
    return jsonify(archive_service.get_operation(operation_id).to_dict())


@archive_bp.route("/archive/operations/<int:operation_id>/cancel", methods=["POST"])
def cancel_operation(operation_id):
    op = archive_service.cancel_operation(operation_id, current_actor())
    return jsonify(op.to_dict())
