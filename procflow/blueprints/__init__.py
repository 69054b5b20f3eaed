"""
FIEC Process Workflow Service
Shared blueprint helpers: pagination, request body, caller identity.
"""

from flask import abort, request

from procflow.services.identity import Actor, resolve_actor


def paginate_query(query, default_limit=200, max_limit=1000):
    """Apply limit/offset pagination to a SQLAlchemy query.

    Query params:
        limit  — max items (default 200, capped at max_limit)
        offset — starting position (default 0)

    Returns:
        (items_list, total_count)
    """
    total = query.count()
    try:
        limit = min(int(request.args.get("limit", default_limit)), max_limit)
    except (ValueError, TypeError):
        limit = default_limit
    try:
        offset = max(int(request.args.get("offset", 0)), 0)
    except (ValueError, TypeError):
        offset = 0
    items = query.limit(limit).offset(offset).all()
    return items, total


def json_body() -> dict:
    """Request JSON object; an absent body is ``{}``, anything but an object is 400."""
    if not request.get_data():
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        abort(400, description="Request body must be a JSON object")
    return data


def current_actor() -> Actor:
    """Resolve the caller from the ``X-User-Id`` header set by the identity gateway."""
    raw = (request.headers.get("X-User-Id") or "").strip()
    if not raw:
        abort(401, description="X-User-Id header is required")
    try:
        user_id = int(raw)
    except ValueError:
        abort(400, description="X-User-Id must be an integer")
    return resolve_actor(user_id)


def expected_version(data: dict):
    """Caller's ``lock_version``: body ``expected_version`` wins over ``If-Match``."""
    if data.get("expected_version") is not None:
        value = data["expected_version"]
    else:
        value = (request.headers.get("If-Match") or "").strip()
        if value.startswith("W/"):
            value = value[2:]
        value = value.strip('"')
        if not value:
            return None
    if isinstance(value, bool):
        abort(400, description="expected_version must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description="expected_version must be an integer")


def int_field(data: dict, name: str, *, required: bool = True):
    """Read an integer field from a request body, 400 when malformed."""
    value = data.get(name)
    if value is None:
        if required:
            abort(400, description=f"{name} is required")
        return None
    if isinstance(value, bool):
        abort(400, description=f"{name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        abort(400, description=f"{name} must be an integer")
