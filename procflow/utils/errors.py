"""Standardised API error responses.

Usage
-----
    from procflow.utils.errors import api_error, E, register_error_handlers

    return api_error(E.VALIDATION_REQUIRED, "action is required")
    register_error_handlers(instance_bp)
"""

from __future__ import annotations

import logging

from flask import jsonify, request
from werkzeug.exceptions import HTTPException

from procflow.core.exceptions import (
    ConcurrentModificationError,
    InactiveUserError,
    NotFoundError,
    TemplateNotPublishedError,
    TransitionError,
    UnauthorizedReviewerError,
    ValidationError,
)

logger = logging.getLogger(__name__)


# ── Error code constants ──────────────────────────────────────────────
class E:
    """Machine-readable error code constants (``ERR_`` prefix)."""

    # Malformed request – HTTP 400
    VALIDATION_REQUIRED = "ERR_VALIDATION_REQUIRED"
    VALIDATION_INVALID = "ERR_VALIDATION_INVALID"

    # Business-rule validation – HTTP 422
    VALIDATION_RULE = "ERR_VALIDATION_RULE"
    TEMPLATE_NOT_PUBLISHED = "ERR_TEMPLATE_NOT_PUBLISHED"
    INACTIVE_USER = "ERR_INACTIVE_USER"

    # Identity – HTTP 401 / 403
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"

    # Not-found – HTTP 404
    NOT_FOUND = "ERR_NOT_FOUND"

    # Conflict – HTTP 409
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_VERSION = "ERR_CONFLICT_VERSION"

    # Server – HTTP 500
    INTERNAL = "ERR_INTERNAL"


# ── Default HTTP status mapping ───────────────────────────────────────
_DEFAULT_STATUS: dict[str, int] = {
    E.VALIDATION_REQUIRED: 400,
    E.VALIDATION_INVALID: 400,
    E.VALIDATION_RULE: 422,
    E.TEMPLATE_NOT_PUBLISHED: 422,
    E.INACTIVE_USER: 422,
    E.UNAUTHENTICATED: 401,
    E.FORBIDDEN: 403,
    E.NOT_FOUND: 404,
    E.CONFLICT_STATE: 409,
    E.CONFLICT_VERSION: 409,
    E.INTERNAL: 500,
}


def api_error(
    code: str,
    message: str,
    *,
    status: int | None = None,
    details: dict | None = None,
):
    """Return a standard JSON error response.

    Parameters
    ----------
    code : str
        Machine-readable error code (use ``E.*`` constants).
    message : str
        Human-readable explanation for developers / UI.
    status : int, optional
        HTTP status override.  Falls back to ``_DEFAULT_STATUS[code]``,
        then to ``400``.
    details : dict, optional
        Extra structured payload (field errors, transition context).

    Returns
    -------
    tuple[Response, int]
        ``(jsonify(body), http_status)`` – drop-in for Flask views.
    """

    http_status = status or _DEFAULT_STATUS.get(code, 400)

    body: dict = {
        "error": message,
        "code": code,
    }
    if details:
        body["details"] = details

    return jsonify(body), http_status


# ── Blueprint handlers ────────────────────────────────────────────────


def register_error_handlers(bp) -> None:
    """Map the workflow exception hierarchy onto HTTP responses for *bp*."""

    @bp.errorhandler(NotFoundError)
    def _handle_not_found(error: NotFoundError):
        return api_error(E.NOT_FOUND, str(error))

    @bp.errorhandler(ValidationError)
    def _handle_validation(error: ValidationError):
        return api_error(E.VALIDATION_RULE, str(error), details=error.details)

    @bp.errorhandler(TemplateNotPublishedError)
    def _handle_not_published(error: TemplateNotPublishedError):
        return api_error(
            E.TEMPLATE_NOT_PUBLISHED, str(error), details={"template_id": error.template_id},
        )

    @bp.errorhandler(InactiveUserError)
    def _handle_inactive_user(error: InactiveUserError):
        return api_error(E.INACTIVE_USER, str(error), details={"user_id": error.user_id})

    @bp.errorhandler(UnauthorizedReviewerError)
    def _handle_unauthorized(error: UnauthorizedReviewerError):
        return api_error(
            E.FORBIDDEN, str(error),
            details={"user_id": error.user_id, "required": error.required, "action": error.action},
        )

    @bp.errorhandler(TransitionError)
    def _handle_transition(error: TransitionError):
        details = error.to_details()
        details["type"] = type(error).__name__
        return api_error(E.CONFLICT_STATE, str(error), details=details)

    @bp.errorhandler(ConcurrentModificationError)
    def _handle_conflict(error: ConcurrentModificationError):
        return api_error(
            E.CONFLICT_VERSION, str(error),
            details={
                "resource": error.resource,
                "resource_id": error.resource_id,
                "expected_version": error.expected_version,
                "current_version": error.current_version,
            },
        )

    @bp.errorhandler(Exception)
    def _handle_unexpected(error: Exception):
        if isinstance(error, HTTPException):
            code = {401: E.UNAUTHENTICATED, 404: E.NOT_FOUND}.get(error.code, E.VALIDATION_INVALID)
            return api_error(code, error.description or error.name, status=error.code)
        logger.exception("Unexpected error in %s endpoint=%s", bp.name, request.endpoint)
        return api_error(E.INTERNAL, "Internal server error")
