"""
Workflow exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once (see ``procflow.utils.errors.register_error_handlers``)
and get consistent HTTP status codes everywhere.

All of them are local, recoverable conditions.  Each carries enough
context (entity, id, attempted action, current state) for the caller to
correct the request or retry it.

Usage:
    from procflow.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="ProcessTemplate", resource_id=42)
    raise ValidationError("title is required", details={"title": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested entity id does not exist.

    Args:
        resource: Human-readable model name (e.g. "ProcessInstance").
        resource_id: The PK that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a catalog or business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names;
                 values are error descriptions.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class TemplateNotPublishedError(Exception):
    """Raised when instantiating a template that is still a draft."""

    def __init__(self, template_id: int) -> None:
        self.template_id = template_id
        super().__init__(f"ProcessTemplate id={template_id} is not published")


class InactiveUserError(Exception):
    """Raised when an inactive user is named as the responsible user."""

    def __init__(self, user_id: int) -> None:
        self.user_id = user_id
        super().__init__(f"User id={user_id} is inactive")


class TransitionError(Exception):
    """Base class for refused state-machine actions.

    Args:
        entity: "StepInstance" or "ProcessInstance".
        entity_id: PK of the entity the action targeted.
        action: The attempted action (e.g. "approve").
        current_state: State the entity was in when the action was refused.
        reason: Optional extra explanation.
    """

    def __init__(
        self,
        entity: str,
        entity_id: int,
        action: str,
        current_state: str,
        reason: str | None = None,
    ) -> None:
        self.entity = entity
        self.entity_id = entity_id
        self.action = action
        self.current_state = current_state
        msg = f"Cannot {action} {entity} id={entity_id} in state {current_state}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)

    def to_details(self) -> dict:
        return {
            "entity": self.entity,
            "entity_id": self.entity_id,
            "action": self.action,
            "current_state": self.current_state,
        }


class InvalidStepTransitionError(TransitionError):
    """Raised when a step action is not allowed from the step's status."""


class InvalidProcessTransitionError(TransitionError):
    """Raised when a process action is not allowed from the process state."""


class CannotSkipRequiredStepError(TransitionError):
    """Raised when skip is attempted on a required step."""

    def __init__(self, entity_id: int, current_state: str) -> None:
        super().__init__(
            "StepInstance", entity_id, "skip", current_state,
            reason="required steps cannot be skipped",
        )


class ArchivedInstanceError(TransitionError):
    """Raised for any state-machine action on an archived process instance."""

    def __init__(self, entity_id: int, action: str) -> None:
        super().__init__(
            "ProcessInstance", entity_id, action, "ARCHIVED",
            reason="archived instances are read-only",
        )


class UnauthorizedReviewerError(Exception):
    """Raised when the acting user lacks the role an action requires.

    Args:
        user_id: The acting user.
        required: Role id or code(s) that would have been accepted.
        action: The attempted action.
    """

    def __init__(self, user_id: int, required, action: str) -> None:
        self.user_id = user_id
        self.required = required
        self.action = action
        super().__init__(f"User id={user_id} may not {action} (requires role {required})")


class ConcurrentModificationError(Exception):
    """Raised on an optimistic-lock conflict.

    Args:
        resource: Model name.
        resource_id: PK of the contended row.
        expected_version: Version the caller based its change on, if known.
        current_version: Version currently stored, if known.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int,
        expected_version: int | None = None,
        current_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.current_version = current_version
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {current_version})"
        super().__init__(msg)
