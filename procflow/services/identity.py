"""Caller identity for authorization checks.

The external identity provider owns sessions; this module only turns a
user id into the role set the state machine checks against
``reviewer_role_id`` and the process-approver role codes.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from flask import current_app

from procflow.core.exceptions import NotFoundError
from procflow.models import db
from procflow.models.auth import User


@dataclass(frozen=True)
class Actor:
    """The user performing an action, with the roles it holds."""

    user_id: int
    role_ids: frozenset[int] = field(default_factory=frozenset)
    role_codes: frozenset[str] = field(default_factory=frozenset)
    is_admin: bool = False

    def has_role(self, role_id: int) -> bool:
        return role_id in self.role_ids

    def has_any_code(self, codes) -> bool:
        return bool(self.role_codes.intersection(codes))


def actor_for(user: User) -> Actor:
    """Build an Actor from a loaded User row."""
    roles = user.roles
    codes = frozenset(r.code for r in roles)
    admin_code = current_app.config.get("ADMIN_ROLE_CODE", "ADMIN")
    return Actor(
        user_id=user.id,
        role_ids=frozenset(r.id for r in roles),
        role_codes=codes,
        is_admin=admin_code in codes,
    )


def resolve_actor(user_id: int) -> Actor:
    """Load *user_id* and its roles.  Raises NotFoundError for unknown ids."""
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError("User", user_id)
    return actor_for(user)


def process_approver_codes() -> tuple[str, ...]:
    """Role codes allowed to sign off a whole process instance."""
    return tuple(current_app.config.get("PROCESS_APPROVER_ROLE_CODES", ("ADMIN",)))
