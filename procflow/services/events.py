"""
Workflow event bus.

Store mutations announce themselves here instead of relying on callers to
re-read state.  Services publish a ProcessEvent after their transaction
commits; subscribers (audit writer, notification dispatcher, anything a
caller registers) receive it synchronously.

Delivery is fire-and-forget: a subscriber that raises is logged and
skipped, and the already-committed transition stands.

One EventBus lives in ``app.extensions["procflow.events"]`` per
application, created by ``init_event_bus`` in the app factory.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable

from flask import current_app

from procflow.models import db
from procflow.models.audit import write_audit

logger = logging.getLogger(__name__)

EXTENSION_KEY = "procflow.events"

INSTANCE_CREATED = "instance.created"
STEP_TRANSITIONED = "step.transitioned"
PROCESS_STATE_CHANGED = "process.state_changed"
ARTIFACT_UPLOADED = "artifact.uploaded"

EVENT_TYPES = {INSTANCE_CREATED, STEP_TRANSITIONED, PROCESS_STATE_CHANGED, ARTIFACT_UPLOADED}

# Event type → audit entity_type
_AUDIT_ENTITY = {
    INSTANCE_CREATED: "process_instance",
    STEP_TRANSITIONED: "step_instance",
    PROCESS_STATE_CHANGED: "process_instance",
    ARTIFACT_UPLOADED: "file_version",
}


@dataclass(frozen=True)
class ProcessEvent:
    type: str
    process_instance_id: int
    actor_id: int | None
    step_instance_id: int | None = None
    payload: dict = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "process_instance_id": self.process_instance_id,
            "step_instance_id": self.step_instance_id,
            "actor_id": self.actor_id,
            "timestamp": self.timestamp.isoformat(),
            "payload": dict(self.payload),
        }


Handler = Callable[[ProcessEvent], None]


class EventBus:
    """Synchronous publish/subscribe dispatcher."""

    def __init__(self) -> None:
        self._subscribers: list[tuple[frozenset[str] | None, Handler]] = []

    def subscribe(self, handler: Handler, event_types=None) -> Callable[[], None]:
        """Register *handler* for *event_types* (all types when None).

        Returns a callable that removes the subscription.
        """
        entry = (frozenset(event_types) if event_types else None, handler)
        self._subscribers.append(entry)

        def _unsubscribe():
            if entry in self._subscribers:
                self._subscribers.remove(entry)

        return _unsubscribe

    def publish(self, event: ProcessEvent) -> None:
        for types, handler in list(self._subscribers):
            if types is not None and event.type not in types:
                continue
            try:
                handler(event)
            except Exception:
                logger.exception(
                    "Event subscriber %s failed for %s",
                    getattr(handler, "__name__", repr(handler)), event.type,
                    extra={
                        "event_type": event.type,
                        "process_instance_id": event.process_instance_id,
                    },
                )


def get_event_bus() -> EventBus:
    return current_app.extensions[EXTENSION_KEY]


def publish(event: ProcessEvent) -> None:
    """Publish on the current application's bus."""
    get_event_bus().publish(event)


# ── Default sinks ────────────────────────────────────────────────────────────


def audit_sink(event: ProcessEvent) -> None:
    """Append one AuditLog row per event."""
    if event.type == ARTIFACT_UPLOADED:
        entity_id = event.payload.get("file_version_id")
    elif event.step_instance_id is not None:
        entity_id = event.step_instance_id
    else:
        entity_id = event.process_instance_id
    try:
        write_audit(
            entity_type=_AUDIT_ENTITY.get(event.type, "process_instance"),
            entity_id=entity_id,
            action=event.type,
            process_instance_id=event.process_instance_id,
            actor_user_id=event.actor_id,
            diff=event.payload,
            timestamp=event.timestamp,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def init_event_bus(app) -> EventBus:
    """Create the app's EventBus and attach the audit and notification sinks."""
    from procflow.services.notification import notification_sink

    bus = EventBus()
    bus.subscribe(audit_sink)
    bus.subscribe(notification_sink)
    app.extensions[EXTENSION_KEY] = bus
    return bus
