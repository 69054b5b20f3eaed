"""
FIEC Process Workflow Service
Audit domain model.

Models:
    - AuditLog: immutable, append-only audit trail for lifecycle events.
"""

import json
from datetime import UTC, datetime

from procflow.models import db

# ── Constants ────────────────────────────────────────────────────────────────

AUDIT_ENTITY_TYPES = {
    "process_instance", "step_instance", "file_version",
}


class AuditLog(db.Model):
    """
    Immutable audit trail for every lifecycle event.

    One row per event.  ``diff_json`` carries the event payload
    (old → new state, file version, comment).
    """

    __tablename__ = "audit_logs"
    __table_args__ = (
        db.Index("idx_audit_entity", "entity_type", "entity_id"),
        db.Index("idx_audit_instance", "process_instance_id"),
        db.Index("idx_audit_action", "action"),
        db.Index("idx_audit_ts", "timestamp"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_instance_id = db.Column(db.Integer, nullable=True)

    # Polymorphic entity reference
    entity_type = db.Column(
        db.String(30), nullable=False,
        comment="process_instance | step_instance | file_version",
    )
    entity_id = db.Column(db.String(36), nullable=False)

    # What happened
    action = db.Column(
        db.String(60), nullable=False,
        comment="instance.created | step.transitioned | process.state_changed | artifact.uploaded",
    )
    actor_user_id = db.Column(db.Integer, nullable=True, index=True)

    diff_json = db.Column(db.Text, default="{}")

    # Timestamp (immutable)
    timestamp = db.Column(
        db.DateTime(timezone=True), nullable=False,
        default=lambda: datetime.now(UTC),
    )

    # ── Helpers ──────────────────────────────────────────────────────────

    @property
    def diff(self) -> dict:
        """Deserialise *diff_json* to a Python dict."""
        try:
            return json.loads(self.diff_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "action": self.action,
            "actor_user_id": self.actor_user_id,
            "diff": self.diff,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    def __repr__(self):
        return f"<AuditLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_audit(
    *,
    entity_type: str,
    entity_id,
    action: str,
    process_instance_id: int | None = None,
    actor_user_id: int | None = None,
    diff: dict | None = None,
    timestamp: datetime | None = None,
) -> AuditLog:
    """
    Append a single audit row.  Uses ``flush`` so callers keep
    transaction control.

    Returns the (flushed) AuditLog instance.
    """
    log = AuditLog(
        process_instance_id=process_instance_id,
        entity_type=entity_type,
        entity_id=str(entity_id),
        action=action,
        actor_user_id=actor_user_id,
        diff_json=json.dumps(diff or {}, default=str),
    )
    if timestamp is not None:
        log.timestamp = timestamp
    db.session.add(log)
    db.session.flush()
    return log
