"""
FIEC Process Workflow Service
Notification domain model.

Models:
    - Notification: in-app notification record with read tracking
"""

from datetime import datetime, timezone

from procflow.models import db


# ── Constants ────────────────────────────────────────────────────────────────

NOTIFICATION_TYPES = {"INFO", "REMINDER", "APPROVAL_PENDING", "RETURNED", "SYSTEM"}


class Notification(db.Model):
    """
    In-app notification entity.

    One record per recipient per event.
    """

    __tablename__ = "notifications"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    type = db.Column(db.String(30), nullable=False, default="INFO")
    title = db.Column(db.String(300), nullable=False)
    body = db.Column(db.Text, default="")

    # Link to source entity
    process_instance_id = db.Column(db.Integer, nullable=True, index=True)
    step_instance_id = db.Column(db.Integer, nullable=True)

    # Read tracking
    is_read = db.Column(db.Boolean, default=False)
    read_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    def mark_read(self):
        self.is_read = True
        self.read_at = datetime.now(timezone.utc)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "type": self.type,
            "title": self.title,
            "body": self.body,
            "process_instance_id": self.process_instance_id,
            "step_instance_id": self.step_instance_id,
            "is_read": self.is_read,
            "read_at": self.read_at.isoformat() if self.read_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<Notification {self.id}: {self.title[:40]}>"
