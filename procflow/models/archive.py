"""
FIEC Process Workflow Service
Archival job model.

Models:
    - ArchiveOperation: one bulk archival run over CLOSED instances in a date range

Lifecycle states:
    ArchiveOperation:  IN_PROGRESS → COMPLETED | CANCELLED | FAILED
"""

from procflow.models import _iso, _utcnow, db

ARCHIVE_IN_PROGRESS = "IN_PROGRESS"
ARCHIVE_COMPLETED = "COMPLETED"
ARCHIVE_CANCELLED = "CANCELLED"
ARCHIVE_FAILED = "FAILED"

ARCHIVE_STATUSES = {ARCHIVE_IN_PROGRESS, ARCHIVE_COMPLETED, ARCHIVE_CANCELLED, ARCHIVE_FAILED}


class ArchiveOperation(db.Model):
    __tablename__ = "archive_operations"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    date_from = db.Column(db.Date, nullable=False)
    date_to = db.Column(db.Date, nullable=False)
    total_processes = db.Column(db.Integer, nullable=False, default=0)
    processed_processes = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=ARCHIVE_IN_PROGRESS)
    cancel_requested = db.Column(db.Boolean, nullable=False, default=False)
    error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    @property
    def progress_percent(self):
        if not self.total_processes:
            return 0
        return int(self.processed_processes * 100 / self.total_processes)

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "date_from": self.date_from.isoformat() if self.date_from else None,
            "date_to": self.date_to.isoformat() if self.date_to else None,
            "total_processes": self.total_processes,
            "processed_processes": self.processed_processes,
            "progress_percent": self.progress_percent,
            "status": self.status,
            "cancel_requested": self.cancel_requested,
            "error": self.error,
            "created_at": _iso(self.created_at),
            "completed_at": _iso(self.completed_at),
        }

    def __repr__(self):
        return f"<ArchiveOperation {self.id}: {self.date_from}..{self.date_to} [{self.status}]>"
