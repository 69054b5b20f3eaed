"""
FIEC Process Workflow Service
Artifact ledger model.

Models:
    - FileVersion: immutable record of one upload to a step

FileVersion is APPEND-ONLY.  A new upload to the same step appends the
next version number; the row with the highest version is the latest.
The unique (step_instance_id, version) constraint turns two concurrent
uploads that computed the same number into an IntegrityError.
"""

from procflow.models import _iso, _utcnow, db


class FileVersion(db.Model):
    __tablename__ = "file_versions"
    __table_args__ = (
        db.UniqueConstraint("step_instance_id", "version", name="uq_file_version_step"),
    )

    id = db.Column(db.Integer, primary_key=True)
    step_instance_id = db.Column(
        db.Integer, db.ForeignKey("step_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    version = db.Column(db.Integer, nullable=False)
    filename = db.Column(db.String(255), nullable=False)
    content_type = db.Column(db.String(100), nullable=True)
    size_bytes = db.Column(db.BigInteger, nullable=False)
    sha256 = db.Column(db.String(64), nullable=False)
    storage_backend = db.Column(db.String(30), nullable=False, default="external")
    version_comment = db.Column(db.Text, nullable=True)
    replaced_file_id = db.Column(
        db.Integer, db.ForeignKey("file_versions.id", ondelete="SET NULL"), nullable=True,
        comment="Previous version of the same step",
    )
    uploaded_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    uploaded_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    step_instance = db.relationship("StepInstance", back_populates="files")

    def to_dict(self):
        return {
            "id": self.id,
            "step_instance_id": self.step_instance_id,
            "version": self.version,
            "filename": self.filename,
            "content_type": self.content_type,
            "size_bytes": self.size_bytes,
            "sha256": self.sha256,
            "storage_backend": self.storage_backend,
            "version_comment": self.version_comment,
            "replaced_file_id": self.replaced_file_id,
            "uploaded_by": self.uploaded_by,
            "uploaded_at": _iso(self.uploaded_at),
        }

    def __repr__(self):
        return f"<FileVersion {self.id}: step={self.step_instance_id} v{self.version}>"
