"""
FIEC Process Workflow Service
Catalog domain models.

Models:
    - ProcessType:      institutional category of recurring workflow
    - ProcessTemplate:  versioned, ordered step definition set for a type
    - StepTemplate:     one step definition within a template

Architecture:
    ProcessType ──1:N──▶ ProcessTemplate ──1:N──▶ StepTemplate

Lifecycle states:
    ProcessTemplate:  DRAFT (editable, not instantiable)
                      → PUBLISHED (immutable, instantiable)
"""

from procflow.models import _iso, _utcnow, db

TEMPLATE_DRAFT = "DRAFT"
TEMPLATE_PUBLISHED = "PUBLISHED"


class ProcessType(db.Model):
    """Institutional category (e.g. EVAL_DOCENTE).  Toggled, never deleted."""

    __tablename__ = "process_types"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    active = db.Column(db.Boolean, nullable=False, default=True)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    templates = db.relationship(
        "ProcessTemplate", back_populates="process_type", lazy="dynamic",
        order_by="ProcessTemplate.version",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
            "active": self.active,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<ProcessType {self.id}: {self.code}>"


class ProcessTemplate(db.Model):
    """
    Ordered step definition set belonging to one ProcessType.

    ``version`` counts 1, 2, ... per process type.  Exactly one published
    version per type carries ``is_latest``.
    """

    __tablename__ = "process_templates"
    __table_args__ = (
        db.UniqueConstraint("process_type_id", "version", name="uq_template_type_version"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_type_id = db.Column(
        db.Integer, db.ForeignKey("process_types.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    description = db.Column(db.Text, nullable=False)
    version = db.Column(db.Integer, nullable=False, default=1)
    is_published = db.Column(db.Boolean, nullable=False, default=False)
    is_latest = db.Column(db.Boolean, nullable=False, default=False)
    published_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    process_type = db.relationship("ProcessType", back_populates="templates")
    steps = db.relationship(
        "StepTemplate", back_populates="template", lazy="selectin",
        cascade="all, delete-orphan", order_by="StepTemplate.ord",
    )

    @property
    def status(self):
        return TEMPLATE_PUBLISHED if self.is_published else TEMPLATE_DRAFT

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "process_type_id": self.process_type_id,
            "description": self.description,
            "version": self.version,
            "status": self.status,
            "is_published": self.is_published,
            "is_latest": self.is_latest,
            "published_at": _iso(self.published_at),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "step_count": len(self.steps),
            "required_step_count": sum(1 for s in self.steps if s.required),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        return result

    def __repr__(self):
        return f"<ProcessTemplate {self.id}: type={self.process_type_id} v{self.version} [{self.status}]>"


class StepTemplate(db.Model):
    """One step definition.  ``ord`` is unique and contiguous 1..N per template."""

    __tablename__ = "step_templates"
    __table_args__ = (
        db.UniqueConstraint("template_id", "ord", name="uq_step_template_ord"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("process_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    ord = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    required = db.Column(db.Boolean, nullable=False, default=False)
    reviewer_role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    template = db.relationship("ProcessTemplate", back_populates="steps")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "ord": self.ord,
            "title": self.title,
            "description": self.description,
            "required": self.required,
            "reviewer_role_id": self.reviewer_role_id,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<StepTemplate {self.id}: #{self.ord} {self.title[:40]}>"
