"""
FIEC Process Workflow Service
Process execution domain models.

Models:
    - ProcessInstance:  one execution of a published template for a (year, month)
    - StepInstance:     one stage of an instance, snapshotted from a StepTemplate

Architecture:
    ProcessTemplate ──1:N──▶ ProcessInstance ──1:N──▶ StepInstance ──1:N──▶ FileVersion

Lifecycle states:
    StepInstance:     PENDING → IN_PROGRESS → SUBMITTED → APPROVED
                                              SUBMITTED → REJECTED → IN_PROGRESS | SUBMITTED
                      PENDING | IN_PROGRESS → SKIPPED   (non-required steps only)
    ProcessInstance:  IN_PROGRESS → PENDING_APPROVAL → APPROVED | REJECTED
                      REJECTED → IN_PROGRESS
                      IN_PROGRESS | APPROVED → CLOSED → ARCHIVED

Both tables carry ``lock_version`` as SQLAlchemy's version counter, so a
write based on a stale read fails with StaleDataError instead of silently
overwriting a concurrent transition.
"""

from procflow.models import _iso, _utcnow, db

# ── Step statuses ────────────────────────────────────────────────────────────

STEP_PENDING = "PENDING"
STEP_IN_PROGRESS = "IN_PROGRESS"
STEP_SUBMITTED = "SUBMITTED"
STEP_APPROVED = "APPROVED"
STEP_REJECTED = "REJECTED"
STEP_SKIPPED = "SKIPPED"

STEP_STATUSES = {
    STEP_PENDING, STEP_IN_PROGRESS, STEP_SUBMITTED,
    STEP_APPROVED, STEP_REJECTED, STEP_SKIPPED,
}

STEP_ACTIONS = {"upload", "submit", "approve", "reject", "skip"}

# state → {action: new state}; missing pairs are illegal
STEP_TRANSITIONS = {
    STEP_PENDING:     {"upload": STEP_IN_PROGRESS, "skip": STEP_SKIPPED},
    STEP_IN_PROGRESS: {"upload": STEP_IN_PROGRESS, "submit": STEP_SUBMITTED, "skip": STEP_SKIPPED},
    STEP_SUBMITTED:   {"approve": STEP_APPROVED, "reject": STEP_REJECTED},
    STEP_REJECTED:    {"upload": STEP_IN_PROGRESS, "submit": STEP_SUBMITTED},
    STEP_APPROVED:    {},
    STEP_SKIPPED:     {},
}

TERMINAL_STEP_STATUSES = {STEP_APPROVED, STEP_SKIPPED}

# ── Process states ───────────────────────────────────────────────────────────

PROCESS_IN_PROGRESS = "IN_PROGRESS"
PROCESS_PENDING_APPROVAL = "PENDING_APPROVAL"
PROCESS_APPROVED = "APPROVED"
PROCESS_REJECTED = "REJECTED"
PROCESS_CLOSED = "CLOSED"
PROCESS_ARCHIVED = "ARCHIVED"

PROCESS_STATES = {
    PROCESS_IN_PROGRESS, PROCESS_PENDING_APPROVAL, PROCESS_APPROVED,
    PROCESS_REJECTED, PROCESS_CLOSED, PROCESS_ARCHIVED,
}

PROCESS_ACTIONS = {"submit", "approve", "reject", "rework", "close", "archive"}

PROCESS_TRANSITIONS = {
    PROCESS_IN_PROGRESS:      {"submit": PROCESS_PENDING_APPROVAL, "close": PROCESS_CLOSED},
    PROCESS_PENDING_APPROVAL: {"approve": PROCESS_APPROVED, "reject": PROCESS_REJECTED},
    PROCESS_REJECTED:         {"rework": PROCESS_IN_PROGRESS},
    PROCESS_APPROVED:         {"close": PROCESS_CLOSED},
    PROCESS_CLOSED:           {"archive": PROCESS_ARCHIVED},
    PROCESS_ARCHIVED:         {},
}

# ── Typed metadata schema ────────────────────────────────────────────────────
# Keys outside the schema must start with METADATA_EXTENSION_PREFIX and may
# hold any JSON value.

METADATA_SCHEMA = {
    "created_via": str,
    "source_system": str,
    "priority": int,
    "external_ref": str,
    "confidential": bool,
}

METADATA_EXTENSION_PREFIX = "x-"


def next_step_status(current, action):
    """Return the status a step moves to, or None if the action is illegal."""
    return STEP_TRANSITIONS.get(current, {}).get(action)


def next_process_state(current, action):
    """Return the state a process moves to, or None if the action is illegal."""
    return PROCESS_TRANSITIONS.get(current, {}).get(action)


def closing_rule_satisfied(statuses):
    """True when every non-skipped step is approved."""
    return all(s == STEP_APPROVED for s in statuses if s != STEP_SKIPPED)


# ═════════════════════════════════════════════════════════════════════════════
# 1. ProcessInstance
# ═════════════════════════════════════════════════════════════════════════════


class ProcessInstance(db.Model):
    """
    Materialized execution of a published ProcessTemplate for a period.

    ``template_version`` records which template version the steps were
    copied from; later template versions never touch existing instances.
    """

    __tablename__ = "process_instances"
    __table_args__ = (
        db.Index("ix_process_instances_period", "year", "month"),
        db.CheckConstraint("month BETWEEN 1 AND 12", name="ck_process_instance_month"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_type_id = db.Column(
        db.Integer, db.ForeignKey("process_types.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    template_id = db.Column(
        db.Integer, db.ForeignKey("process_templates.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    template_version = db.Column(db.Integer, nullable=False)
    year = db.Column(db.Integer, nullable=False)
    month = db.Column(db.Integer, nullable=False)
    state = db.Column(db.String(30), nullable=False, default=PROCESS_IN_PROGRESS, index=True)

    responsible_user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False, index=True,
    )
    title = db.Column(db.String(300), nullable=True)
    comment = db.Column(db.Text, nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)
    security_level = db.Column(db.String(30), nullable=True)

    # Sign-off
    reviewed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Closing / archival
    closing_type = db.Column(db.String(30), nullable=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    archived_at = db.Column(db.DateTime(timezone=True), nullable=True)

    metadata_json = db.Column(db.JSON, nullable=False, default=dict)

    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow, index=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    steps = db.relationship(
        "StepInstance", back_populates="process_instance", lazy="selectin",
        cascade="all, delete-orphan", order_by="StepInstance.ord",
    )
    process_type = db.relationship("ProcessType")
    template = db.relationship("ProcessTemplate")

    def to_dict(self, include_steps=False):
        result = {
            "id": self.id,
            "process_type_id": self.process_type_id,
            "template_id": self.template_id,
            "template_version": self.template_version,
            "year": self.year,
            "month": self.month,
            "state": self.state,
            "responsible_user_id": self.responsible_user_id,
            "title": self.title,
            "comment": self.comment,
            "due_at": _iso(self.due_at),
            "security_level": self.security_level,
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "closing_type": self.closing_type,
            "closed_at": _iso(self.closed_at),
            "archived": self.archived,
            "archived_at": _iso(self.archived_at),
            "metadata": dict(self.metadata_json or {}),
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "lock_version": self.lock_version,
            "step_count": len(self.steps),
        }
        if include_steps:
            result["steps"] = [s.to_dict() for s in self.steps]
        return result

    def __repr__(self):
        return f"<ProcessInstance {self.id}: {self.year}-{self.month:02d} [{self.state}]>"


# ═════════════════════════════════════════════════════════════════════════════
# 2. StepInstance
# ═════════════════════════════════════════════════════════════════════════════


class StepInstance(db.Model):
    """
    One step of a process instance.

    ``ord``, ``title``, ``description``, ``required`` and ``reviewer_role_id``
    are copies taken at instantiation time, never live references.
    """

    __tablename__ = "step_instances"
    __table_args__ = (
        db.UniqueConstraint("process_instance_id", "ord", name="uq_step_instance_ord"),
    )

    id = db.Column(db.Integer, primary_key=True)
    process_instance_id = db.Column(
        db.Integer, db.ForeignKey("process_instances.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    step_template_id = db.Column(
        db.Integer, db.ForeignKey("step_templates.id", ondelete="SET NULL"), nullable=True,
    )
    ord = db.Column(db.Integer, nullable=False)
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    required = db.Column(db.Boolean, nullable=False, default=False)
    reviewer_role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="RESTRICT"), nullable=False,
    )

    status = db.Column(db.String(20), nullable=False, default=STEP_PENDING, index=True)
    comment = db.Column(db.Text, nullable=True)
    observation = db.Column(db.Text, nullable=True)
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reviewed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reviewed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    due_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    lock_version = db.Column(db.Integer, nullable=False)
    __mapper_args__ = {"version_id_col": lock_version}

    process_instance = db.relationship("ProcessInstance", back_populates="steps")
    files = db.relationship(
        "FileVersion", back_populates="step_instance", lazy="dynamic",
        cascade="all, delete-orphan", order_by="FileVersion.version",
    )

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STEP_STATUSES

    def to_dict(self):
        return {
            "id": self.id,
            "process_instance_id": self.process_instance_id,
            "step_template_id": self.step_template_id,
            "ord": self.ord,
            "title": self.title,
            "description": self.description,
            "required": self.required,
            "reviewer_role_id": self.reviewer_role_id,
            "status": self.status,
            "comment": self.comment,
            "observation": self.observation,
            "submitted_at": _iso(self.submitted_at),
            "reviewed_by": self.reviewed_by,
            "reviewed_at": _iso(self.reviewed_at),
            "due_at": _iso(self.due_at),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "lock_version": self.lock_version,
        }

    def __repr__(self):
        return f"<StepInstance {self.id}: #{self.ord} [{self.status}]>"
