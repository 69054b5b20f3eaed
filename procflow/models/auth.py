"""
FIEC Process Workflow Service
Identity domain models.

Models:
    - User:      faculty member who can own or act on process instances
    - Role:      institutional role label (ADMIN, DEAN, DIRECTOR, ...)
    - UserRole:  user ↔ role assignment

Only role labels are modelled.  Sessions and passwords belong to the
external identity provider.
"""

from procflow.models import _iso, _utcnow, db


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    full_name = db.Column(db.String(200), nullable=False)
    email = db.Column(db.String(200), nullable=False, unique=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def roles(self):
        return [ur.role for ur in self.user_roles]

    def to_dict(self, include_roles=False):
        result = {
            "id": self.id,
            "full_name": self.full_name,
            "email": self.email,
            "is_active": self.is_active,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }
        if include_roles:
            result["roles"] = [r.to_dict() for r in self.roles]
        return result

    def __repr__(self):
        return f"<User {self.id}: {self.email}>"


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "code": self.code,
            "name": self.name,
            "description": self.description,
        }

    def __repr__(self):
        return f"<Role {self.id}: {self.code}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"

    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), primary_key=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    user = db.relationship("User", back_populates="user_roles")
    role = db.relationship("Role", lazy="joined")

    def __repr__(self):
        return f"<UserRole user={self.user_id} role={self.role_id}>"
