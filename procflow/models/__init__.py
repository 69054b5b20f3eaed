"""
FIEC Process Workflow Service
Shared Flask-SQLAlchemy handle.

Every model module imports ``db`` from here; the application factory
binds it with ``db.init_app(app)``.
"""

from datetime import datetime, timezone

from flask_sqlalchemy import SQLAlchemy

db = SQLAlchemy()


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None
