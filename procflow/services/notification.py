"""
FIEC Process Workflow Service
Notification Service.

Central service for creating and querying in-app notifications, plus the
event-bus sink that turns workflow events into notifications for the
responsible user and for holders of the reviewing role.
"""

from sqlalchemy import func, select

from procflow.models import db
from procflow.models.auth import Role, User, UserRole
from procflow.models.notification import Notification
from procflow.models.process import (
    PROCESS_APPROVED,
    PROCESS_PENDING_APPROVAL,
    PROCESS_REJECTED,
    STEP_APPROVED,
    STEP_REJECTED,
    STEP_SUBMITTED,
)
from procflow.services import events
from procflow.services.identity import process_approver_codes


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, user_id, title, body="", type="INFO",
               process_instance_id=None, step_instance_id=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            user_id=user_id,
            type=type,
            title=title,
            body=body,
            process_instance_id=process_instance_id,
            step_instance_id=step_instance_id,
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, user_ids, title, body="", type="INFO",
                  process_instance_id=None, step_instance_id=None):
        """
        Send the same notification to several users (duplicates collapsed).

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for uid in dict.fromkeys(user_ids):
            notif = Notification(
                user_id=uid,
                type=type,
                title=title,
                body=body,
                process_instance_id=process_instance_id,
                step_instance_id=step_instance_id,
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Query ─────────────────────────────────────────────────────────────

    @staticmethod
    def list_for_user(user_id, unread_only=False, limit=50, offset=0):
        """Retrieve notifications for a user, newest first."""
        q = Notification.query.filter_by(user_id=user_id)
        if unread_only:
            q = q.filter_by(is_read=False)
        return (
            q.order_by(Notification.created_at.desc(), Notification.id.desc())
            .offset(offset).limit(limit).all()
        )

    @staticmethod
    def unread_count(user_id):
        return db.session.execute(
            select(func.count(Notification.id)).where(
                Notification.user_id == user_id,
                Notification.is_read.is_(False),
            )
        ).scalar() or 0

    @staticmethod
    def mark_read(notification_id):
        notif = db.session.get(Notification, notification_id)
        if not notif:
            return None
        notif.mark_read()
        db.session.commit()
        return notif

    # ── Recipients ────────────────────────────────────────────────────────

    @staticmethod
    def active_user_ids_with_role(role_id=None, role_codes=None):
        """Active users holding *role_id* or any of *role_codes*."""
        stmt = (
            select(User.id)
            .join(UserRole, UserRole.user_id == User.id)
            .join(Role, Role.id == UserRole.role_id)
            .where(User.is_active.is_(True))
        )
        if role_id is not None:
            stmt = stmt.where(Role.id == role_id)
        if role_codes:
            stmt = stmt.where(Role.code.in_(list(role_codes)))
        return sorted(set(db.session.execute(stmt).scalars().all()))


# ── Event sink ───────────────────────────────────────────────────────────────


def _period(payload):
    year, month = payload.get("year"), payload.get("month")
    if year and month:
        return f"{year}-{int(month):02d}"
    return ""


def notification_sink(event: events.ProcessEvent) -> None:
    """Dispatch notifications for workflow events."""
    payload = event.payload
    responsible = payload.get("responsible_user_id")
    label = payload.get("title") or f"process #{event.process_instance_id}"
    common = {
        "process_instance_id": event.process_instance_id,
        "step_instance_id": event.step_instance_id,
    }

    try:
        if event.type == events.INSTANCE_CREATED and responsible:
            NotificationService.create(
                user_id=responsible,
                type="INFO",
                title=f"New process assigned: {label}",
                body=f"{payload.get('step_count', 0)} steps created for period {_period(payload)}.",
                **common,
            )

        elif event.type == events.STEP_TRANSITIONED:
            new_status = payload.get("to")
            step_title = payload.get("step_title", "")
            if new_status == STEP_SUBMITTED:
                reviewers = NotificationService.active_user_ids_with_role(
                    role_id=payload.get("reviewer_role_id"),
                )
                if reviewers:
                    NotificationService.broadcast(
                        user_ids=reviewers,
                        type="APPROVAL_PENDING",
                        title=f"Step awaiting review: {step_title}",
                        body=f"Submitted in {label}.",
                        **common,
                    )
            elif new_status == STEP_REJECTED and responsible:
                NotificationService.create(
                    user_id=responsible,
                    type="RETURNED",
                    title=f"Step returned: {step_title}",
                    body=payload.get("comment") or "",
                    **common,
                )
            elif new_status == STEP_APPROVED and responsible:
                NotificationService.create(
                    user_id=responsible,
                    type="INFO",
                    title=f"Step approved: {step_title}",
                    **common,
                )

        elif event.type == events.PROCESS_STATE_CHANGED:
            new_state = payload.get("to")
            if new_state == PROCESS_PENDING_APPROVAL:
                approvers = NotificationService.active_user_ids_with_role(
                    role_codes=process_approver_codes(),
                )
                if approvers:
                    NotificationService.broadcast(
                        user_ids=approvers,
                        type="APPROVAL_PENDING",
                        title=f"Process awaiting sign-off: {label}",
                        **common,
                    )
            elif new_state in (PROCESS_APPROVED, PROCESS_REJECTED) and responsible:
                NotificationService.create(
                    user_id=responsible,
                    type="INFO" if new_state == PROCESS_APPROVED else "RETURNED",
                    title=f"Process {new_state.lower()}: {label}",
                    body=payload.get("comment") or "",
                    **common,
                )
    except Exception:
        db.session.rollback()
        raise
