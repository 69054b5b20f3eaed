"""
Progress Calculator.

Progress is derived from the StepInstance rows on every call and is never
stored.  Only APPROVED steps count as completed; SKIPPED steps stay in the
total but are not completed.
"""

from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import case, func, select

from procflow.models import db
from procflow.models.process import STEP_APPROVED, StepInstance
from procflow.services.instance_service import get_instance


def percent(completed: int, total: int) -> int:
    """``completed / total`` as a whole percentage, rounding halves up."""
    if total <= 0:
        return 0
    value = Decimal(completed * 100) / Decimal(total)
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_progress(process_instance_id: int) -> dict:
    """Return ``{process_instance_id, total_steps, completed_steps, progress_percent}``."""
    get_instance(process_instance_id)
    total, completed = db.session.execute(
        select(
            func.count(StepInstance.id),
            func.coalesce(func.sum(case((StepInstance.status == STEP_APPROVED, 1), else_=0)), 0),
        ).where(StepInstance.process_instance_id == process_instance_id)
    ).one()
    total = int(total or 0)
    completed = int(completed or 0)
    return {
        "process_instance_id": process_instance_id,
        "total_steps": total,
        "completed_steps": completed,
        "progress_percent": percent(completed, total),
    }
