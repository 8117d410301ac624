"""
Action Gate.

Maintains the per-project client action ledger and answers the single
question the workflow engine asks of it: has every required action of a
phase been completed?

Business rules:
    - One ActionStatus row per (project, action), created lazily on first
      update. A missing row counts as incomplete.
    - Completing stamps ``completed_at``/``completed_by``; un-completing
      clears both.
    - A phase without required actions is trivially complete.
    - ``phase_id`` on the status row always equals the action's own phase.

Callers hold the project's tracking-row lock while writing; functions here
flush but never commit.
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select

from portal.models import db
from portal.models.phase import ActionStatus
from portal.services.phase_catalog import ActionDef, PhaseDef


def upsert_action_status(
    project_id: int,
    action: ActionDef,
    *,
    is_completed: bool,
    actor_id: int | None,
    notes: str | None = None,
) -> ActionStatus:
    """Create or update the ledger row for one action of one project."""
    row = db.session.execute(
        select(ActionStatus).where(
            ActionStatus.project_id == project_id,
            ActionStatus.action_id == action.id,
        )
    ).scalar_one_or_none()

    if row is None:
        row = ActionStatus(project_id=project_id, action_id=action.id, phase_id=action.phase_id)
        db.session.add(row)

    row.phase_id = action.phase_id
    row.is_completed = bool(is_completed)
    row.notes = notes
    if is_completed:
        row.completed_at = datetime.now(timezone.utc)
        row.completed_by = actor_id
    else:
        row.completed_at = None
        row.completed_by = None

    db.session.flush()
    return row


def all_required_complete(project_id: int, phase: PhaseDef) -> bool:
    """True when every required action of *phase* is completed for the project."""
    return pending_required_count(project_id, phase) == 0


def pending_required_count(project_id: int, phase: PhaseDef) -> int:
    """Number of required actions of *phase* not yet completed."""
    required = phase.required_action_ids
    if not required:
        return 0
    done = db.session.execute(
        select(func.count(ActionStatus.id)).where(
            ActionStatus.project_id == project_id,
            ActionStatus.action_id.in_(required),
            ActionStatus.is_completed.is_(True),
        )
    ).scalar_one()
    return len(required) - done


def actions_with_status(project_id: int, phase: PhaseDef) -> list[dict]:
    """The phase's actions in display order, each merged with its ledger row."""
    rows = db.session.execute(
        select(ActionStatus).where(
            ActionStatus.project_id == project_id,
            ActionStatus.phase_id == phase.id,
        )
    ).scalars().all()
    by_action = {r.action_id: r for r in rows}

    result = []
    for action in phase.actions:
        status = by_action.get(action.id)
        item = action.to_dict()
        item.update({
            "is_completed": bool(status and status.is_completed),
            "completed_at": status.completed_at.isoformat() if status and status.completed_at else None,
            "completed_by": status.completed_by if status else None,
            "notes": status.notes if status else None,
        })
        result.append(item)
    return result
