"""
Phase transition history.

``append`` is a pure recorder: it validates nothing and is only ever called
by the workflow engine inside the transaction that moved the phase pointer.
``list_history`` is the paginated, newest-first read model.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.orm import aliased

from portal.models import db
from portal.models.auth import User
from portal.models.phase import Phase, PhaseTransition

DEFAULT_LIMIT = 20
SYSTEM_ACTOR_NAME = "System"


def append(
    project_id: int,
    from_phase_id: int | None,
    to_phase_id: int,
    actor_id: int | None,
    reason: str,
) -> PhaseTransition:
    entry = PhaseTransition(
        project_id=project_id,
        from_phase_id=from_phase_id,
        to_phase_id=to_phase_id,
        transitioned_by=actor_id,
        reason=reason,
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def _clamp(limit, offset) -> tuple[int, int]:
    max_limit = current_app.config.get("PHASE_HISTORY_MAX_LIMIT", 100)
    try:
        limit = int(limit) if limit is not None else DEFAULT_LIMIT
    except (TypeError, ValueError):
        limit = DEFAULT_LIMIT
    try:
        offset = int(offset) if offset is not None else 0
    except (TypeError, ValueError):
        offset = 0
    return max(1, min(limit, max_limit)), max(0, offset)


def list_history(project_id: int, limit=DEFAULT_LIMIT, offset=0) -> dict:
    """Return ``{items, total, limit, offset}`` newest first.

    Each item carries the from/to phase key, name and icon plus the acting
    user's display name (``"System"`` for automation).
    """
    limit, offset = _clamp(limit, offset)
    from_phase = aliased(Phase)
    to_phase = aliased(Phase)

    stmt = (
        select(PhaseTransition, from_phase, to_phase, User)
        .join(to_phase, to_phase.id == PhaseTransition.to_phase_id)
        .outerjoin(from_phase, from_phase.id == PhaseTransition.from_phase_id)
        .outerjoin(User, User.id == PhaseTransition.transitioned_by)
        .where(PhaseTransition.project_id == project_id)
        .order_by(PhaseTransition.created_at.desc(), PhaseTransition.id.desc())
        .limit(limit)
        .offset(offset)
    )
    total = db.session.execute(
        select(func.count(PhaseTransition.id)).where(PhaseTransition.project_id == project_id)
    ).scalar_one()

    items = []
    for entry, src, dst, user in db.session.execute(stmt).all():
        items.append({
            "id": entry.id,
            "project_id": entry.project_id,
            "from_phase_id": entry.from_phase_id,
            "from_phase_key": src.key if src else None,
            "from_phase_name": src.name if src else None,
            "from_phase_icon": src.icon if src else None,
            "to_phase_id": entry.to_phase_id,
            "to_phase_key": dst.key,
            "to_phase_name": dst.name,
            "to_phase_icon": dst.icon,
            "transitioned_by": entry.transitioned_by,
            "transitioned_by_name": user.display_name if user else SYSTEM_ACTOR_NAME,
            "reason": entry.reason,
            "created_at": entry.created_at.isoformat() if entry.created_at else None,
        })

    return {"items": items, "total": total, "limit": limit, "offset": offset}
