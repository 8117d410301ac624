"""
Project Phase Workflow Engine.

Moves a project through the ordered phase catalog and keeps the tracking
record, the action ledger and the transition history consistent.

Business rules:
    - Forward moves are exactly one step (``advance``, ``approve``, automation).
      Only the administrative ``jump_to`` may move anywhere, and it bypasses
      the action gate.
    - Entering the last phase does not complete the project; completion comes
      from an explicit ``approve`` of the last phase (or a final-phase rule
      with ``complete_project`` opted in).
    - Every mutation locks the project's tracking row (SELECT ... FOR UPDATE),
      re-reads it, re-checks its preconditions and commits tracking update
      plus history insert together.
    - Side effects (notifications, email, messages, activity log) are NOT
      performed here. Results carry ``events`` that the caller hands to
      ``workflow_effects.dispatch`` after the commit.

All mutating functions commit on success and roll back on failure. Lock
timeouts and lost connections surface as ``TransientStoreError``.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError

from portal.auth import SYSTEM_ACTOR, Actor
from portal.core.exceptions import (
    ActionNotFoundError,
    AlreadyInitializedError,
    AtFinalPhaseError,
    ForbiddenError,
    NotCurrentPhaseError,
    TrackingNotFoundError,
    TransientStoreError,
    ValidationError,
)
from portal.models import db
from portal.models.phase import PhaseCompletion, PhaseDecision, ProjectPhaseTracking
from portal.models.project import Project
from portal.services import action_gate, automation_rules, phase_history
from portal.services.phase_catalog import PhaseCatalog, PhaseDef, get_catalog

logger = logging.getLogger(__name__)

REASON_CREATED = "Project created"
REASON_MANUAL_ADVANCE = "Advanced by administrator"
REASON_MANUAL_JUMP = "Manual phase change"
REASON_AUTO_ADVANCE = "Auto-advanced: All required actions completed"
REASON_APPROVED_DEFAULT = "Approved by owner"


# ═════════════════════════════════════════════════════════════════════════════
# Results
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class WorkflowEvent:
    """Plain-data record of something that happened, consumed after commit.

    kind: initialized | advanced | jumped | approved | completed |
          changes_requested | action_status | awaiting_approval
    """

    kind: str
    project_id: int
    tenant_id: int | None
    actor_id: int | None
    from_phase: PhaseDef | None = None
    to_phase: PhaseDef | None = None
    reason: str = ""
    notes: str | None = None
    metadata: dict = field(default_factory=dict)


@dataclass
class TransitionResult:
    project_id: int
    phase: PhaseDef
    previous_phase: PhaseDef | None
    is_completed: bool
    changed: bool = True
    events: list[WorkflowEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "phase": self.phase.to_dict(),
            "previous_phase": self.previous_phase.to_dict() if self.previous_phase else None,
            "is_completed": self.is_completed,
            "changed": self.changed,
        }


@dataclass
class ActionStatusResult:
    project_id: int
    action_status: dict
    all_required_complete: bool
    auto_advanced: bool = False
    new_phase: PhaseDef | None = None
    awaiting_approval: bool = False
    project_completed: bool = False
    events: list[WorkflowEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "action_status": self.action_status,
            "all_required_complete": self.all_required_complete,
            "auto_advanced": self.auto_advanced,
            "new_phase": self.new_phase.to_dict() if self.new_phase else None,
            "awaiting_approval": self.awaiting_approval,
            "project_completed": self.project_completed,
        }


@dataclass
class DecisionResult:
    project_id: int
    decision: dict
    transition: TransitionResult | None = None
    events: list[WorkflowEvent] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "project_id": self.project_id,
            "decision": self.decision,
            "transition": self.transition.to_dict() if self.transition else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Private helpers
# ═════════════════════════════════════════════════════════════════════════════


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def _unit_of_work(project_id):
    """Commit on success; roll back and translate store failures otherwise."""
    try:
        yield
        db.session.commit()
    except OperationalError as exc:
        db.session.rollback()
        logger.warning("Phase store unavailable: %s", exc.orig,
                       extra={"project_id": project_id, "error_code": TransientStoreError.code})
        raise TransientStoreError(
            "Phase store temporarily unavailable, retry the request", project_id=project_id,
        ) from exc
    except Exception:
        db.session.rollback()
        raise


def tracking_lock_statement(project_id: int, tenant_id: int | None = None):
    """SELECT of the tracking row plus its project, locked FOR UPDATE.

    ``populate_existing`` makes the locked read overwrite anything already
    in the identity map, so preconditions are checked against fresh state.
    """
    stmt = (
        select(ProjectPhaseTracking, Project)
        .join(Project, Project.id == ProjectPhaseTracking.project_id)
        .where(
            ProjectPhaseTracking.project_id == project_id,
            Project.deleted_at.is_(None),
        )
        .with_for_update(of=ProjectPhaseTracking)
        .execution_options(populate_existing=True)
    )
    if tenant_id is not None:
        stmt = stmt.where(Project.tenant_id == tenant_id)
    return stmt


def _lock_tracking(project_id: int, actor: Actor) -> tuple[ProjectPhaseTracking, Project]:
    row = db.session.execute(tracking_lock_statement(project_id, actor.tenant_id)).first()
    if row is None:
        raise TrackingNotFoundError(project_id)
    return row[0], row[1]


def _read_tracking(project_id: int, actor: Actor | None) -> tuple[ProjectPhaseTracking, Project]:
    stmt = (
        select(ProjectPhaseTracking, Project)
        .join(Project, Project.id == ProjectPhaseTracking.project_id)
        .where(ProjectPhaseTracking.project_id == project_id, Project.deleted_at.is_(None))
    )
    if actor is not None and actor.tenant_id is not None:
        stmt = stmt.where(Project.tenant_id == actor.tenant_id)
    row = db.session.execute(stmt).first()
    if row is None:
        raise TrackingNotFoundError(project_id)
    return row[0], row[1]


def _authorize_participant(actor: Actor, project: Project) -> None:
    if actor.is_admin or (actor.user_id is not None and actor.user_id == project.client_id):
        return
    raise ForbiddenError(project_id=project.id)


def _authorize_admin(actor: Actor, project_id) -> None:
    if not actor.is_admin:
        raise ForbiddenError("Administrator access required", project_id=project_id)


def _stamp_completion(tracking: ProjectPhaseTracking, phase: PhaseDef, now: datetime) -> None:
    for completion in tracking.completions:
        if completion.phase_id == phase.id:
            completion.completed_at = now
            return
    tracking.completions.append(PhaseCompletion(phase_id=phase.id, completed_at=now))


def _move(
    tracking: ProjectPhaseTracking,
    target: PhaseDef,
    *,
    actor_id: int | None,
    reason: str,
    now: datetime,
) -> None:
    from_phase_id = tracking.current_phase_id
    tracking.current_phase_id = target.id
    tracking.current_phase_index = target.order_index
    tracking.phase_started_at = now
    phase_history.append(tracking.project_id, from_phase_id, target.id, actor_id, reason)


def _advance_locked(
    catalog: PhaseCatalog,
    tracking: ProjectPhaseTracking,
    project: Project,
    actor: Actor,
    reason: str,
) -> TransitionResult:
    """One-step forward move on an already-locked tracking row."""
    if tracking.current_phase_index >= catalog.last_index:
        raise AtFinalPhaseError(project.id)

    current = catalog.by_index(tracking.current_phase_index, project_id=project.id)
    target = catalog.by_index(tracking.current_phase_index + 1, project_id=project.id)
    now = _utcnow()

    _stamp_completion(tracking, current, now)
    _move(tracking, target, actor_id=actor.user_id, reason=reason, now=now)

    logger.info(
        "Project %s advanced %s -> %s", project.id, current.key, target.key,
        extra={"project_id": project.id, "from_phase": current.key,
               "to_phase": target.key, "actor_id": actor.user_id},
    )
    event = WorkflowEvent(
        kind="advanced",
        project_id=project.id,
        tenant_id=project.tenant_id,
        actor_id=actor.user_id,
        from_phase=current,
        to_phase=target,
        reason=reason,
    )
    return TransitionResult(
        project_id=project.id,
        phase=target,
        previous_phase=current,
        is_completed=tracking.is_completed,
        events=[event],
    )


def _complete_locked(
    catalog: PhaseCatalog,
    tracking: ProjectPhaseTracking,
    project: Project,
    actor: Actor,
    reason: str,
) -> TransitionResult:
    """Mark the project complete; the tracking row must sit on the last phase."""
    final = catalog.by_index(catalog.last_index, project_id=project.id)
    now = _utcnow()

    tracking.is_completed = True
    tracking.completed_at = now
    _stamp_completion(tracking, final, now)
    project.status = "completed"
    project.completed_at = now

    logger.info(
        "Project %s completed", project.id,
        extra={"project_id": project.id, "phase_key": final.key, "actor_id": actor.user_id},
    )
    event = WorkflowEvent(
        kind="completed",
        project_id=project.id,
        tenant_id=project.tenant_id,
        actor_id=actor.user_id,
        from_phase=final,
        to_phase=final,
        reason=reason,
    )
    return TransitionResult(
        project_id=project.id,
        phase=final,
        previous_phase=final,
        is_completed=True,
        events=[event],
    )


def _check_decision_target(
    catalog: PhaseCatalog, tracking: ProjectPhaseTracking, project: Project, phase_key: str,
) -> PhaseDef:
    phase = catalog.by_key(phase_key, project_id=project.id, user_supplied=True)
    current = catalog.by_index(tracking.current_phase_index, project_id=project.id)
    if phase.id != current.id:
        raise NotCurrentPhaseError(project.id, phase_key, current.key)
    return current


def _record_decision(project_id: int, phase: PhaseDef, decision: str,
                     actor: Actor, notes: str | None) -> PhaseDecision:
    row = PhaseDecision(
        project_id=project_id,
        phase_id=phase.id,
        decision=decision,
        decided_by=actor.user_id,
        notes=notes,
    )
    db.session.add(row)
    db.session.flush()
    return row


# ═════════════════════════════════════════════════════════════════════════════
# Public operations
# ═════════════════════════════════════════════════════════════════════════════


def initialize(project_id: int, *, actor_id: int | None = None,
               tenant_id: int | None = None) -> TransitionResult:
    """Create the tracking row at the first phase and record the initial history.

    Runs inside the caller's project-creation transaction: flushes, never
    commits.

    Raises:
        AlreadyInitializedError: the project already has a tracking row.
    """
    catalog = get_catalog()
    existing = db.session.execute(
        select(ProjectPhaseTracking.id).where(ProjectPhaseTracking.project_id == project_id)
    ).first()
    if existing is not None:
        raise AlreadyInitializedError(project_id)

    first = catalog.first
    now = _utcnow()
    tracking = ProjectPhaseTracking(
        project_id=project_id,
        current_phase_id=first.id,
        current_phase_index=first.order_index,
        phase_started_at=now,
        is_completed=False,
    )
    db.session.add(tracking)
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Concurrent initializer won the unique (project_id) race
        raise AlreadyInitializedError(project_id) from exc

    phase_history.append(project_id, None, first.id, actor_id, REASON_CREATED)
    logger.info("Phase tracking initialized at %s", first.key,
                extra={"project_id": project_id, "phase_key": first.key, "actor_id": actor_id})

    event = WorkflowEvent(
        kind="initialized",
        project_id=project_id,
        tenant_id=tenant_id,
        actor_id=actor_id,
        to_phase=first,
        reason=REASON_CREATED,
    )
    return TransitionResult(project_id=project_id, phase=first, previous_phase=None,
                            is_completed=False, events=[event])


def advance(project_id: int, actor: Actor, reason: str | None = None) -> TransitionResult:
    """Move the project exactly one phase forward (administrators only).

    Raises:
        ForbiddenError, TrackingNotFoundError, AtFinalPhaseError,
        PhaseNotFoundError (catalog inconsistent), TransientStoreError.
    """
    _authorize_admin(actor, project_id)
    catalog = get_catalog()
    with _unit_of_work(project_id):
        tracking, project = _lock_tracking(project_id, actor)
        result = _advance_locked(catalog, tracking, project, actor,
                                 (reason or "").strip() or REASON_MANUAL_ADVANCE)
    return result


def jump_to(project_id: int, target_phase_key: str, actor: Actor,
            reason: str | None = None) -> TransitionResult:
    """Move the project to any phase, bypassing the action gate (administrators only).

    Jumping to a non-final phase reopens a completed project. Jumping to
    the phase the project is already on changes nothing and writes no
    history.
    """
    _authorize_admin(actor, project_id)
    catalog = get_catalog()
    target = catalog.by_key(target_phase_key, project_id=project_id, user_supplied=True)
    reason = (reason or "").strip() or REASON_MANUAL_JUMP

    with _unit_of_work(project_id):
        tracking, project = _lock_tracking(project_id, actor)
        current = catalog.by_index(tracking.current_phase_index, project_id=project_id)

        if target.id == current.id:
            return TransitionResult(project_id=project_id, phase=current, previous_phase=current,
                                    is_completed=tracking.is_completed, changed=False)

        now = _utcnow()
        if not catalog.is_final(target) and tracking.is_completed:
            tracking.is_completed = False
            tracking.completed_at = None
            project.status = "active"
            project.completed_at = None

        _move(tracking, target, actor_id=actor.user_id, reason=reason, now=now)
        logger.info(
            "Project %s jumped %s -> %s", project_id, current.key, target.key,
            extra={"project_id": project_id, "from_phase": current.key,
                   "to_phase": target.key, "actor_id": actor.user_id},
        )
        event = WorkflowEvent(
            kind="jumped",
            project_id=project_id,
            tenant_id=project.tenant_id,
            actor_id=actor.user_id,
            from_phase=current,
            to_phase=target,
            reason=reason,
        )
        result = TransitionResult(project_id=project_id, phase=target, previous_phase=current,
                                  is_completed=tracking.is_completed, events=[event])
    return result


def approve(project_id: int, phase_key: str, actor: Actor, notes: str | None = None) -> DecisionResult:
    """Approve the current phase as the project owner or an administrator.

    A non-final phase advances one step; the final phase completes the project.

    Raises:
        ForbiddenError, TrackingNotFoundError, PhaseNotFoundError,
        NotCurrentPhaseError, AtFinalPhaseError (already completed).
    """
    catalog = get_catalog()
    notes = (notes or "").strip() or None

    with _unit_of_work(project_id):
        tracking, project = _lock_tracking(project_id, actor)
        _authorize_participant(actor, project)
        if tracking.is_completed:
            raise AtFinalPhaseError(project_id, "Project is already completed")
        phase = _check_decision_target(catalog, tracking, project, phase_key)

        decision = _record_decision(project_id, phase, "approved", actor, notes)
        reason = f"Approved: {notes}" if notes else REASON_APPROVED_DEFAULT

        if catalog.is_final(phase):
            transition = _complete_locked(catalog, tracking, project, actor, reason)
        else:
            transition = _advance_locked(catalog, tracking, project, actor, reason)

        approved = WorkflowEvent(
            kind="approved",
            project_id=project_id,
            tenant_id=project.tenant_id,
            actor_id=actor.user_id,
            from_phase=phase,
            to_phase=transition.phase,
            reason=reason,
            notes=notes,
        )
        result = DecisionResult(
            project_id=project_id,
            decision=decision.to_dict(),
            transition=transition,
            events=[approved, *transition.events],
        )
    return result


def reject(project_id: int, phase_key: str, actor: Actor, feedback: str | None) -> DecisionResult:
    """Request changes on the current phase. Never moves the phase pointer.

    Raises:
        ValidationError: blank feedback.
        ForbiddenError, TrackingNotFoundError, PhaseNotFoundError, NotCurrentPhaseError.
    """
    feedback = (feedback or "").strip()
    if not feedback:
        raise ValidationError("feedback is required", details={"field": "feedback"})

    catalog = get_catalog()
    with _unit_of_work(project_id):
        tracking, project = _lock_tracking(project_id, actor)
        _authorize_participant(actor, project)
        phase = _check_decision_target(catalog, tracking, project, phase_key)

        decision = _record_decision(project_id, phase, "changes_requested", actor, feedback)
        logger.info("Changes requested on %s", phase.key,
                    extra={"project_id": project_id, "phase_key": phase.key, "actor_id": actor.user_id})
        event = WorkflowEvent(
            kind="changes_requested",
            project_id=project_id,
            tenant_id=project.tenant_id,
            actor_id=actor.user_id,
            from_phase=phase,
            to_phase=phase,
            notes=feedback,
        )
        result = DecisionResult(project_id=project_id, decision=decision.to_dict(), events=[event])
    return result


def set_action_status(
    project_id: int,
    action_id: int,
    is_completed: bool,
    actor: Actor,
    notes: str | None = None,
) -> ActionStatusResult:
    """Record a client action's completion and run phase automation.

    The ledger upsert, the gate re-check and any automatic advance share
    one transaction.
    """
    catalog = get_catalog()
    action = catalog.action(action_id)
    if action is None:
        raise ActionNotFoundError(action_id, project_id=project_id)

    with _unit_of_work(project_id):
        tracking, project = _lock_tracking(project_id, actor)
        _authorize_participant(actor, project)

        row = action_gate.upsert_action_status(
            project_id, action, is_completed=is_completed, actor_id=actor.user_id, notes=notes,
        )
        action_phase = catalog.by_id(action.phase_id, project_id=project_id)
        result = ActionStatusResult(
            project_id=project_id,
            action_status=row.to_dict(),
            all_required_complete=False,
        )
        result.events.append(WorkflowEvent(
            kind="action_status",
            project_id=project_id,
            tenant_id=project.tenant_id,
            actor_id=actor.user_id,
            from_phase=action_phase,
            notes=notes,
            metadata={"action_id": action.id, "action_key": action.key, "is_completed": bool(is_completed)},
        ))

        current = catalog.by_index(tracking.current_phase_index, project_id=project_id)
        complete = action_gate.all_required_complete(project_id, current)
        result.all_required_complete = complete

        if complete and not tracking.is_completed:
            decision = automation_rules.evaluate(catalog, current, complete)
            if decision.outcome == automation_rules.OUTCOME_ADVANCE:
                transition = _advance_locked(catalog, tracking, project, SYSTEM_ACTOR, REASON_AUTO_ADVANCE)
                result.auto_advanced = True
                result.new_phase = transition.phase
                result.events.extend(transition.events)
            elif decision.outcome == automation_rules.OUTCOME_COMPLETE:
                transition = _complete_locked(catalog, tracking, project, SYSTEM_ACTOR, REASON_AUTO_ADVANCE)
                result.project_completed = True
                result.events.extend(transition.events)

            if catalog.is_final(current) and not tracking.is_completed:
                result.awaiting_approval = True
                result.events.append(WorkflowEvent(
                    kind="awaiting_approval",
                    project_id=project_id,
                    tenant_id=project.tenant_id,
                    actor_id=actor.user_id,
                    from_phase=current,
                    to_phase=current,
                ))

        logger.info(
            "Action %s set is_completed=%s", action.key, bool(is_completed),
            extra={"project_id": project_id, "action_id": action.id, "actor_id": actor.user_id},
        )
    return result


def get_current_state(project_id: int, actor: Actor | None = None) -> dict:
    """Read-only snapshot of a project's position; takes no locks.

    When *actor* is given the read is tenant-scoped and restricted to the
    owner or an administrator.
    """
    catalog = get_catalog()
    tracking, project = _read_tracking(project_id, actor)
    if actor is not None:
        _authorize_participant(actor, project)

    current = catalog.by_index(tracking.current_phase_index, project_id=project_id)
    completions = tracking.completion_map()

    phases = []
    for phase in catalog.phases:
        if tracking.is_completed or phase.order_index < current.order_index:
            status = "completed"
        elif phase.order_index == current.order_index:
            status = "current"
        else:
            status = "upcoming"
        stamp = completions.get(phase.id)
        item = phase.to_dict()
        item["status"] = status
        item["completed_at"] = stamp.isoformat() if stamp else None
        phases.append(item)

    pending = action_gate.pending_required_count(project_id, current)
    if tracking.is_completed:
        percent = 100
    elif catalog.last_index == 0:
        percent = 0
    else:
        percent = round(current.order_index / catalog.last_index * 100)

    return {
        "project_id": project_id,
        "tracking": tracking.to_dict(),
        "current_phase": current.to_dict(),
        "phases": phases,
        "actions": action_gate.actions_with_status(project_id, current),
        "pending_required_actions": pending,
        "progress": {
            "current_index": current.order_index,
            "total_phases": catalog.total,
            "percent_complete": percent,
        },
        "can_advance": (
            pending == 0
            and not tracking.is_completed
            and current.order_index < catalog.last_index
        ),
        "is_completed": tracking.is_completed,
    }


def list_history(project_id: int, actor: Actor | None = None, limit=None, offset=0) -> dict:
    """Paginated transition history, newest first."""
    _, project = _read_tracking(project_id, actor)
    if actor is not None:
        _authorize_participant(actor, project)
    return phase_history.list_history(project_id, limit=limit, offset=offset)
