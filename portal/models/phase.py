"""
Studio Client Portal
Phase workflow domain models.

Catalog (seeded once, read-only at runtime):
    - Phase: one of the eight ordered delivery stages
    - PhaseAction: client action gating a phase
    - AutomationRule: per-phase auto-advance rule

Per project (written only by the workflow engine):
    - ProjectPhaseTracking: current position of a project in the pipeline
    - PhaseCompletion: completion stamp of each phase the project has left
    - ActionStatus: completion ledger of client actions
    - PhaseTransition: append-only transition history
    - PhaseDecision: append-only approve / request-changes trail
"""

from datetime import datetime, timezone

from portal.models import db

RULE_TYPES = {"all_actions_complete"}
DECISIONS = {"approved", "changes_requested"}


def _utcnow():
    return datetime.now(timezone.utc)


# ═════════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════════


class Phase(db.Model):
    __tablename__ = "phases"

    id = db.Column(db.Integer, primary_key=True)
    key = db.Column(db.String(50), nullable=False, unique=True)
    name = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, default="")
    icon = db.Column(db.String(10), default="")
    order_index = db.Column(db.Integer, nullable=False, unique=True)
    requires_client_action = db.Column(db.Boolean, nullable=False, default=False)
    is_system_phase = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    actions = db.relationship(
        "PhaseAction",
        back_populates="phase",
        order_by="PhaseAction.order_index",
        cascade="all, delete-orphan",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "order_index": self.order_index,
            "requires_client_action": self.requires_client_action,
            "is_system_phase": self.is_system_phase,
        }

    def __repr__(self):
        return f"<Phase {self.order_index}: {self.key}>"


class PhaseAction(db.Model):
    __tablename__ = "phase_actions"
    __table_args__ = (
        db.UniqueConstraint("phase_id", "key", name="uq_phase_action_key"),
    )

    id = db.Column(db.Integer, primary_key=True)
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"), nullable=False, index=True,
    )
    key = db.Column(db.String(100), nullable=False)
    description = db.Column(db.Text, nullable=False)
    is_required = db.Column(db.Boolean, nullable=False, default=True)
    order_index = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)

    phase = db.relationship("Phase", back_populates="actions")

    def to_dict(self):
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "key": self.key,
            "description": self.description,
            "is_required": self.is_required,
            "order_index": self.order_index,
        }


class AutomationRule(db.Model):
    """
    Per-phase automation rule.

    ``rule_config`` keys understood by the engine:
        auto_advance      – advance once every required action is complete
        complete_project  – on the final phase, complete the project instead
                            of waiting for an explicit approval
    """

    __tablename__ = "phase_automation_rules"
    __table_args__ = (
        db.Index("ix_rule_from_phase_active", "from_phase_id", "rule_type", "is_active"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False, default="")
    description = db.Column(db.Text, default="")
    from_phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"), nullable=False,
    )
    to_phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="SET NULL"), nullable=True,
        comment="Informational; the engine always advances one step",
    )
    rule_type = db.Column(db.String(50), nullable=False, default="all_actions_complete")
    rule_config = db.Column(db.JSON, nullable=False, default=dict)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    from_phase = db.relationship("Phase", foreign_keys=[from_phase_id])
    to_phase = db.relationship("Phase", foreign_keys=[to_phase_id])

    @property
    def auto_advance(self) -> bool:
        return bool((self.rule_config or {}).get("auto_advance"))

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "from_phase_id": self.from_phase_id,
            "from_phase_key": self.from_phase.key if self.from_phase else None,
            "to_phase_id": self.to_phase_id,
            "to_phase_key": self.to_phase.key if self.to_phase else None,
            "rule_type": self.rule_type,
            "rule_config": self.rule_config or {},
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


# ═════════════════════════════════════════════════════════════════════════════
# Per-project state
# ═════════════════════════════════════════════════════════════════════════════


class ProjectPhaseTracking(db.Model):
    """
    Current position of a project in the pipeline.

    Invariants kept by the engine:
        current_phase_index == current_phase.order_index
        is_completed implies current_phase_index is the last index
    """

    __tablename__ = "project_phase_tracking"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, unique=True,
    )
    current_phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="RESTRICT"), nullable=False,
    )
    current_phase_index = db.Column(db.Integer, nullable=False, default=0)
    phase_started_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), default=_utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    project = db.relationship("Project", back_populates="phase_tracking")
    current_phase = db.relationship("Phase")
    completions = db.relationship(
        "PhaseCompletion",
        back_populates="tracking",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def completion_map(self) -> dict:
        """phase_id -> completed_at for every phase this project has left."""
        return {c.phase_id: c.completed_at for c in self.completions}

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "current_phase_id": self.current_phase_id,
            "current_phase_index": self.current_phase_index,
            "phase_started_at": self.phase_started_at.isoformat() if self.phase_started_at else None,
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }


class PhaseCompletion(db.Model):
    __tablename__ = "phase_completions"
    __table_args__ = (
        db.UniqueConstraint("tracking_id", "phase_id", name="uq_phase_completion"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tracking_id = db.Column(
        db.Integer,
        db.ForeignKey("project_phase_tracking.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"), nullable=False,
    )
    completed_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    tracking = db.relationship("ProjectPhaseTracking", back_populates="completions")


class ActionStatus(db.Model):
    __tablename__ = "project_action_status"
    __table_args__ = (
        db.UniqueConstraint("project_id", "action_id", name="uq_project_action"),
        db.Index("ix_action_status_project_phase", "project_id", "phase_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    action_id = db.Column(
        db.Integer, db.ForeignKey("phase_actions.id", ondelete="CASCADE"), nullable=False,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="CASCADE"), nullable=False,
    )
    is_completed = db.Column(db.Boolean, nullable=False, default=False)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    notes = db.Column(db.Text, nullable=True)
    updated_at = db.Column(db.DateTime(timezone=True), default=_utcnow, onupdate=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "action_id": self.action_id,
            "phase_id": self.phase_id,
            "is_completed": self.is_completed,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
            "notes": self.notes,
        }


class PhaseTransition(db.Model):
    """
    Append-only phase history.

    One row per change of ``current_phase_index``, including the initial
    ``from_phase_id = NULL`` row written at project creation.
    ``transitioned_by = NULL`` marks a system (automation) transition.
    """

    __tablename__ = "phase_transitions"
    __table_args__ = (
        db.Index("ix_phase_transitions_project_created", "project_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    from_phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="SET NULL"), nullable=True,
    )
    to_phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="RESTRICT"), nullable=False,
    )
    transitioned_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    reason = db.Column(db.Text, default="")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def __repr__(self):
        return f"<PhaseTransition {self.id}: {self.from_phase_id} -> {self.to_phase_id}>"


class PhaseDecision(db.Model):
    __tablename__ = "phase_decisions"
    __table_args__ = (
        db.Index("ix_phase_decisions_project", "project_id", "phase_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False,
    )
    phase_id = db.Column(
        db.Integer, db.ForeignKey("phases.id", ondelete="RESTRICT"), nullable=False,
    )
    decision = db.Column(db.String(30), nullable=False, comment="approved | changes_requested")
    decided_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    notes = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "phase_id": self.phase_id,
            "decision": self.decision,
            "decided_by": self.decided_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
