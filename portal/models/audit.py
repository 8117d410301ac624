"""
Studio Client Portal
Activity log model.

Models:
    - ActivityLog: append-only record of user-visible project activity.
"""

import json
from datetime import datetime, timezone

from portal.models import db

ACTIVITY_ACTIONS = {
    "project.create",
    "project.delete",
    "phase.initialize",
    "phase.advance",
    "phase.jump",
    "phase.approve",
    "phase.complete",
    "phase.reject",
    "phase.action_status",
    "phase.stalled_reminder",
}


class ActivityLog(db.Model):
    """
    One row per recorded activity.

    ``metadata_json`` carries the structured payload of the event
    (phase keys, action ids, reasons) for the activity feed.
    """

    __tablename__ = "activity_logs"
    __table_args__ = (
        db.Index("idx_activity_entity", "entity_type", "entity_id"),
        db.Index("idx_activity_project", "project_id"),
        db.Index("idx_activity_ts", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    tenant_id = db.Column(
        db.Integer, db.ForeignKey("tenants.id", ondelete="SET NULL"), nullable=True, index=True,
    )
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True,
    )
    user_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        comment="Acting user; NULL for system activity",
    )
    action = db.Column(db.String(60), nullable=False, comment="phase.advance | phase.approve | …")
    entity_type = db.Column(db.String(30), nullable=False, default="project")
    entity_id = db.Column(db.String(36), nullable=False)
    description = db.Column(db.Text, default="")
    metadata_json = db.Column(db.Text, default="{}")
    created_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=lambda: datetime.now(timezone.utc),
    )

    @property
    def metadata_dict(self) -> dict:
        try:
            return json.loads(self.metadata_json or "{}")
        except (json.JSONDecodeError, TypeError):
            return {}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "project_id": self.project_id,
            "user_id": self.user_id,
            "action": self.action,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "description": self.description,
            "metadata": self.metadata_dict,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ActivityLog {self.id}: {self.action} on {self.entity_type}/{self.entity_id}>"


# ── Convenience writer ───────────────────────────────────────────────────────

def write_activity(
    *,
    action: str,
    entity_id,
    description: str = "",
    entity_type: str = "project",
    project_id: int | None = None,
    tenant_id: int | None = None,
    user_id: int | None = None,
    metadata: dict | None = None,
) -> ActivityLog:
    """
    Append a single activity row.  Uses ``flush`` so callers keep
    transaction control.
    """
    log = ActivityLog(
        tenant_id=tenant_id,
        project_id=project_id,
        user_id=user_id,
        action=action,
        entity_type=entity_type,
        entity_id=str(entity_id),
        description=description,
        metadata_json=json.dumps(metadata or {}, default=str),
    )
    db.session.add(log)
    db.session.flush()
    return log
