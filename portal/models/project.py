"""
Studio Client Portal
Project domain model.

A project belongs to one tenant and one client (its owner). Every project
carries exactly one phase tracking record created in the same transaction as
the project itself; projects are soft-deleted so that record and its
transition history are never orphaned.
"""

from datetime import datetime, timezone

from portal.models import db
from portal.models.base import TenantModel
from portal.models.soft_delete import SoftDeleteMixin

PROJECT_STATUSES = {"active", "on_hold", "completed", "cancelled"}


class Project(SoftDeleteMixin, TenantModel):
    """Client engagement moving through the studio's delivery pipeline."""

    __tablename__ = "projects"
    __table_args__ = (
        db.Index("ix_projects_tenant_client", "tenant_id", "client_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, default="")
    client_id = db.Column(
        db.Integer,
        db.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
        comment="Owning client user",
    )
    status = db.Column(db.String(30), nullable=False, default="active")
    due_date = db.Column(db.Date, nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_by = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True,
    )
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    client = db.relationship("User", foreign_keys=[client_id])
    phase_tracking = db.relationship(
        "ProjectPhaseTracking", back_populates="project", uselist=False,
    )

    def to_dict(self, include_phase=False):
        result = {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "description": self.description,
            "client_id": self.client_id,
            "client_name": self.client.display_name if self.client else None,
            "status": self.status,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_phase and self.phase_tracking is not None:
            tracking = self.phase_tracking
            result["current_phase"] = {
                "key": tracking.current_phase.key if tracking.current_phase else None,
                "name": tracking.current_phase.name if tracking.current_phase else None,
                "index": tracking.current_phase_index,
                "is_completed": tracking.is_completed,
            }
        return result

    def __repr__(self):
        return f"<Project {self.id}: {self.name}>"
