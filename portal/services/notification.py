"""
Studio Client Portal
Notification Service.

Central service for creating in-app notifications, plus the
phase workflow helpers that phrase each workflow event for its audience.
"""

from portal.models import db
from portal.models.notification import Notification


class NotificationService:
    """Stateless service class for notification operations."""

    # ── Create ────────────────────────────────────────────────────────────

    @staticmethod
    def create(*, recipient_user_id, title, message="", type="system", severity="info",
               tenant_id=None, project_id=None, link=None, metadata=None):
        """
        Create a single notification record.

        Returns:
            The created Notification instance (already committed).
        """
        notif = Notification(
            tenant_id=tenant_id,
            recipient_user_id=recipient_user_id,
            type=type,
            title=title,
            message=message,
            severity=severity,
            project_id=project_id,
            link=link,
            metadata_json=metadata or {},
        )
        db.session.add(notif)
        db.session.commit()
        return notif

    @staticmethod
    def broadcast(*, recipient_user_ids, title, message="", type="system", severity="info",
                  tenant_id=None, project_id=None, link=None, metadata=None):
        """
        Send the same notification to several users.

        Returns:
            List of created Notification instances.
        """
        notifications = []
        for user_id in dict.fromkeys(recipient_user_ids):
            notif = Notification(
                tenant_id=tenant_id,
                recipient_user_id=user_id,
                type=type,
                title=title,
                message=message,
                severity=severity,
                project_id=project_id,
                link=link,
                metadata_json=metadata or {},
            )
            db.session.add(notif)
            notifications.append(notif)
        db.session.commit()
        return notifications

    # ── Phase workflow helpers ────────────────────────────────────────────

    @staticmethod
    def notify_phase_advanced(*, project, phase_name, phase_key, recipients, link=None):
        return NotificationService.broadcast(
            recipient_user_ids=recipients,
            type="phase_advanced",
            title=f"{project.name} moved to {phase_name}",
            message=f"Your project has entered the {phase_name} phase.",
            severity="info",
            tenant_id=project.tenant_id,
            project_id=project.id,
            link=link,
            metadata={"phase_key": phase_key},
        )

    @staticmethod
    def notify_approval_needed(*, project, phase_name, phase_key, recipients, link=None):
        return NotificationService.broadcast(
            recipient_user_ids=recipients,
            type="phase_approval_needed",
            title=f"Approval needed: {phase_name}",
            message=f"All actions for {phase_name} on {project.name} are done and await your approval.",
            severity="warning",
            tenant_id=project.tenant_id,
            project_id=project.id,
            link=link,
            metadata={"phase_key": phase_key},
        )

    @staticmethod
    def notify_phase_approved(*, project, phase_name, phase_key, recipients, notes=None, link=None):
        return NotificationService.broadcast(
            recipient_user_ids=recipients,
            type="phase_approved",
            title=f"{phase_name} approved",
            message=notes or f"The {phase_name} phase of {project.name} was approved.",
            severity="success",
            tenant_id=project.tenant_id,
            project_id=project.id,
            link=link,
            metadata={"phase_key": phase_key},
        )

    @staticmethod
    def notify_changes_requested(*, project, phase_name, phase_key, recipients, feedback, link=None):
        return NotificationService.broadcast(
            recipient_user_ids=recipients,
            type="changes_requested",
            title=f"Changes requested: {phase_name}",
            message=feedback,
            severity="warning",
            tenant_id=project.tenant_id,
            project_id=project.id,
            link=link,
            metadata={"phase_key": phase_key},
        )
