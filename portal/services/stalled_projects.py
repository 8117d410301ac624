"""
Stalled project detection and reminders.

A project is stalled when it is active, not completed, and has sat in its
current phase longer than ``days``. Reminders go to the owning client only
when the phase still has required actions pending on their side.

Run periodically by an external scheduler through the
``flask remind-stalled-projects`` CLI command; there is no in-process loop.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from flask import current_app
from sqlalchemy import select

from portal.models import db
from portal.models.audit import write_activity
from portal.models.auth import User
from portal.models.notification import Notification
from portal.models.phase import ProjectPhaseTracking
from portal.models.project import Project
from portal.services import action_gate
from portal.services.email_service import EmailService
from portal.services.notification import NotificationService
from portal.services.phase_catalog import get_catalog

logger = logging.getLogger(__name__)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def find_stalled_projects(days: int | None = None, tenant_id: int | None = None) -> list[dict]:
    """List active, unfinished projects stuck in their phase for more than *days*."""
    if days is None:
        days = current_app.config.get("STALLED_PHASE_DAYS", 7)
    now = datetime.now(timezone.utc)
    cutoff = now - timedelta(days=days)
    catalog = get_catalog()

    stmt = (
        select(ProjectPhaseTracking, Project)
        .join(Project, Project.id == ProjectPhaseTracking.project_id)
        .where(
            ProjectPhaseTracking.is_completed.is_(False),
            ProjectPhaseTracking.phase_started_at < cutoff,
            Project.deleted_at.is_(None),
            Project.status == "active",
        )
        .order_by(ProjectPhaseTracking.phase_started_at)
    )
    if tenant_id is not None:
        stmt = stmt.where(Project.tenant_id == tenant_id)

    stalled = []
    for tracking, project in db.session.execute(stmt).all():
        phase = catalog.by_index(tracking.current_phase_index, project_id=project.id)
        started = _as_utc(tracking.phase_started_at)
        stalled.append({
            "project_id": project.id,
            "project_name": project.name,
            "tenant_id": project.tenant_id,
            "client_id": project.client_id,
            "phase_key": phase.key,
            "phase_name": phase.name,
            "phase_started_at": started.isoformat(),
            "days_in_phase": (now - started).days,
            "pending_required_actions": action_gate.pending_required_count(project.id, phase),
        })
    return stalled


def _recently_reminded(project_id: int, phase_key: str, since: datetime) -> bool:
    recent = db.session.execute(
        select(Notification.metadata_json).where(
            Notification.type == "stalled_project",
            Notification.project_id == project_id,
            Notification.created_at >= since,
        )
    ).scalars()
    return any((meta or {}).get("phase_key") == phase_key for meta in recent)


def send_stalled_reminders(days: int | None = None, cooldown_days: int | None = None) -> int:
    """Notify and email each client whose stalled project waits on them.

    A project already reminded about its current phase within
    *cooldown_days* (default ``STALLED_REMINDER_COOLDOWN_DAYS``) is skipped,
    so a frequent scheduler does not repeat the same reminder.
    Projects are handled independently; one failure does not stop the batch.

    Returns:
        Number of reminders sent.
    """
    if cooldown_days is None:
        cooldown_days = current_app.config.get("STALLED_REMINDER_COOLDOWN_DAYS", 3)
    since = datetime.now(timezone.utc) - timedelta(days=cooldown_days)
    base_url = current_app.config.get("PORTAL_BASE_URL", "").rstrip("/")
    sent = 0
    for item in find_stalled_projects(days):
        if item["pending_required_actions"] == 0:
            continue
        if _recently_reminded(item["project_id"], item["phase_key"], since):
            logger.debug("Stalled reminder already sent for %s", item["phase_key"],
                         extra={"project_id": item["project_id"], "phase_key": item["phase_key"]})
            continue
        try:
            client = db.session.get(User, item["client_id"])
            link = f"{base_url}/projects/{item['project_id']}"
            NotificationService.create(
                recipient_user_id=item["client_id"],
                type="stalled_project",
                title=f"{item['project_name']} is waiting on you",
                message=(
                    f"{item['pending_required_actions']} required action(s) pending in "
                    f"{item['phase_name']} for {item['days_in_phase']} days."
                ),
                severity="warning",
                tenant_id=item["tenant_id"],
                project_id=item["project_id"],
                link=link,
                metadata={"phase_key": item["phase_key"]},
            )
            if client is not None:
                EmailService.send_from_template(
                    to_email=client.email,
                    to_name=client.display_name,
                    template_name="stalled_project_reminder",
                    context={
                        "project_name": item["project_name"],
                        "project_url": link,
                        "phase_name": item["phase_name"],
                        "pending_count": item["pending_required_actions"],
                        "days_in_phase": item["days_in_phase"],
                    },
                    project_id=item["project_id"],
                )
            write_activity(
                action="phase.stalled_reminder",
                entity_id=item["project_id"],
                project_id=item["project_id"],
                tenant_id=item["tenant_id"],
                description=f"Reminder sent for {item['phase_key']}",
                metadata={"days_in_phase": item["days_in_phase"],
                          "pending_required_actions": item["pending_required_actions"]},
            )
            db.session.commit()
            sent += 1
        except Exception:
            db.session.rollback()
            logger.exception("Stalled reminder failed", extra={"project_id": item["project_id"]})
    logger.info("Stalled project reminders sent: %d", sent)
    return sent
