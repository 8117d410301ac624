"""
Post-commit side effects of the phase workflow.

``dispatch`` receives the ``WorkflowEvent`` list returned by an engine
operation after that operation committed, and fans each event out to the
activity log, in-app notifications, email and project messages.

Each effect runs in its own short transaction. A failing effect is rolled
back and logged; it never propagates and never touches the workflow state
that was already committed.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from flask import current_app
from sqlalchemy import select

from portal.models import db
from portal.models.audit import write_activity
from portal.models.auth import User
from portal.models.message import Message
from portal.models.project import Project
from portal.services.email_service import EmailService
from portal.services.notification import NotificationService
from portal.services.phase_workflow import WorkflowEvent

logger = logging.getLogger(__name__)

ACTIVITY_ACTIONS = {
    "initialized": "phase.initialize",
    "advanced": "phase.advance",
    "jumped": "phase.jump",
    "approved": "phase.approve",
    "completed": "phase.complete",
    "changes_requested": "phase.reject",
    "action_status": "phase.action_status",
}


# ── Context helpers ──────────────────────────────────────────────────────────

def _project_url(project_id: int) -> str:
    base = current_app.config.get("PORTAL_BASE_URL", "").rstrip("/")
    return f"{base}/projects/{project_id}"


def _tenant_admins(tenant_id: int) -> list[User]:
    return list(db.session.execute(
        select(User).where(
            User.tenant_id == tenant_id,
            User.role == "admin",
            User.status == "active",
        ).order_by(User.id)
    ).scalars())


def _other_party(event: WorkflowEvent, project: Project) -> list[User]:
    """Admins when the owner acted, otherwise the owner."""
    if event.actor_id is not None and event.actor_id == project.client_id:
        return _tenant_admins(project.tenant_id)
    owner = db.session.get(User, project.client_id)
    return [owner] if owner else []


def _actor_name(event: WorkflowEvent) -> str:
    if event.actor_id is None:
        return "System"
    user = db.session.get(User, event.actor_id)
    return user.display_name if user else "Unknown user"


def _email_context(event: WorkflowEvent, project: Project) -> dict:
    phase = event.to_phase or event.from_phase
    return {
        "project_name": project.name,
        "project_url": _project_url(project.id),
        "phase_name": phase.name if phase else "",
        "phase_icon": phase.icon if phase else "",
        "phase_description": phase.description if phase else "",
        "actor_name": _actor_name(event),
        "notes": event.notes or "",
        "feedback": event.notes or "",
    }


def _send_emails(recipients: Iterable[User], template: str, event: WorkflowEvent,
                 project: Project) -> None:
    context = _email_context(event, project)
    for user in recipients:
        EmailService.send_from_template(
            to_email=user.email,
            to_name=user.display_name,
            template_name=template,
            context=context,
            project_id=project.id,
        )
    db.session.commit()


# ── Effects ──────────────────────────────────────────────────────────────────

def record_activity(event: WorkflowEvent, project: Project) -> None:
    action = ACTIVITY_ACTIONS.get(event.kind)
    if action is None:
        return
    from_key = event.from_phase.key if event.from_phase else None
    to_key = event.to_phase.key if event.to_phase else None
    if event.kind == "action_status":
        description = (
            f"Action {event.metadata.get('action_key')} marked "
            f"{'complete' if event.metadata.get('is_completed') else 'incomplete'}"
        )
    elif event.kind == "changes_requested":
        description = f"Changes requested in {from_key}"
    elif from_key and to_key and from_key != to_key:
        description = f"Phase {from_key} -> {to_key}"
    else:
        description = f"Phase {to_key or from_key}"

    write_activity(
        action=action,
        entity_type="project",
        entity_id=project.id,
        project_id=project.id,
        tenant_id=project.tenant_id,
        user_id=event.actor_id,
        description=description,
        metadata={
            "from_phase": from_key,
            "to_phase": to_key,
            "reason": event.reason,
            "notes": event.notes,
            **event.metadata,
        },
    )
    db.session.commit()


def send_notifications(event: WorkflowEvent, project: Project) -> None:
    link = _project_url(project.id)
    if event.kind in ("advanced", "jumped"):
        if event.actor_id is not None and event.actor_id == project.client_id:
            return
        NotificationService.notify_phase_advanced(
            project=project, phase_name=event.to_phase.name, phase_key=event.to_phase.key,
            recipients=[project.client_id], link=link,
        )
    elif event.kind == "approved":
        recipients = [u.id for u in _other_party(event, project)]
        if recipients:
            NotificationService.notify_phase_approved(
                project=project, phase_name=event.from_phase.name, phase_key=event.from_phase.key,
                recipients=recipients, notes=event.notes, link=link,
            )
    elif event.kind == "changes_requested":
        recipients = [u.id for u in _other_party(event, project)]
        if recipients:
            NotificationService.notify_changes_requested(
                project=project, phase_name=event.from_phase.name, phase_key=event.from_phase.key,
                recipients=recipients, feedback=event.notes, link=link,
            )
    elif event.kind == "awaiting_approval":
        NotificationService.notify_approval_needed(
            project=project, phase_name=event.from_phase.name, phase_key=event.from_phase.key,
            recipients=[project.client_id], link=link,
        )


def send_emails(event: WorkflowEvent, project: Project) -> None:
    if event.kind in ("advanced", "jumped"):
        if event.actor_id is not None and event.actor_id == project.client_id:
            return
        owner = db.session.get(User, project.client_id)
        if owner:
            _send_emails([owner], "phase_advanced", event, project)
    elif event.kind == "approved":
        _send_emails(_other_party(event, project), "phase_approved", event, project)
    elif event.kind == "changes_requested":
        _send_emails(_other_party(event, project), "phase_changes_requested", event, project)
    elif event.kind == "awaiting_approval":
        owner = db.session.get(User, project.client_id)
        if owner:
            _send_emails([owner], "phase_approval_needed", event, project)


def post_change_request_message(event: WorkflowEvent, project: Project) -> None:
    if event.kind != "changes_requested":
        return
    db.session.add(Message(
        project_id=project.id,
        sender_id=event.actor_id,
        content=f"Changes requested for {event.from_phase.name}:\n\n{event.notes}",
    ))
    db.session.commit()


EFFECTS: tuple[Callable[[WorkflowEvent, Project], None], ...] = (
    record_activity,
    send_notifications,
    send_emails,
    post_change_request_message,
)


def dispatch(events: Iterable[WorkflowEvent]) -> None:
    """Run every effect for every event; failures are logged and swallowed."""
    for event in events:
        project = db.session.get(Project, event.project_id)
        if project is None:
            logger.warning("Skipping %s effects: project missing", event.kind,
                           extra={"project_id": event.project_id})
            continue
        for effect in EFFECTS:
            try:
                effect(event, project)
            except Exception:
                # Effects must never break the committed workflow mutation
                db.session.rollback()
                logger.exception(
                    "Post-commit effect %s failed for %s event", effect.__name__, event.kind,
                    extra={"project_id": event.project_id, "event_type": event.kind,
                           "actor_id": event.actor_id},
                )
