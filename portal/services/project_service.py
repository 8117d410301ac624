"""Project service with strict tenant ownership checks.

Project creation and phase-tracking initialization share one transaction:
a project never exists without its tracking record.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from portal.auth import Actor
from portal.core.exceptions import NotFoundError, ValidationError
from portal.models import db
from portal.models.audit import write_activity
from portal.models.auth import User
from portal.models.project import Project
from portal.services import phase_workflow
from portal.services.phase_workflow import WorkflowEvent
from portal.utils.helpers import parse_date

logger = logging.getLogger(__name__)


def get_project(project_id: int, tenant_id: int | None) -> Project:
    """Fetch a live project inside the tenant; cross-tenant reads look like misses."""
    stmt = select(Project).where(Project.id == project_id, Project.deleted_at.is_(None))
    if tenant_id is not None:
        stmt = stmt.where(Project.tenant_id == tenant_id)
    project = db.session.execute(stmt).scalar_one_or_none()
    if project is None:
        raise NotFoundError(resource="Project", resource_id=project_id, tenant_id=tenant_id)
    return project


def get_project_for_actor(project_id: int, actor: Actor) -> Project:
    project = get_project(project_id, actor.tenant_id)
    if not actor.is_admin and project.client_id != actor.user_id:
        # Clients only see their own projects
        raise NotFoundError(resource="Project", resource_id=project_id, tenant_id=actor.tenant_id)
    return project


def create_project(*, actor: Actor, data: dict) -> tuple[Project, list[WorkflowEvent]]:
    """Create a project for a client of the actor's tenant and start it at the first phase.

    Raises:
        ValidationError: missing name, unknown client, bad due_date.
        AlreadyInitializedError / CatalogIntegrityError from initialization.

    Returns:
        (project, events) - events are dispatched by the caller after commit.
    """
    name = str(data.get("name", "") or "").strip()
    if not name:
        raise ValidationError("name is required", details={"field": "name"})

    client_id = data.get("client_id")
    try:
        client_id = int(client_id)
    except (TypeError, ValueError):
        raise ValidationError("client_id is required", details={"field": "client_id"})

    client = db.session.execute(
        select(User).where(User.id == client_id, User.tenant_id == actor.tenant_id)
    ).scalar_one_or_none()
    if client is None:
        raise ValidationError("client_id does not reference a user of this tenant",
                              details={"client_id": client_id})

    due_date = None
    if data.get("due_date"):
        due_date = parse_date(data["due_date"])
        if due_date is None:
            raise ValidationError("due_date must be YYYY-MM-DD", details={"field": "due_date"})

    project = Project(
        tenant_id=actor.tenant_id,
        name=name,
        description=str(data.get("description", "") or "").strip(),
        client_id=client.id,
        status="active",
        due_date=due_date,
        created_by=actor.user_id,
    )
    try:
        db.session.add(project)
        db.session.flush()
        result = phase_workflow.initialize(project.id, actor_id=actor.user_id, tenant_id=actor.tenant_id)
        write_activity(
            action="project.create",
            entity_id=project.id,
            project_id=project.id,
            tenant_id=project.tenant_id,
            user_id=actor.user_id,
            description=f"Project {name} created",
            metadata={"client_id": client.id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Project %s created", project.id,
                extra={"project_id": project.id, "tenant_id": project.tenant_id,
                       "actor_id": actor.user_id})
    return project, result.events


def delete_project(project_id: int, actor: Actor) -> Project:
    """Soft delete; tracking and history rows stay in place."""
    project = get_project(project_id, actor.tenant_id)
    project.soft_delete()
    write_activity(
        action="project.delete",
        entity_id=project.id,
        project_id=project.id,
        tenant_id=project.tenant_id,
        user_id=actor.user_id,
        description=f"Project {project.name} deleted",
    )
    db.session.commit()
    logger.info("Project %s soft-deleted", project.id,
                extra={"project_id": project.id, "actor_id": actor.user_id})
    return project
