"""
Project Blueprint.

Endpoints:
    POST   /api/v1/projects                (admin)
           Body: { "name": "...", "client_id": <int>, "description": "...",
                   "due_date": "YYYY-MM-DD" }
           Creates the project and starts it at the first phase.

    GET    /api/v1/projects/<pid>
    DELETE /api/v1/projects/<pid>          (admin, soft delete)

    GET    /api/v1/projects/stalled?days=  (admin)
           Active projects sitting in their current phase for more than
           ``days`` (default STALLED_PHASE_DAYS).
"""

import logging

from flask import Blueprint, current_app, g, jsonify, request

from portal.auth import require_admin, require_auth
from portal.blueprints import json_body, register_error_handlers
from portal.services import project_service, stalled_projects, workflow_effects
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_int

logger = logging.getLogger(__name__)

project_bp = register_error_handlers(Blueprint("projects", __name__, url_prefix="/api/v1/projects"))


@project_bp.route("", methods=["POST"])
@require_auth
@require_admin
def create_project():
    project, events = project_service.create_project(actor=g.actor, data=json_body())
    workflow_effects.dispatch(events)
    return jsonify(project.to_dict(include_phase=True)), 201


@project_bp.route("/<int:project_id>", methods=["GET"])
@require_auth
def get_project(project_id):
    project = project_service.get_project_for_actor(project_id, g.actor)
    return jsonify(project.to_dict(include_phase=True))


@project_bp.route("/<int:project_id>", methods=["DELETE"])
@require_auth
@require_admin
def delete_project(project_id):
    project_service.delete_project(project_id, g.actor)
    return jsonify({"message": "Project deleted", "id": project_id})


@project_bp.route("/stalled", methods=["GET"])
@require_auth
@require_admin
def list_stalled_projects():
    default_days = current_app.config.get("STALLED_PHASE_DAYS", 7)
    days = parse_int(request.args.get("days"), default_days)
    if days < 0:
        return api_error(E.VALIDATION_INVALID, "days must be zero or positive", details={"field": "days"})
    items = stalled_projects.find_stalled_projects(days, tenant_id=g.actor.tenant_id)
    return jsonify({"items": items, "total": len(items), "days": days})
