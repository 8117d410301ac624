"""
Project Phase Blueprint.

HTTP surface of the phase workflow engine.

Endpoints:
    GET    /api/v1/phases
    GET    /api/v1/phases/<phase_key>
           Catalog, with each phase's client actions.

    GET    /api/v1/projects/<pid>/phases
           Current state: phases with status, current actions, progress.

    GET    /api/v1/projects/<pid>/phases/history?limit=&offset=
           Transition history, newest first.

    PUT    /api/v1/projects/<pid>/phases/actions/<action_id>
           Body: { "is_completed": true|false, "notes": "..." }

    POST   /api/v1/projects/<pid>/phases/advance          (admin)
           Body: { "reason": "..." }

    PUT    /api/v1/projects/<pid>/phases/current          (admin)
           Body: { "phase_key": "review", "reason": "..." }

    POST   /api/v1/projects/<pid>/phases/<phase_key>/approve
           Body: { "notes": "..." }

    POST   /api/v1/projects/<pid>/phases/<phase_key>/request-changes
           Body: { "feedback": "..." }

Layer contract:
    - Blueprint: parse input, call the engine, dispatch post-commit effects.
    - NO db.session calls and NO permission checks here; the engine owns both.
"""

import logging

from flask import Blueprint, g, jsonify, request

from portal.auth import require_auth
from portal.blueprints import json_body, register_error_handlers
from portal.middleware.rate_limiter import WRITE_LIMIT, rate_limit_key
from portal.services import phase_workflow, workflow_effects
from portal.services.phase_catalog import get_catalog
from portal.utils.errors import E, api_error
from portal.utils.helpers import parse_bool

logger = logging.getLogger(__name__)

phase_bp = register_error_handlers(Blueprint("phases", __name__, url_prefix="/api/v1"))

from portal import limiter  # noqa: E402

_phase_write_limit = limiter.shared_limit(WRITE_LIMIT, scope="phase_mutation", key_func=rate_limit_key)


def _text(data: dict, *keys) -> str | None:
    """First string value among *keys*; non-string values are ignored."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str):
            return value
    return None


# ═════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════


@phase_bp.route("/phases", methods=["GET"])
@require_auth
def list_phases():
    catalog = get_catalog()
    return jsonify({
        "items": [p.to_dict(include_actions=True) for p in catalog.phases],
        "total": catalog.total,
    })


@phase_bp.route("/phases/<phase_key>", methods=["GET"])
@require_auth
def get_phase(phase_key):
    phase = get_catalog().get(phase_key)
    if phase is None:
        return api_error(E.PHASE_NOT_FOUND, f"Phase '{phase_key}' not found")
    return jsonify(phase.to_dict(include_actions=True))


# ═════════════════════════════════════════════════════════════════════════
# Project phase state
# ═════════════════════════════════════════════════════════════════════════


@phase_bp.route("/projects/<int:project_id>/phases", methods=["GET"])
@require_auth
def get_project_phases(project_id):
    return jsonify(phase_workflow.get_current_state(project_id, g.actor))


@phase_bp.route("/projects/<int:project_id>/phases/history", methods=["GET"])
@require_auth
def get_project_phase_history(project_id):
    return jsonify(phase_workflow.list_history(
        project_id,
        g.actor,
        limit=request.args.get("limit"),
        offset=request.args.get("offset"),
    ))


# ═════════════════════════════════════════════════════════════════════════
# Mutations
# ═════════════════════════════════════════════════════════════════════════


@phase_bp.route("/projects/<int:project_id>/phases/actions/<int:action_id>", methods=["PUT"])
@_phase_write_limit
@require_auth
def update_action_status(project_id, action_id):
    data = json_body()
    is_completed = parse_bool(data.get("is_completed"))
    if is_completed is None:
        return api_error(E.VALIDATION_INVALID, "is_completed must be a boolean",
                         details={"field": "is_completed"})
    notes = data.get("notes")
    if notes is not None and not isinstance(notes, str):
        return api_error(E.VALIDATION_INVALID, "notes must be a string", details={"field": "notes"})

    result = phase_workflow.set_action_status(project_id, action_id, is_completed, g.actor, notes)
    workflow_effects.dispatch(result.events)
    return jsonify({"message": "Action status updated successfully", **result.to_dict()})


@phase_bp.route("/projects/<int:project_id>/phases/advance", methods=["POST"])
@_phase_write_limit
@require_auth
def advance_phase(project_id):
    data = json_body()
    result = phase_workflow.advance(project_id, g.actor, _text(data, "reason", "notes"))
    workflow_effects.dispatch(result.events)
    return jsonify({"message": "Project phase advanced successfully", **result.to_dict()})


@phase_bp.route("/projects/<int:project_id>/phases/current", methods=["PUT"])
@_phase_write_limit
@require_auth
def set_current_phase(project_id):
    data = json_body()
    phase_key = (_text(data, "phase_key") or "").strip()
    if not phase_key:
        return api_error(E.VALIDATION_REQUIRED, "phase_key is required", details={"field": "phase_key"})

    result = phase_workflow.jump_to(project_id, phase_key, g.actor, _text(data, "reason"))
    workflow_effects.dispatch(result.events)
    return jsonify({"message": f"Project moved to {result.phase.name} phase", **result.to_dict()})


@phase_bp.route("/projects/<int:project_id>/phases/<phase_key>/approve", methods=["POST"])
@_phase_write_limit
@require_auth
def approve_phase(project_id, phase_key):
    data = json_body()
    result = phase_workflow.approve(project_id, phase_key, g.actor, _text(data, "notes"))
    workflow_effects.dispatch(result.events)
    if result.transition.is_completed:
        message = "Project completed"
    else:
        message = f"Phase approved, moved to {result.transition.phase.name}"
    return jsonify({"message": message, **result.to_dict()})


@phase_bp.route("/projects/<int:project_id>/phases/<phase_key>/request-changes", methods=["POST"])
@_phase_write_limit
@require_auth
def request_phase_changes(project_id, phase_key):
    data = json_body()
    feedback = _text(data, "feedback", "changes_requested")
    result = phase_workflow.reject(project_id, phase_key, g.actor, feedback)
    workflow_effects.dispatch(result.events)
    return jsonify({"message": "Change request submitted", **result.to_dict()})
