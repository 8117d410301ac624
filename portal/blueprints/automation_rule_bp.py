"""
Automation Rule Blueprint (administrators only).

Endpoints:
    GET    /api/v1/automation-rules?phase_key=&active_only=true
    POST   /api/v1/automation-rules
           Body: { "from_phase_key": "onboarding", "to_phase_key": "ideation",
                   "rule_type": "all_actions_complete",
                   "rule_config": { "auto_advance": true },
                   "name": "...", "description": "...", "is_active": true }
    PUT    /api/v1/automation-rules/<rule_id>
    DELETE /api/v1/automation-rules/<rule_id>   (deactivates)
"""

import logging

from flask import Blueprint, jsonify, request

from portal.auth import require_admin, require_auth
from portal.blueprints import json_body, register_error_handlers
from portal.services import automation_rules

logger = logging.getLogger(__name__)

automation_rule_bp = register_error_handlers(
    Blueprint("automation_rules", __name__, url_prefix="/api/v1/automation-rules")
)


@automation_rule_bp.route("", methods=["GET"])
@require_auth
@require_admin
def list_rules():
    active_only = request.args.get("active_only", "false").lower() in ("1", "true", "yes")
    rules = automation_rules.list_rules(
        phase_key=request.args.get("phase_key"), active_only=active_only,
    )
    return jsonify({"items": [r.to_dict() for r in rules], "total": len(rules)})


@automation_rule_bp.route("", methods=["POST"])
@require_auth
@require_admin
def create_rule():
    rule = automation_rules.create_rule(json_body())
    return jsonify(rule.to_dict()), 201


@automation_rule_bp.route("/<int:rule_id>", methods=["PUT"])
@require_auth
@require_admin
def update_rule(rule_id):
    rule = automation_rules.update_rule(rule_id, json_body())
    return jsonify(rule.to_dict())


@automation_rule_bp.route("/<int:rule_id>", methods=["DELETE"])
@require_auth
@require_admin
def deactivate_rule(rule_id):
    rule = automation_rules.deactivate_rule(rule_id)
    return jsonify(rule.to_dict())
