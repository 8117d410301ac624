"""
Automation Rule Evaluator and administration.

The workflow engine asks ``evaluate`` what to do once an action update
leaves every required action of the current phase complete. The remaining
functions back the administrator-only ``/automation-rules`` endpoints; the
engine itself never writes rules.

Outcomes:
    none      – no active auto-advance rule (or gate not satisfied)
    advance   – move one phase forward as the system actor
    complete  – final phase with ``complete_project`` opted in
    await     – final phase; an explicit approval is required
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import select

from portal.core.exceptions import NotFoundError, ValidationError
from portal.models import db
from portal.models.phase import RULE_TYPES, AutomationRule, Phase
from portal.services.phase_catalog import PhaseCatalog, PhaseDef

logger = logging.getLogger(__name__)

OUTCOME_NONE = "none"
OUTCOME_ADVANCE = "advance"
OUTCOME_COMPLETE = "complete"
OUTCOME_AWAIT = "await"

ALL_ACTIONS_COMPLETE = "all_actions_complete"


@dataclass(frozen=True)
class AutomationDecision:
    outcome: str
    rule_id: int | None = None


def find_active_rule(phase_id: int, rule_type: str = ALL_ACTIONS_COMPLETE) -> AutomationRule | None:
    """First active rule of *rule_type* leaving *phase_id* (lowest id wins)."""
    return db.session.execute(
        select(AutomationRule)
        .where(
            AutomationRule.from_phase_id == phase_id,
            AutomationRule.rule_type == rule_type,
            AutomationRule.is_active.is_(True),
        )
        .order_by(AutomationRule.id)
        .limit(1)
    ).scalar_one_or_none()


def evaluate(catalog: PhaseCatalog, phase: PhaseDef, all_required_complete: bool) -> AutomationDecision:
    """Decide what the engine should do after the action gate was re-checked."""
    if not all_required_complete:
        return AutomationDecision(OUTCOME_NONE)

    rule = find_active_rule(phase.id)
    if rule is None or not rule.auto_advance:
        return AutomationDecision(OUTCOME_NONE, rule.id if rule else None)

    if not catalog.is_final(phase):
        return AutomationDecision(OUTCOME_ADVANCE, rule.id)
    if (rule.rule_config or {}).get("complete_project") is True:
        return AutomationDecision(OUTCOME_COMPLETE, rule.id)
    return AutomationDecision(OUTCOME_AWAIT, rule.id)


# ═════════════════════════════════════════════════════════════════════════════
# Administration
# ═════════════════════════════════════════════════════════════════════════════


def _resolve_phase_id(data: dict, prefix: str, *, required: bool) -> int | None:
    """Accept ``<prefix>_phase_key`` or ``<prefix>_phase_id``."""
    key = data.get(f"{prefix}_phase_key")
    phase_id = data.get(f"{prefix}_phase_id")
    if key:
        found = db.session.execute(select(Phase.id).where(Phase.key == key)).scalar_one_or_none()
        if found is None:
            raise ValidationError(f"Unknown phase key {key!r}", details={f"{prefix}_phase_key": key})
        return found
    if phase_id is not None:
        if db.session.get(Phase, phase_id) is None:
            raise ValidationError(f"Unknown phase id {phase_id}", details={f"{prefix}_phase_id": phase_id})
        return phase_id
    if required:
        raise ValidationError(f"{prefix}_phase_key is required", details={"field": f"{prefix}_phase_key"})
    return None


def _validate_config(rule_config) -> dict:
    if rule_config is None:
        return {}
    if not isinstance(rule_config, dict):
        raise ValidationError("rule_config must be an object", details={"field": "rule_config"})
    for flag in ("auto_advance", "complete_project"):
        if flag in rule_config and not isinstance(rule_config[flag], bool):
            raise ValidationError(f"rule_config.{flag} must be a boolean", details={"field": flag})
    return dict(rule_config)


def list_rules(*, phase_key: str | None = None, active_only: bool = False) -> list[AutomationRule]:
    stmt = select(AutomationRule).order_by(AutomationRule.from_phase_id, AutomationRule.id)
    if phase_key:
        stmt = stmt.join(Phase, Phase.id == AutomationRule.from_phase_id).where(Phase.key == phase_key)
    if active_only:
        stmt = stmt.where(AutomationRule.is_active.is_(True))
    return list(db.session.execute(stmt).scalars())


def get_rule(rule_id: int) -> AutomationRule:
    rule = db.session.get(AutomationRule, rule_id)
    if rule is None:
        raise NotFoundError(resource="AutomationRule", resource_id=rule_id)
    return rule


def create_rule(data: dict) -> AutomationRule:
    """Create a rule from request data and commit.

    Raises:
        ValidationError: unknown rule type or phase, malformed config.
    """
    rule_type = data.get("rule_type") or ALL_ACTIONS_COMPLETE
    if rule_type not in RULE_TYPES:
        raise ValidationError(
            f"rule_type must be one of {sorted(RULE_TYPES)}", details={"rule_type": rule_type},
        )
    rule = AutomationRule(
        from_phase_id=_resolve_phase_id(data, "from", required=True),
        to_phase_id=_resolve_phase_id(data, "to", required=False),
        rule_type=rule_type,
        rule_config=_validate_config(data.get("rule_config")),
        is_active=bool(data.get("is_active", True)),
        name=(data.get("name") or "").strip(),
        description=(data.get("description") or "").strip(),
    )
    db.session.add(rule)
    db.session.commit()
    logger.info("Automation rule %s created for phase_id=%s", rule.id, rule.from_phase_id)
    return rule


def update_rule(rule_id: int, data: dict) -> AutomationRule:
    rule = get_rule(rule_id)
    if "from_phase_key" in data or "from_phase_id" in data:
        rule.from_phase_id = _resolve_phase_id(data, "from", required=True)
    if "to_phase_key" in data or "to_phase_id" in data:
        rule.to_phase_id = _resolve_phase_id(data, "to", required=False)
    if "rule_type" in data:
        if data["rule_type"] not in RULE_TYPES:
            raise ValidationError(
                f"rule_type must be one of {sorted(RULE_TYPES)}", details={"rule_type": data["rule_type"]},
            )
        rule.rule_type = data["rule_type"]
    if "rule_config" in data:
        rule.rule_config = _validate_config(data["rule_config"])
    if "is_active" in data:
        rule.is_active = bool(data["is_active"])
    for field_name in ("name", "description"):
        if field_name in data:
            setattr(rule, field_name, (data[field_name] or "").strip())
    db.session.commit()
    logger.info("Automation rule %s updated", rule.id)
    return rule


def deactivate_rule(rule_id: int) -> AutomationRule:
    """Rules are deactivated rather than deleted so past behaviour stays explainable."""
    rule = get_rule(rule_id)
    rule.is_active = False
    db.session.commit()
    logger.info("Automation rule %s deactivated", rule.id)
    return rule
