"""
Phase Catalog Service.

Loads the ordered phase list and each phase's client actions from the
database once, validates the structure and caches it as an immutable
snapshot keyed by phase key, order index and id.

Design decisions:
    - The catalog is read-only at runtime. Seeding happens through
      ``seed_phase_catalog`` (CLI ``flask seed-phase-catalog`` or startup
      autoseed) which invalidates the cache afterwards.
    - Structural violations (gaps, duplicate indices/keys, empty catalog)
      raise ``CatalogIntegrityError``; they are deployment bugs, not user
      errors, and are logged at ERROR.
    - The snapshot never hands out ORM instances, so it is safe to share
      across request threads.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

from sqlalchemy import select

from portal.core.exceptions import CatalogIntegrityError, PhaseNotFoundError
from portal.models import db
from portal.models.phase import AutomationRule, Phase, PhaseAction

logger = logging.getLogger(__name__)


# ═════════════════════════════════════════════════════════════════════════════
# Default seed data
# ═════════════════════════════════════════════════════════════════════════════

DEFAULT_PHASES: tuple[dict, ...] = (
    {"key": "onboarding", "name": "Onboarding", "icon": "📋", "requires_client_action": True,
     "description": "Initial kickoff and info gathering"},
    {"key": "ideation", "name": "Ideation", "icon": "💡", "requires_client_action": False,
     "description": "Brainstorming & concept development"},
    {"key": "design", "name": "Design", "icon": "🎨", "requires_client_action": False,
     "description": "Creation of designs and prototypes"},
    {"key": "review", "name": "Review & Feedback", "icon": "👀", "requires_client_action": True,
     "description": "Client review and feedback collection"},
    {"key": "production", "name": "Production/Print", "icon": "🖨️", "requires_client_action": False,
     "description": "Final production and printing"},
    {"key": "payment", "name": "Payment", "icon": "💳", "requires_client_action": True,
     "description": "Final payment collection"},
    {"key": "signoff", "name": "Sign-off & Docs", "icon": "✍️", "requires_client_action": True,
     "description": "Final approvals and documentation"},
    {"key": "delivery", "name": "Delivery", "icon": "📦", "requires_client_action": True,
     "description": "Final deliverables and handover"},
)

DEFAULT_ACTIONS: dict[str, tuple[tuple[str, str], ...]] = {
    "onboarding": (
        ("complete_brief", "Complete project brief"),
        ("sign_agreement", "Sign project agreement"),
        ("submit_deposit", "Submit initial deposit"),
    ),
    "review": (
        ("review_deliverables", "Review all deliverables"),
        ("provide_feedback", "Provide feedback on designs"),
        ("approve_designs", "Approve final designs"),
    ),
    "payment": (
        ("complete_payment", "Complete final payment"),
    ),
    "signoff": (
        ("sign_completion", "Sign project completion form"),
        ("acknowledge_deliverables", "Acknowledge receipt of deliverables"),
    ),
    "delivery": (
        ("download_files", "Download all project files"),
        ("confirm_receipt", "Confirm receipt of deliverables"),
    ),
}

DEFAULT_RULES: tuple[dict, ...] = (
    {
        "from_phase": "onboarding",
        "to_phase": "ideation",
        "name": "Onboarding complete",
        "description": "Move to ideation once the brief, agreement and deposit are in",
        "rule_type": "all_actions_complete",
        "rule_config": {"auto_advance": True},
    },
)


# ═════════════════════════════════════════════════════════════════════════════
# Immutable snapshot
# ═════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True)
class ActionDef:
    id: int
    phase_id: int
    key: str
    description: str
    is_required: bool
    order_index: int

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "phase_id": self.phase_id,
            "key": self.key,
            "description": self.description,
            "is_required": self.is_required,
            "order_index": self.order_index,
        }


@dataclass(frozen=True)
class PhaseDef:
    id: int
    key: str
    name: str
    description: str
    icon: str
    order_index: int
    requires_client_action: bool
    is_system_phase: bool
    actions: tuple[ActionDef, ...] = ()

    @property
    def required_action_ids(self) -> frozenset[int]:
        return frozenset(a.id for a in self.actions if a.is_required)

    def to_dict(self, include_actions: bool = False) -> dict:
        result = {
            "id": self.id,
            "key": self.key,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "order_index": self.order_index,
            "requires_client_action": self.requires_client_action,
            "is_system_phase": self.is_system_phase,
        }
        if include_actions:
            result["actions"] = [a.to_dict() for a in self.actions]
        return result


@dataclass(frozen=True)
class PhaseCatalog:
    """Validated, ordered phase list with O(1) lookups."""

    phases: tuple[PhaseDef, ...]
    _by_key: Mapping[str, PhaseDef] = field(repr=False)
    _by_id: Mapping[int, PhaseDef] = field(repr=False)
    _actions: Mapping[int, ActionDef] = field(repr=False)

    @classmethod
    def build(cls, phases: list[PhaseDef]) -> "PhaseCatalog":
        """Validate structure and index the phases.

        Raises:
            CatalogIntegrityError: empty catalog, duplicate or missing
                order index, or duplicate key.
        """
        if not phases:
            raise CatalogIntegrityError("Phase catalog is empty; run `flask seed-phase-catalog`")

        ordered = sorted(phases, key=lambda p: p.order_index)
        indices = [p.order_index for p in ordered]
        if indices != list(range(len(ordered))):
            raise CatalogIntegrityError(
                "Phase order indices must be unique and contiguous from 0",
                details={"order_indices": indices},
            )

        by_key: dict[str, PhaseDef] = {}
        for phase in ordered:
            if phase.key in by_key:
                raise CatalogIntegrityError(
                    f"Duplicate phase key {phase.key!r}", details={"key": phase.key},
                )
            by_key[phase.key] = phase

        actions = {a.id: a for p in ordered for a in p.actions}
        return cls(
            phases=tuple(ordered),
            _by_key=MappingProxyType(by_key),
            _by_id=MappingProxyType({p.id: p for p in ordered}),
            _actions=MappingProxyType(actions),
        )

    def __len__(self) -> int:
        return len(self.phases)

    @property
    def total(self) -> int:
        return len(self.phases)

    @property
    def last_index(self) -> int:
        return len(self.phases) - 1

    @property
    def first(self) -> PhaseDef:
        return self.phases[0]

    def is_final(self, phase: PhaseDef) -> bool:
        return phase.order_index == self.last_index

    def get(self, key: str) -> PhaseDef | None:
        return self._by_key.get(key)

    def by_key(self, key: str, *, project_id=None, user_supplied: bool = False) -> PhaseDef:
        phase = self._by_key.get(key)
        if phase is None:
            raise PhaseNotFoundError(key=key, project_id=project_id, user_supplied=user_supplied)
        return phase

    def by_index(self, order_index: int, *, project_id=None) -> PhaseDef:
        if 0 <= order_index < len(self.phases):
            return self.phases[order_index]
        raise PhaseNotFoundError(order_index=order_index, project_id=project_id)

    def by_id(self, phase_id: int, *, project_id=None) -> PhaseDef:
        phase = self._by_id.get(phase_id)
        if phase is None:
            raise PhaseNotFoundError(key=f"id:{phase_id}", project_id=project_id)
        return phase

    def action(self, action_id: int) -> ActionDef | None:
        return self._actions.get(action_id)


# ═════════════════════════════════════════════════════════════════════════════
# Loader + cache
# ═════════════════════════════════════════════════════════════════════════════

_catalog: PhaseCatalog | None = None
_cache_lock = threading.Lock()


def _load_from_db() -> PhaseCatalog:
    phase_rows = db.session.execute(select(Phase).order_by(Phase.order_index)).scalars().all()
    action_rows = db.session.execute(
        select(PhaseAction).order_by(PhaseAction.phase_id, PhaseAction.order_index, PhaseAction.id)
    ).scalars().all()

    actions_by_phase: dict[int, list[ActionDef]] = {}
    for row in action_rows:
        actions_by_phase.setdefault(row.phase_id, []).append(
            ActionDef(
                id=row.id,
                phase_id=row.phase_id,
                key=row.key,
                description=row.description,
                is_required=bool(row.is_required),
                order_index=row.order_index or 0,
            )
        )

    phases = [
        PhaseDef(
            id=row.id,
            key=row.key,
            name=row.name,
            description=row.description or "",
            icon=row.icon or "",
            order_index=row.order_index,
            requires_client_action=bool(row.requires_client_action),
            is_system_phase=bool(row.is_system_phase),
            actions=tuple(actions_by_phase.get(row.id, ())),
        )
        for row in phase_rows
    ]
    return PhaseCatalog.build(phases)


def get_catalog() -> PhaseCatalog:
    """Return the cached catalog, loading and validating it on first use."""
    global _catalog
    with _cache_lock:
        if _catalog is not None:
            return _catalog
    try:
        catalog = _load_from_db()
    except CatalogIntegrityError as exc:
        logger.error("Phase catalog failed validation: %s", exc,
                     extra={"error_code": exc.code})
        raise
    with _cache_lock:
        _catalog = catalog
    logger.info("Phase catalog loaded: %d phases, %d actions",
                catalog.total, sum(len(p.actions) for p in catalog.phases))
    return catalog


def invalidate_catalog_cache() -> None:
    global _catalog
    with _cache_lock:
        _catalog = None


# ═════════════════════════════════════════════════════════════════════════════
# Seeding
# ═════════════════════════════════════════════════════════════════════════════


def seed_phase_catalog() -> dict:
    """Install the default phases, actions and automation rules.

    Idempotent: existing phases (by key), actions (by phase + key) and rules
    (by from-phase + rule type) are left untouched. Flushes only; the caller
    commits.

    Returns:
        Counts of newly created rows: ``{"phases", "actions", "rules"}``.
    """
    created = {"phases": 0, "actions": 0, "rules": 0}

    existing = {p.key: p for p in db.session.execute(select(Phase)).scalars()}
    for order_index, row in enumerate(DEFAULT_PHASES):
        if row["key"] in existing:
            continue
        phase = Phase(order_index=order_index, is_system_phase=True, **row)
        db.session.add(phase)
        existing[row["key"]] = phase
        created["phases"] += 1
    db.session.flush()

    for phase_key, actions in DEFAULT_ACTIONS.items():
        phase = existing[phase_key]
        have = {
            a.key for a in db.session.execute(
                select(PhaseAction).where(PhaseAction.phase_id == phase.id)
            ).scalars()
        }
        for order_index, (key, description) in enumerate(actions, start=1):
            if key in have:
                continue
            db.session.add(PhaseAction(
                phase_id=phase.id,
                key=key,
                description=description,
                is_required=True,
                order_index=order_index,
            ))
            created["actions"] += 1

    for rule in DEFAULT_RULES:
        from_phase = existing[rule["from_phase"]]
        found = db.session.execute(
            select(AutomationRule.id).where(
                AutomationRule.from_phase_id == from_phase.id,
                AutomationRule.rule_type == rule["rule_type"],
            )
        ).first()
        if found:
            continue
        db.session.add(AutomationRule(
            from_phase_id=from_phase.id,
            to_phase_id=existing[rule["to_phase"]].id,
            name=rule["name"],
            description=rule["description"],
            rule_type=rule["rule_type"],
            rule_config=dict(rule["rule_config"]),
            is_active=True,
        ))
        created["rules"] += 1

    db.session.flush()
    invalidate_catalog_cache()
    logger.info("Phase catalog seeded: %s", created)
    return created


def catalog_is_empty() -> bool:
    return db.session.execute(select(Phase.id).limit(1)).first() is None
