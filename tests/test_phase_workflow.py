"""
Phase workflow engine: initialization, forward moves, jumps, owner
decisions, action-driven automation, read models, concurrent mutations
and store failures.
"""

import threading

import pytest
from sqlalchemy import event
from sqlalchemy.dialects import postgresql
from sqlalchemy.exc import OperationalError

from portal import create_app
from portal.auth import Actor
from portal.config import TestingConfig
from portal.core.exceptions import (
    ActionNotFoundError,
    AlreadyInitializedError,
    AtFinalPhaseError,
    ForbiddenError,
    NotCurrentPhaseError,
    PhaseNotFoundError,
    TrackingNotFoundError,
    TransientStoreError,
    ValidationError,
)
from portal.models import db
from portal.models.auth import Tenant, User
from portal.models.phase import (
    Phase,
    PhaseCompletion,
    PhaseDecision,
    PhaseTransition,
    ProjectPhaseTracking,
)
from portal.models.project import Project
from portal.services import automation_rules, phase_workflow, project_service
from portal.services.phase_catalog import get_catalog, invalidate_catalog_cache, seed_phase_catalog


def _tracking(project_id):
    return ProjectPhaseTracking.query.filter_by(project_id=project_id).one()


def _history_count(project_id):
    return PhaseTransition.query.filter_by(project_id=project_id).count()


def _assert_invariant(project_id):
    """Index mirrors the current phase, and the newest history row lands on it."""
    db.session.expire_all()
    tracking = _tracking(project_id)
    phase = db.session.get(Phase, tracking.current_phase_id)
    assert tracking.current_phase_index == phase.order_index
    newest = (
        PhaseTransition.query.filter_by(project_id=project_id)
        .order_by(PhaseTransition.id.desc()).first()
    )
    assert newest.to_phase_id == tracking.current_phase_id
    return tracking


@pytest.fixture()
def other_actor(other_client):
    return Actor(user_id=other_client.id, tenant_id=other_client.tenant_id, is_admin=False)


# ═════════════════════════════════════════════════════════════════════════
# Initialization
# ═════════════════════════════════════════════════════════════════════════

class TestInitialize:
    def test_project_starts_at_first_phase(self, project):
        tracking = _tracking(project.id)
        assert tracking.current_phase_index == 0
        assert tracking.current_phase.key == "onboarding"
        assert tracking.is_completed is False
        assert tracking.phase_started_at is not None
        _assert_invariant(project.id)

    def test_initial_history_entry(self, project):
        history = phase_workflow.list_history(project.id)
        assert history["total"] == 1
        entry = history["items"][0]
        assert entry["from_phase_key"] is None
        assert entry["to_phase_key"] == "onboarding"
        assert entry["reason"] == phase_workflow.REASON_CREATED
        assert entry["transitioned_by_name"] == "Ada Admin"

    def test_second_initialize_is_rejected(self, project):
        with pytest.raises(AlreadyInitializedError) as exc:
            phase_workflow.initialize(project.id)
        assert exc.value.status == 409
        assert _history_count(project.id) == 1


# ═════════════════════════════════════════════════════════════════════════
# advance
# ═════════════════════════════════════════════════════════════════════════

class TestAdvance:
    def test_advance_one_step(self, project, admin_actor):
        result = phase_workflow.advance(project.id, admin_actor)

        assert result.phase.key == "ideation"
        assert result.previous_phase.key == "onboarding"
        assert [e.kind for e in result.events] == ["advanced"]

        tracking = _tracking(project.id)
        assert tracking.current_phase_index == 1
        assert result.previous_phase.id in tracking.completion_map()
        assert tracking.current_phase_id == result.phase.id
        _assert_invariant(project.id)

        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["from_phase_key"] == "onboarding"
        assert newest["to_phase_key"] == "ideation"
        assert newest["reason"] == phase_workflow.REASON_MANUAL_ADVANCE

    def test_advance_with_reason(self, project, admin_actor):
        phase_workflow.advance(project.id, admin_actor, "  Kickoff call done  ")
        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["reason"] == "Kickoff call done"

    def test_advance_ignores_action_gate(self, project, admin_actor):
        result = phase_workflow.advance(project.id, admin_actor)
        assert result.phase.key == "ideation"

    def test_client_cannot_advance(self, project, owner_actor):
        with pytest.raises(ForbiddenError):
            phase_workflow.advance(project.id, owner_actor)
        assert _tracking(project.id).current_phase_index == 0

    def test_advance_at_final_phase_writes_nothing(self, project, admin_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        before = _history_count(project.id)

        with pytest.raises(AtFinalPhaseError) as exc:
            phase_workflow.advance(project.id, admin_actor)

        assert exc.value.status == 409
        assert _history_count(project.id) == before
        assert _tracking(project.id).current_phase_index == 7

    def test_unknown_project(self, catalog, admin_actor):
        with pytest.raises(TrackingNotFoundError):
            phase_workflow.advance(9999, admin_actor)

    def test_other_tenant_cannot_see_project(self, project, admin):
        outsider = Actor(user_id=admin.id, tenant_id=admin.tenant_id + 100, is_admin=True)
        with pytest.raises(TrackingNotFoundError):
            phase_workflow.advance(project.id, outsider)

    def test_soft_deleted_project_is_invisible(self, project, admin_actor):
        db.session.get(Project, project.id).soft_delete()
        db.session.commit()
        with pytest.raises(TrackingNotFoundError):
            phase_workflow.advance(project.id, admin_actor)


# ═════════════════════════════════════════════════════════════════════════
# jump_to
# ═════════════════════════════════════════════════════════════════════════

class TestJumpTo:
    def test_jump_forward_bypasses_gate(self, project, admin_actor):
        result = phase_workflow.jump_to(project.id, "review", admin_actor)
        assert result.changed is True
        assert result.phase.key == "review"
        assert _tracking(project.id).current_phase_index == 3
        assert _assert_invariant(project.id).current_phase_id == result.phase.id

        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["from_phase_key"] == "onboarding"
        assert newest["reason"] == phase_workflow.REASON_MANUAL_JUMP

    def test_jump_backward(self, project, admin_actor):
        phase_workflow.jump_to(project.id, "payment", admin_actor)
        result = phase_workflow.jump_to(project.id, "design", admin_actor, "Rework logo")
        assert result.phase.key == "design"
        assert result.previous_phase.key == "payment"
        assert phase_workflow.list_history(project.id)["items"][0]["reason"] == "Rework logo"
        assert _assert_invariant(project.id).current_phase_index == 2

    def test_jump_to_current_phase_is_a_no_op(self, project, admin_actor):
        result = phase_workflow.jump_to(project.id, "onboarding", admin_actor)
        assert result.changed is False
        assert result.events == []
        assert _history_count(project.id) == 1

    def test_unknown_phase_key(self, project, admin_actor):
        with pytest.raises(PhaseNotFoundError) as exc:
            phase_workflow.jump_to(project.id, "launch", admin_actor)
        assert exc.value.status == 404
        assert exc.value.user_supplied is True

    def test_client_cannot_jump(self, project, owner_actor):
        with pytest.raises(ForbiddenError):
            phase_workflow.jump_to(project.id, "review", owner_actor)

    def test_jump_reopens_completed_project(self, project, admin_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        phase_workflow.approve(project.id, "delivery", admin_actor)
        assert db.session.get(Project, project.id).status == "completed"

        result = phase_workflow.jump_to(project.id, "design", admin_actor)

        assert result.is_completed is False
        tracking = _tracking(project.id)
        assert tracking.is_completed is False
        assert tracking.completed_at is None
        reopened = db.session.get(Project, project.id)
        assert reopened.status == "active"
        assert reopened.completed_at is None
        _assert_invariant(project.id)


# ═════════════════════════════════════════════════════════════════════════
# approve / reject
# ═════════════════════════════════════════════════════════════════════════

class TestApprove:
    def test_owner_approval_advances(self, project, owner_actor):
        result = phase_workflow.approve(project.id, "onboarding", owner_actor)

        assert result.decision["decision"] == "approved"
        assert result.transition.phase.key == "ideation"
        assert [e.kind for e in result.events] == ["approved", "advanced"]
        assert PhaseDecision.query.filter_by(project_id=project.id).count() == 1

        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["reason"] == phase_workflow.REASON_APPROVED_DEFAULT
        assert newest["transitioned_by_name"] == "Olive Owner"
        assert _assert_invariant(project.id).current_phase_id == result.transition.phase.id

    def test_approval_notes_become_reason(self, project, owner_actor):
        result = phase_workflow.approve(project.id, "onboarding", owner_actor, "Looks great")
        assert result.decision["notes"] == "Looks great"
        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["reason"] == "Approved: Looks great"

    def test_admin_may_approve(self, project, admin_actor):
        result = phase_workflow.approve(project.id, "onboarding", admin_actor)
        assert result.transition.phase.key == "ideation"

    def test_not_current_phase(self, project, owner_actor):
        with pytest.raises(NotCurrentPhaseError) as exc:
            phase_workflow.approve(project.id, "design", owner_actor)
        assert exc.value.details == {"phase_key": "design", "current_phase_key": "onboarding"}
        assert PhaseDecision.query.count() == 0

    def test_unknown_phase(self, project, owner_actor):
        with pytest.raises(PhaseNotFoundError) as exc:
            phase_workflow.approve(project.id, "launch", owner_actor)
        assert exc.value.status == 404

    def test_other_client_is_forbidden(self, project, other_actor):
        with pytest.raises(ForbiddenError):
            phase_workflow.approve(project.id, "onboarding", other_actor)
        assert _tracking(project.id).current_phase_index == 0

    def test_final_approval_completes_project(self, project, admin_actor, owner_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        history_before = _history_count(project.id)

        result = phase_workflow.approve(project.id, "delivery", owner_actor)

        assert result.transition.is_completed is True
        assert [e.kind for e in result.events] == ["approved", "completed"]
        tracking = _tracking(project.id)
        assert tracking.is_completed is True
        assert tracking.completed_at is not None
        assert tracking.current_phase_index == 7
        completed = db.session.get(Project, project.id)
        assert completed.status == "completed"
        assert completed.completed_at is not None
        assert _history_count(project.id) == history_before
        _assert_invariant(project.id)

    def test_completed_project_cannot_be_approved_again(self, project, admin_actor, owner_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        phase_workflow.approve(project.id, "delivery", owner_actor)

        with pytest.raises(AtFinalPhaseError):
            phase_workflow.approve(project.id, "delivery", owner_actor)
        assert PhaseDecision.query.filter_by(project_id=project.id).count() == 1


class TestReject:
    def test_request_changes_never_moves(self, project, owner_actor):
        result = phase_workflow.reject(project.id, "onboarding", owner_actor, "Wrong brand colours")

        assert result.decision["decision"] == "changes_requested"
        assert result.decision["notes"] == "Wrong brand colours"
        assert result.transition is None
        assert [e.kind for e in result.events] == ["changes_requested"]
        assert _tracking(project.id).current_phase_index == 0
        assert _history_count(project.id) == 1

    def test_feedback_is_required(self, project, owner_actor):
        with pytest.raises(ValidationError):
            phase_workflow.reject(project.id, "onboarding", owner_actor, "   ")
        assert PhaseDecision.query.count() == 0

    def test_not_current_phase(self, project, owner_actor):
        with pytest.raises(NotCurrentPhaseError):
            phase_workflow.reject(project.id, "review", owner_actor, "Too early")

    def test_other_client_is_forbidden(self, project, other_actor):
        with pytest.raises(ForbiddenError):
            phase_workflow.reject(project.id, "onboarding", other_actor, "Not mine")


# ═════════════════════════════════════════════════════════════════════════
# set_action_status + automation
# ═════════════════════════════════════════════════════════════════════════

class TestActionStatus:
    def test_completing_all_required_actions_auto_advances(self, catalog, project, owner_actor):
        onboarding = catalog.by_key("onboarding")
        results = [
            phase_workflow.set_action_status(project.id, action.id, True, owner_actor)
            for action in onboarding.actions
        ]

        assert [r.auto_advanced for r in results] == [False, False, True]
        assert [r.all_required_complete for r in results] == [False, False, True]
        last = results[-1]
        assert last.new_phase.key == "ideation"
        assert [e.kind for e in last.events] == ["action_status", "advanced"]

        assert _tracking(project.id).current_phase_index == 1
        newest = phase_workflow.list_history(project.id)["items"][0]
        assert newest["transitioned_by"] is None
        assert newest["transitioned_by_name"] == "System"
        assert newest["reason"] == phase_workflow.REASON_AUTO_ADVANCE
        assert _assert_invariant(project.id).current_phase_id == last.new_phase.id

    def test_action_of_another_phase_does_not_advance(self, catalog, project, owner_actor):
        action = catalog.by_key("review").actions[0]
        result = phase_workflow.set_action_status(project.id, action.id, True, owner_actor)
        assert result.auto_advanced is False
        assert result.all_required_complete is False
        assert result.action_status["phase_id"] == catalog.by_key("review").id

    def test_uncompleting_does_not_move_back(self, catalog, project, owner_actor):
        onboarding = catalog.by_key("onboarding")
        for action in onboarding.actions:
            phase_workflow.set_action_status(project.id, action.id, True, owner_actor)

        result = phase_workflow.set_action_status(project.id, onboarding.actions[0].id, False, owner_actor)

        assert result.action_status["is_completed"] is False
        assert result.auto_advanced is False
        assert _tracking(project.id).current_phase_index == 1

    def test_final_phase_waits_for_approval(self, catalog, project, admin_actor, owner_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        delivery = catalog.by_key("delivery")

        first = phase_workflow.set_action_status(project.id, delivery.actions[0].id, True, owner_actor)
        last = phase_workflow.set_action_status(project.id, delivery.actions[1].id, True, owner_actor)

        assert first.awaiting_approval is False
        assert last.awaiting_approval is True
        assert last.project_completed is False
        assert [e.kind for e in last.events] == ["action_status", "awaiting_approval"]
        assert _tracking(project.id).is_completed is False

    def test_final_phase_rule_may_complete_project(self, catalog, project, admin_actor, owner_actor):
        automation_rules.create_rule({
            "from_phase_key": "delivery",
            "rule_config": {"auto_advance": True, "complete_project": True},
        })
        phase_workflow.jump_to(project.id, "delivery", admin_actor)

        for action in catalog.by_key("delivery").actions:
            result = phase_workflow.set_action_status(project.id, action.id, True, owner_actor)

        assert result.project_completed is True
        assert result.awaiting_approval is False
        assert _tracking(project.id).is_completed is True
        assert db.session.get(Project, project.id).status == "completed"
        _assert_invariant(project.id)

    def test_unknown_action(self, project, owner_actor):
        with pytest.raises(ActionNotFoundError) as exc:
            phase_workflow.set_action_status(project.id, 987654, True, owner_actor)
        assert exc.value.status == 404

    def test_other_client_is_forbidden(self, catalog, project, other_actor):
        action = catalog.by_key("onboarding").actions[0]
        with pytest.raises(ForbiddenError):
            phase_workflow.set_action_status(project.id, action.id, True, other_actor)


# ═════════════════════════════════════════════════════════════════════════
# Read models
# ═════════════════════════════════════════════════════════════════════════

class TestCurrentState:
    def test_fresh_project(self, project, owner_actor):
        state = phase_workflow.get_current_state(project.id, owner_actor)

        assert state["current_phase"]["key"] == "onboarding"
        assert [p["status"] for p in state["phases"][:2]] == ["current", "upcoming"]
        assert len(state["actions"]) == 3
        assert state["pending_required_actions"] == 3
        assert state["can_advance"] is False
        assert state["progress"] == {"current_index": 0, "total_phases": 8, "percent_complete": 0}

    def test_progress_after_jump(self, project, admin_actor):
        phase_workflow.jump_to(project.id, "review", admin_actor)
        state = phase_workflow.get_current_state(project.id, admin_actor)

        assert state["progress"]["percent_complete"] == 43
        assert [p["status"] for p in state["phases"][:5]] == [
            "completed", "completed", "completed", "current", "upcoming",
        ]

    def test_phase_without_actions_can_advance(self, project, admin_actor):
        phase_workflow.advance(project.id, admin_actor)
        state = phase_workflow.get_current_state(project.id)
        assert state["actions"] == []
        assert state["can_advance"] is True

    def test_final_phase_cannot_advance_once_actions_done(self, catalog, project,
                                                          admin_actor, owner_actor):
        phase_workflow.jump_to(project.id, "delivery", admin_actor)
        for action in catalog.by_key("delivery").actions:
            phase_workflow.set_action_status(project.id, action.id, True, owner_actor)

        state = phase_workflow.get_current_state(project.id, owner_actor)

        assert state["pending_required_actions"] == 0
        assert state["is_completed"] is False
        assert state["can_advance"] is False
        with pytest.raises(AtFinalPhaseError):
            phase_workflow.advance(project.id, admin_actor)

    def test_other_client_is_forbidden(self, project, other_actor):
        with pytest.raises(ForbiddenError):
            phase_workflow.get_current_state(project.id, other_actor)


class TestHistory:
    def test_pagination_newest_first(self, project, admin_actor):
        for _ in range(3):
            phase_workflow.advance(project.id, admin_actor)

        page = phase_workflow.list_history(project.id, limit=2, offset=2)

        assert page["total"] == 4
        assert page["limit"] == 2
        assert page["offset"] == 2
        assert [i["to_phase_key"] for i in page["items"]] == ["ideation", "onboarding"]

    def test_limit_is_clamped(self, project):
        assert phase_workflow.list_history(project.id, limit=1000)["limit"] == 100
        assert phase_workflow.list_history(project.id, limit=0)["limit"] == 1
        assert phase_workflow.list_history(project.id, limit="abc")["limit"] == 20


# ═════════════════════════════════════════════════════════════════════════
# Full pipeline
# ═════════════════════════════════════════════════════════════════════════

def test_project_walks_all_eight_phases(project, admin_actor, owner_actor):
    for expected_index in range(1, 8):
        phase_workflow.advance(project.id, admin_actor)
        assert _assert_invariant(project.id).current_phase_index == expected_index
    phase_workflow.approve(project.id, "delivery", owner_actor, "Thanks!")
    _assert_invariant(project.id)

    state = phase_workflow.get_current_state(project.id, owner_actor)
    assert state["is_completed"] is True
    assert state["progress"]["percent_complete"] == 100
    assert {p["status"] for p in state["phases"]} == {"completed"}
    assert all(p["completed_at"] for p in state["phases"])
    assert phase_workflow.list_history(project.id)["total"] == 8
    assert PhaseCompletion.query.count() == 8


# ═════════════════════════════════════════════════════════════════════════
# Locking and store failures
# ═════════════════════════════════════════════════════════════════════════

def test_lock_statement_selects_for_update():
    sql = str(phase_workflow.tracking_lock_statement(1, 2).compile(dialect=postgresql.dialect()))
    assert "FOR UPDATE" in sql
    assert "project_phase_tracking" in sql
    assert "deleted_at IS NULL" in sql


def test_lock_timeout_is_retryable(project, admin_actor, monkeypatch):
    def _timeout(*args, **kwargs):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))

    monkeypatch.setattr(phase_workflow, "_lock_tracking", _timeout)

    with pytest.raises(TransientStoreError) as exc:
        phase_workflow.advance(project.id, admin_actor)
    assert exc.value.retryable is True
    assert exc.value.status == 503
    monkeypatch.undo()
    assert _tracking(project.id).current_phase_index == 0


@pytest.fixture()
def file_app(tmp_path, monkeypatch):
    """Application on a file-backed SQLite database that several threads share.

    SQLite has no FOR UPDATE, so every transaction opens with BEGIN IMMEDIATE;
    the tracking read and its update are then serialized like a row lock.
    """
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_DATABASE_URI",
                        f"sqlite:///{tmp_path / 'workflow.db'}")
    monkeypatch.setattr(TestingConfig, "SQLALCHEMY_ENGINE_OPTIONS",
                        {"connect_args": {"check_same_thread": False, "timeout": 15}})
    application = create_app("testing")

    with application.app_context():
        engine = db.engine

        @event.listens_for(engine, "connect")
        def _driver_autocommit(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(connection):
            connection.exec_driver_sql("BEGIN IMMEDIATE")

        engine.dispose()

    yield application

    invalidate_catalog_cache()
    with application.app_context():
        db.engine.dispose()


def test_concurrent_advances_never_skip_a_phase(file_app):
    with file_app.app_context():
        invalidate_catalog_cache()
        seed_phase_catalog()
        db.session.commit()
        catalog = get_catalog()

        studio = Tenant(name="Studio", slug="studio")
        db.session.add(studio)
        db.session.commit()
        admin = User(tenant_id=studio.id, email="admin@studio.test", role="admin",
                     status="active", full_name="Ada Admin")
        owner = User(tenant_id=studio.id, email="owner@client.test", role="client",
                     status="active", full_name="Olive Owner")
        db.session.add_all([admin, owner])
        db.session.commit()

        actor = Actor(user_id=admin.id, tenant_id=studio.id, is_admin=True)
        project, _events = project_service.create_project(
            actor=actor, data={"name": "Race", "client_id": owner.id, "due_date": "2026-12-01"},
        )
        project_id = project.id
        phase_workflow.advance(project_id, actor)
        start_index = _tracking(project_id).current_phase_index

    barrier = threading.Barrier(2)
    outcomes = []

    def _advance():
        with file_app.app_context():
            barrier.wait()
            try:
                result = phase_workflow.advance(project_id, actor)
            except TransientStoreError:
                outcomes.append(None)
            else:
                outcomes.append((result.previous_phase.order_index, result.phase.order_index))

    threads = [threading.Thread(target=_advance) for _ in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=60)

    assert len(outcomes) == 2
    moves = sorted(o for o in outcomes if o is not None)
    assert moves in (
        [(start_index, start_index + 1)],
        [(start_index, start_index + 1), (start_index + 1, start_index + 2)],
    )

    with file_app.app_context():
        tracking = _assert_invariant(project_id)
        assert tracking.current_phase_index == start_index + len(moves)

        index_of = {phase.id: phase.order_index for phase in catalog.phases}
        history = (
            PhaseTransition.query.filter_by(project_id=project_id)
            .order_by(PhaseTransition.id).all()
        )
        steps = [(index_of[h.from_phase_id], index_of[h.to_phase_id])
                 for h in history if h.from_phase_id is not None]
        assert steps == [(i, i + 1) for i in range(len(steps))]
