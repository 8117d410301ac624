"""
Client action ledger and the required-actions gate.
"""

from portal.models.phase import ActionStatus
from portal.services import action_gate


def test_missing_rows_count_as_pending(catalog, project):
    onboarding = catalog.by_key("onboarding")
    assert action_gate.pending_required_count(project.id, onboarding) == 3
    assert action_gate.all_required_complete(project.id, onboarding) is False


def test_phase_without_actions_is_trivially_complete(catalog, project):
    assert action_gate.all_required_complete(project.id, catalog.by_key("ideation")) is True


def test_completing_actions_closes_the_gate(catalog, project, owner):
    onboarding = catalog.by_key("onboarding")
    for action in onboarding.actions[:2]:
        action_gate.upsert_action_status(project.id, action, is_completed=True, actor_id=owner.id)
    assert action_gate.pending_required_count(project.id, onboarding) == 1

    action_gate.upsert_action_status(
        project.id, onboarding.actions[2], is_completed=True, actor_id=owner.id,
    )
    assert action_gate.all_required_complete(project.id, onboarding) is True


def test_upsert_keeps_one_row_per_action(catalog, project, owner):
    action = catalog.by_key("onboarding").actions[0]
    action_gate.upsert_action_status(project.id, action, is_completed=True, actor_id=owner.id,
                                     notes="Brief attached")
    row = action_gate.upsert_action_status(project.id, action, is_completed=False, actor_id=owner.id)

    assert ActionStatus.query.filter_by(project_id=project.id, action_id=action.id).count() == 1
    assert row.is_completed is False
    assert row.completed_at is None
    assert row.completed_by is None
    assert row.notes is None
    assert row.phase_id == action.phase_id


def test_completion_is_stamped(catalog, project, owner):
    action = catalog.by_key("payment").actions[0]
    row = action_gate.upsert_action_status(project.id, action, is_completed=True, actor_id=owner.id)
    assert row.completed_at is not None
    assert row.completed_by == owner.id


def test_actions_with_status_merges_ledger(catalog, project, owner):
    onboarding = catalog.by_key("onboarding")
    action_gate.upsert_action_status(
        project.id, onboarding.actions[1], is_completed=True, actor_id=owner.id, notes="Signed",
    )

    items = action_gate.actions_with_status(project.id, onboarding)
    assert [i["key"] for i in items] == ["complete_brief", "sign_agreement", "submit_deposit"]
    assert [i["is_completed"] for i in items] == [False, True, False]
    assert items[1]["notes"] == "Signed"
    assert items[1]["completed_by"] == owner.id
    assert items[0]["completed_at"] is None
