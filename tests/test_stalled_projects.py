"""
Stalled project detection and client reminders.
"""

from datetime import datetime, timedelta, timezone

from portal.models import db
from portal.models.audit import ActivityLog
from portal.models.notification import EmailLog, Notification
from portal.models.phase import ProjectPhaseTracking
from portal.services import phase_workflow
from portal.services.stalled_projects import find_stalled_projects, send_stalled_reminders


def _age(project, days):
    tracking = ProjectPhaseTracking.query.filter_by(project_id=project.id).one()
    tracking.phase_started_at = datetime.now(timezone.utc) - timedelta(days=days)
    db.session.commit()


def test_fresh_project_is_not_stalled(project):
    assert find_stalled_projects(7) == []


def test_old_phase_is_stalled(project):
    _age(project, 10)

    items = find_stalled_projects(7)

    assert len(items) == 1
    item = items[0]
    assert item["project_id"] == project.id
    assert item["phase_key"] == "onboarding"
    assert item["days_in_phase"] >= 9
    assert item["pending_required_actions"] == 3
    assert find_stalled_projects(30) == []


def test_completed_project_is_not_stalled(project, admin_actor):
    phase_workflow.jump_to(project.id, "delivery", admin_actor)
    phase_workflow.approve(project.id, "delivery", admin_actor)
    _age(project, 10)
    assert find_stalled_projects(7) == []


def test_tenant_filter(project, tenant):
    _age(project, 10)
    assert len(find_stalled_projects(7, tenant_id=tenant.id)) == 1
    assert find_stalled_projects(7, tenant_id=tenant.id + 1) == []


def test_reminder_sent_to_owner(project, owner):
    _age(project, 10)

    assert send_stalled_reminders(7) == 1

    note = Notification.query.filter_by(type="stalled_project").one()
    assert note.recipient_user_id == owner.id
    assert note.severity == "warning"
    assert EmailLog.query.filter_by(template_name="stalled_project_reminder").count() == 1
    assert ActivityLog.query.filter_by(action="phase.stalled_reminder").count() == 1


def test_no_reminder_when_nothing_pending_on_client(project, admin_actor):
    phase_workflow.advance(project.id, admin_actor)  # ideation has no client actions
    _age(project, 10)

    assert len(find_stalled_projects(7)) == 1
    assert send_stalled_reminders(7) == 0
    assert Notification.query.count() == 0


def test_stalled_endpoint(client, project, admin, auth_headers):
    _age(project, 10)
    res = client.get("/api/v1/projects/stalled?days=7", headers=auth_headers(admin))
    assert res.status_code == 200
    data = res.get_json()
    assert data["days"] == 7
    assert [i["project_id"] for i in data["items"]] == [project.id]


def test_reminder_is_not_repeated_within_cooldown(project):
    _age(project, 10)

    assert send_stalled_reminders(7) == 1
    assert send_stalled_reminders(7) == 0
    assert send_stalled_reminders(7) == 0

    assert Notification.query.filter_by(type="stalled_project").count() == 1
    assert EmailLog.query.filter_by(template_name="stalled_project_reminder").count() == 1
    assert ActivityLog.query.filter_by(action="phase.stalled_reminder").count() == 1


def test_reminder_repeats_after_cooldown(project):
    _age(project, 10)
    assert send_stalled_reminders(7, cooldown_days=3) == 1

    note = Notification.query.filter_by(type="stalled_project").one()
    note.created_at = datetime.now(timezone.utc) - timedelta(days=4)
    db.session.commit()

    assert send_stalled_reminders(7, cooldown_days=3) == 1
    assert Notification.query.filter_by(type="stalled_project").count() == 2


def test_new_phase_gets_its_own_reminder(project, admin_actor):
    _age(project, 10)
    assert send_stalled_reminders(7) == 1

    phase_workflow.jump_to(project.id, "review", admin_actor)
    _age(project, 10)

    assert send_stalled_reminders(7) == 1
    keys = [n.metadata_json["phase_key"]
            for n in Notification.query.filter_by(type="stalled_project").order_by(Notification.id)]
    assert keys == ["onboarding", "review"]
