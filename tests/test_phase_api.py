"""
Phase workflow HTTP API: auth, error mapping and the happy paths.
"""

import pytest

from portal.models.message import Message
from portal.models.notification import EmailLog, Notification


@pytest.fixture()
def admin_h(admin, auth_headers):
    return auth_headers(admin)


@pytest.fixture()
def owner_h(owner, auth_headers):
    return auth_headers(owner)


@pytest.fixture()
def other_h(other_client, auth_headers):
    return auth_headers(other_client)


def _url(project, suffix=""):
    return f"/api/v1/projects/{project.id}/phases{suffix}"


# ═════════════════════════════════════════════════════════════════════════
# Authentication
# ═════════════════════════════════════════════════════════════════════════

class TestAuth:
    def test_missing_token(self, client, catalog):
        res = client.get("/api/v1/phases")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_garbage_token(self, client, catalog):
        res = client.get("/api/v1/phases", headers={"Authorization": "Bearer not-a-jwt"})
        assert res.status_code == 401

    def test_non_json_body_is_rejected(self, client, project, admin_h):
        res = client.post(_url(project, "/advance"), data="reason=x",
                          headers={**admin_h, "Content-Type": "application/x-www-form-urlencoded"})
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════
# Catalog
# ═════════════════════════════════════════════════════════════════════════

class TestCatalogEndpoints:
    def test_list_phases(self, client, catalog, owner_h):
        res = client.get("/api/v1/phases", headers=owner_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 8
        assert data["items"][0]["key"] == "onboarding"
        assert len(data["items"][0]["actions"]) == 3

    def test_get_phase(self, client, catalog, owner_h):
        res = client.get("/api/v1/phases/signoff", headers=owner_h)
        assert res.status_code == 200
        assert res.get_json()["name"] == "Sign-off & Docs"

    def test_get_unknown_phase(self, client, catalog, owner_h):
        res = client.get("/api/v1/phases/launch", headers=owner_h)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_PHASE_NOT_FOUND"


# ═════════════════════════════════════════════════════════════════════════
# Project state
# ═════════════════════════════════════════════════════════════════════════

class TestProjectState:
    def test_owner_reads_state(self, client, project, owner_h):
        res = client.get(_url(project), headers=owner_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["current_phase"]["key"] == "onboarding"
        assert data["progress"]["total_phases"] == 8

    def test_other_client_is_forbidden(self, client, project, other_h):
        res = client.get(_url(project), headers=other_h)
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_other_tenant_gets_404(self, client, project, make_tenant, make_user, auth_headers):
        rival = make_tenant("rival")
        rival_admin = make_user(rival, "boss@rival.test", role="admin")
        res = client.get(_url(project), headers=auth_headers(rival_admin))
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_history(self, client, project, admin_h):
        client.post(_url(project, "/advance"), json={}, headers=admin_h)
        res = client.get(_url(project, "/history?limit=1"), headers=admin_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["total"] == 2
        assert len(data["items"]) == 1
        assert data["items"][0]["to_phase_key"] == "ideation"
        assert data["items"][0]["transitioned_by_name"] == "Ada Admin"


# ═════════════════════════════════════════════════════════════════════════
# Actions
# ═════════════════════════════════════════════════════════════════════════

class TestActionEndpoint:
    def test_is_completed_must_be_boolean(self, client, catalog, project, owner_h):
        action = catalog.by_key("onboarding").actions[0]
        res = client.put(_url(project, f"/actions/{action.id}"), json={"is_completed": "yes"},
                         headers=owner_h)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_unknown_action(self, client, project, owner_h):
        res = client.put(_url(project, "/actions/99999"), json={"is_completed": True}, headers=owner_h)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_ACTION_NOT_FOUND"

    def test_onboarding_actions_auto_advance(self, client, catalog, project, owner, owner_h):
        actions = catalog.by_key("onboarding").actions
        for action in actions[:-1]:
            res = client.put(_url(project, f"/actions/{action.id}"),
                             json={"is_completed": True, "notes": "done"}, headers=owner_h)
            assert res.status_code == 200
            assert res.get_json()["auto_advanced"] is False

        res = client.put(_url(project, f"/actions/{actions[-1].id}"),
                         json={"is_completed": True}, headers=owner_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["auto_advanced"] is True
        assert data["new_phase"]["key"] == "ideation"

        note = Notification.query.filter_by(recipient_user_id=owner.id, type="phase_advanced").one()
        assert note.project_id == project.id
        email = EmailLog.query.filter_by(template_name="phase_advanced").one()
        assert email.recipient_email == "owner@client.test"
        assert email.status == "sent"


# ═════════════════════════════════════════════════════════════════════════
# Administrative moves
# ═════════════════════════════════════════════════════════════════════════

class TestAdvanceAndJump:
    def test_client_cannot_advance(self, client, project, owner_h):
        res = client.post(_url(project, "/advance"), json={}, headers=owner_h)
        assert res.status_code == 403

    def test_admin_advances(self, client, project, admin_h):
        res = client.post(_url(project, "/advance"), json={"reason": "Brief received by email"},
                          headers=admin_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["phase"]["key"] == "ideation"
        assert data["previous_phase"]["key"] == "onboarding"

    def test_advance_at_final_phase(self, client, project, admin_h):
        client.put(_url(project, "/current"), json={"phase_key": "delivery"}, headers=admin_h)
        res = client.post(_url(project, "/advance"), json={}, headers=admin_h)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_AT_FINAL_PHASE"

    def test_jump_requires_phase_key(self, client, project, admin_h):
        res = client.put(_url(project, "/current"), json={}, headers=admin_h)
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_REQUIRED"

    def test_jump_unknown_phase(self, client, project, admin_h):
        res = client.put(_url(project, "/current"), json={"phase_key": "launch"}, headers=admin_h)
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_PHASE_NOT_FOUND"

    def test_jump(self, client, project, admin_h):
        res = client.put(_url(project, "/current"), json={"phase_key": "production"}, headers=admin_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["message"] == "Project moved to Production/Print phase"
        assert data["changed"] is True

    def test_missing_project(self, client, catalog, admin_h):
        res = client.post("/api/v1/projects/4242/phases/advance", json={}, headers=admin_h)
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════
# Owner decisions
# ═════════════════════════════════════════════════════════════════════════

class TestDecisions:
    def test_approve_wrong_phase(self, client, project, owner_h):
        res = client.post(_url(project, "/review/approve"), json={}, headers=owner_h)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_NOT_CURRENT_PHASE"
        assert body["details"]["current_phase_key"] == "onboarding"

    def test_approve_advances(self, client, project, admin, owner_h):
        res = client.post(_url(project, "/onboarding/approve"), json={"notes": "All good"},
                          headers=owner_h)
        assert res.status_code == 200
        data = res.get_json()
        assert data["message"] == "Phase approved, moved to Ideation"
        assert data["decision"]["notes"] == "All good"
        # Owner acted, so the studio admins hear about it
        assert Notification.query.filter_by(recipient_user_id=admin.id, type="phase_approved").count() == 1

    def test_approve_final_completes(self, client, project, admin_h, owner_h):
        client.put(_url(project, "/current"), json={"phase_key": "delivery"}, headers=admin_h)

        res = client.post(_url(project, "/delivery/approve"), json={}, headers=owner_h)
        assert res.status_code == 200
        assert res.get_json()["message"] == "Project completed"

        again = client.post(_url(project, "/delivery/approve"), json={}, headers=owner_h)
        assert again.status_code == 409
        assert again.get_json()["code"] == "ERR_AT_FINAL_PHASE"

    def test_request_changes_requires_feedback(self, client, project, owner_h):
        res = client.post(_url(project, "/onboarding/request-changes"), json={"feedback": "  "},
                          headers=owner_h)
        assert res.status_code == 422
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_request_changes(self, client, project, admin, owner, owner_h):
        res = client.post(_url(project, "/onboarding/request-changes"),
                          json={"changes_requested": "Please use the new logo"}, headers=owner_h)
        assert res.status_code == 200
        assert res.get_json()["decision"]["decision"] == "changes_requested"

        message = Message.query.filter_by(project_id=project.id).one()
        assert message.sender_id == owner.id
        assert message.content == "Changes requested for Onboarding:\n\nPlease use the new logo"
        assert Notification.query.filter_by(recipient_user_id=admin.id,
                                            type="changes_requested").count() == 1

        state = client.get(_url(project), headers=owner_h).get_json()
        assert state["current_phase"]["key"] == "onboarding"

    def test_other_client_cannot_decide(self, client, project, other_h):
        res = client.post(_url(project, "/onboarding/approve"), json={}, headers=other_h)
        assert res.status_code == 403
