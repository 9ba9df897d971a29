"""
Tests: Forms & permissions HTTP adapter.

Covers the tenant context headers, the error envelope produced by the
app-level handlers, and the workflow endpoints end to end.
"""

import pytest

from formflow.models import db as _db
from formflow.services import membership_service


@pytest.fixture()
def people(tenant, school_roles, make_member):
    return {
        "owner": make_member(tenant.id, "staff", name="owner"),
        "hod": make_member(tenant.id, "head_of_department", name="hod"),
        "principal": make_member(tenant.id, "principal", name="principal"),
    }


@pytest.fixture()
def as_user(client, tenant, api_headers):
    """Return a small request helper bound to one user in the default tenant."""

    def _bind(user):
        headers = api_headers(tenant.id, user.id)

        class _Caller:
            def get(self, path):
                return client.get(path, headers=headers)

            def post(self, path, json=None):
                return client.post(path, json=json or {}, headers=headers)

            def patch(self, path, json=None):
                return client.patch(path, json=json or {}, headers=headers)

            def delete(self, path):
                return client.delete(path, headers=headers)

        return _Caller()

    return _bind


def _create(caller, template_id, form_data=None):
    res = caller.post(f"/api/v1/forms/templates/{template_id}/instances",
                      json={"form_data": form_data or {"reason": "Dentist", "days": 1}})
    assert res.status_code == 201, res.get_json()
    return res.get_json()


class TestTenantContext:
    def test_health_needs_no_headers(self, client):
        res = client.get("/api/v1/health")
        assert res.status_code == 200
        assert res.get_json()["status"] == "ok"

    def test_missing_headers(self, client):
        res = client.get("/api/v1/permissions/me")
        assert res.status_code == 401
        assert res.get_json()["code"] == "ERR_UNAUTHENTICATED"

    def test_unknown_tenant(self, client, api_headers):
        res = client.get("/api/v1/permissions/me", headers=api_headers(999, 1))
        assert res.status_code == 403

    def test_deactivated_tenant(self, client, tenant, api_headers):
        tenant.is_active = False
        _db.session.commit()
        res = client.get("/api/v1/permissions/me", headers=api_headers(tenant.id, 1))
        assert res.status_code == 403


class TestPermissionsApi:
    def test_me(self, as_user, people):
        res = as_user(people["principal"]).get("/api/v1/permissions/me")
        assert res.status_code == 200
        body = res.get_json()
        assert body["role"] == "principal"
        assert body["permissions"] == ["forms.*"]

    def test_evaluate(self, as_user, people):
        res = as_user(people["principal"]).get("/api/v1/permissions/evaluate?permission=forms.approve")
        assert res.get_json()["decision"] == "allow_wildcard"

        res = as_user(people["principal"]).get("/api/v1/permissions/evaluate")
        assert res.status_code == 400

    def test_user_permissions_requires_members_view(self, tenant, as_user, people):
        res = as_user(people["owner"]).get(f"/api/v1/permissions/users/{people['hod'].id}")
        assert res.status_code == 403

        membership_service.grant_permission(people["owner"].id, tenant.id, "members.view")
        res = as_user(people["owner"]).get(f"/api/v1/permissions/users/{people['hod'].id}")
        assert res.status_code == 200
        assert res.get_json()["role"] == "head_of_department"


class TestWorkflowApi:
    def test_happy_path(self, as_user, people, leave_template):
        owner, hod, principal = (as_user(people[k]) for k in ("owner", "hod", "principal"))
        inst = _create(owner, leave_template.id)
        assert inst["status"] == "draft"

        res = owner.post(f"/api/v1/forms/instances/{inst['id']}/submit",
                         json={"expected_version": inst["version"]})
        assert res.status_code == 200
        assert res.get_json()["current_workflow_step"] == "hod_review"

        res = hod.get(f"/api/v1/forms/instances/{inst['id']}")
        assert [a["action"] for a in res.get_json()["available_actions"]] == ["approve", "reject", "edit"]

        res = hod.post(f"/api/v1/forms/instances/{inst['id']}/advance",
                       json={"decision": "approve", "notes": "ok"})
        assert res.get_json()["current_workflow_step"] == "principal_review"

        res = principal.post(f"/api/v1/forms/instances/{inst['id']}/advance", json={"decision": "approve"})
        assert res.get_json()["new_status"] == "approved"

        res = owner.post(f"/api/v1/forms/instances/{inst['id']}/complete")
        assert res.get_json()["new_status"] == "completed"

        res = owner.get(f"/api/v1/forms/instances/{inst['id']}/history")
        body = res.get_json()
        assert body["total"] == 4
        assert [h["decision"] for h in body["items"]] == ["submitted", "approve", "approve", "completed"]

    def test_validation_errors_are_422(self, as_user, people, leave_template):
        owner = as_user(people["owner"])
        inst = _create(owner, leave_template.id, {"days": 99})
        res = owner.post(f"/api/v1/forms/instances/{inst['id']}/submit")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_FORM_INVALID"
        assert {e["field_id"] for e in body["details"]["errors"]} == {"reason", "days"}

    def test_wrong_approver_is_403(self, as_user, people, leave_template):
        owner, principal = as_user(people["owner"]), as_user(people["principal"])
        inst = _create(owner, leave_template.id)
        owner.post(f"/api/v1/forms/instances/{inst['id']}/submit")

        res = principal.post(f"/api/v1/forms/instances/{inst['id']}/advance", json={"decision": "approve"})
        assert res.status_code == 403
        assert res.get_json()["code"] == "ERR_FORBIDDEN"

    def test_invalid_transition_is_409(self, as_user, people, leave_template):
        owner, hod = as_user(people["owner"]), as_user(people["hod"])
        inst = _create(owner, leave_template.id)
        res = hod.post(f"/api/v1/forms/instances/{inst['id']}/advance", json={"decision": "approve"})
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_stale_version_is_409(self, as_user, people, leave_template):
        owner, hod = as_user(people["owner"]), as_user(people["hod"])
        inst = _create(owner, leave_template.id)
        submitted = owner.post(f"/api/v1/forms/instances/{inst['id']}/submit").get_json()

        path = f"/api/v1/forms/instances/{inst['id']}/advance"
        first = hod.post(path, json={"decision": "approve", "expected_version": submitted["version"]})
        assert first.status_code == 200
        second = hod.post(path, json={"decision": "reject", "expected_version": submitted["version"]})
        assert second.status_code == 409
        assert second.get_json()["code"] == "ERR_STALE_STATE"

    def test_decision_is_validated(self, as_user, people, leave_template):
        owner = as_user(people["owner"])
        inst = _create(owner, leave_template.id)
        path = f"/api/v1/forms/instances/{inst['id']}/advance"
        assert owner.post(path, json={}).status_code == 400
        assert owner.post(path, json={"decision": "escalate"}).status_code == 400
        assert owner.post(path, json={"decision": "approve", "expected_version": "v2"}).status_code == 400

    def test_edit_and_delete(self, as_user, people, leave_template):
        owner = as_user(people["owner"])
        inst = _create(owner, leave_template.id)

        res = owner.patch(f"/api/v1/forms/instances/{inst['id']}/data", json={"values": {"days": 2}})
        assert res.status_code == 200
        assert res.get_json()["form_data"]["days"] == 2

        assert owner.patch(f"/api/v1/forms/instances/{inst['id']}/data", json={}).status_code == 400

        assert owner.delete(f"/api/v1/forms/instances/{inst['id']}").status_code == 204
        assert owner.get(f"/api/v1/forms/instances/{inst['id']}").status_code == 404

    def test_outsiders_see_404(self, tenant, other_tenant, client, api_headers, as_user, people,
                               leave_template, make_member):
        inst = _create(as_user(people["owner"]), leave_template.id)

        res = as_user(people["hod"]).get(f"/api/v1/forms/instances/{inst['id']}")
        assert res.status_code == 404

        stranger = make_member(other_tenant.id, None, name="stranger")
        res = client.get(f"/api/v1/forms/instances/{inst['id']}",
                         headers=api_headers(other_tenant.id, stranger.id))
        assert res.status_code == 404

    def test_create_without_permission_is_403(self, tenant, as_user, make_member, leave_template):
        viewer = make_member(tenant.id, None, name="viewer")
        res = as_user(viewer).post(f"/api/v1/forms/templates/{leave_template.id}/instances", json={})
        assert res.status_code == 403

    def test_overdue_requires_view_all(self, as_user, people):
        assert as_user(people["owner"]).get("/api/v1/forms/overdue").status_code == 403
        res = as_user(people["principal"]).get("/api/v1/forms/overdue")
        assert res.status_code == 200
        assert res.get_json() == {"items": [], "total": 0}

    def test_list_instances_by_status(self, as_user, people, leave_template):
        owner, principal = as_user(people["owner"]), as_user(people["principal"])
        first = _create(owner, leave_template.id)
        _create(owner, leave_template.id)
        owner.post(f"/api/v1/forms/instances/{first['id']}/submit")

        assert owner.get("/api/v1/forms/instances").status_code == 403

        body = principal.get("/api/v1/forms/instances").get_json()
        assert body["total"] == 2
        body = principal.get("/api/v1/forms/instances?status=submitted").get_json()
        assert [i["id"] for i in body["items"]] == [first["id"]]
        assert "workflow_history" not in body["items"][0]

        res = principal.get("/api/v1/forms/instances?status=archived")
        assert res.status_code == 400
        assert res.get_json()["code"] == "ERR_VALIDATION_INVALID"

    def test_notifications_inbox(self, as_user, people, leave_template):
        owner, hod = as_user(people["owner"]), as_user(people["hod"])
        inst = _create(owner, leave_template.id)
        owner.post(f"/api/v1/forms/instances/{inst['id']}/submit")

        body = hod.get("/api/v1/forms/notifications").get_json()
        assert body["unread"] == 1
        notif_id = body["items"][0]["id"]

        res = hod.post(f"/api/v1/forms/notifications/{notif_id}/read")
        assert res.get_json()["is_read"] is True
        assert owner.post(f"/api/v1/forms/notifications/{notif_id}/read").status_code == 404
