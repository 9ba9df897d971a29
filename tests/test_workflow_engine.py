"""
Tests: Workflow engine — form instance state machine.

Lifecycle:
    draft → submitted(hod_review) → in_review(principal_review) → approved → completed
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import insert, update
from sqlalchemy.exc import IntegrityError

from formflow.core.exceptions import (
    FormValidationError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    StaleStateError,
    ValidationError,
)
from formflow.models import db as _db
from formflow.models.audit import AuditLog
from formflow.models.forms import FormInstance, FormWorkflowEvent
from formflow.services import membership_service, template_service, workflow_engine
from formflow.services.workflow_engine import (
    advance,
    available_actions,
    can_approve,
    complete,
    create_instance,
    submit,
)

VALID_DATA = {"reason": "Family wedding", "days": 3, "start_date": "2026-11-02"}


@pytest.fixture()
def people(tenant, school_roles, make_member):
    return {
        "owner": make_member(tenant.id, "staff", name="owner"),
        "colleague": make_member(tenant.id, "staff", name="colleague"),
        "hod": make_member(tenant.id, "head_of_department", name="hod"),
        "principal": make_member(tenant.id, "principal", name="principal"),
    }


@pytest.fixture()
def draft(tenant, leave_template, people):
    return create_instance(leave_template.id, people["owner"].id, tenant.id, dict(VALID_DATA))


def _actions(user, tenant, instance):
    return [a["action"] for a in available_actions(user.id, tenant.id, instance)]


def _denied_audits():
    return AuditLog.query.filter_by(action="form_instance.denied").all()


class TestCreateInstance:
    def test_create_draft(self, tenant, leave_template, people):
        inst = create_instance(leave_template.id, people["owner"].id, tenant.id, {"reason": "x"})
        assert inst.status == "draft"
        assert inst.current_workflow_step is None
        assert inst.instance_code.startswith("LEA-")
        assert inst.version == 1
        assert inst.workflow_history == []
        assert inst.completion_percentage == 50

    def test_requires_create_permission(self, tenant, leave_template, make_member):
        viewer = make_member(tenant.id, None, name="viewer")
        with pytest.raises(PermissionDeniedError):
            create_instance(leave_template.id, viewer.id, tenant.id)

    def test_template_of_other_tenant(self, tenant, other_tenant, leave_template, make_role, make_member):
        make_role(other_tenant.id, "staff", ["forms.create"])
        outsider = make_member(other_tenant.id, "staff")
        with pytest.raises(NotFoundError):
            create_instance(leave_template.id, outsider.id, other_tenant.id)

    def test_inactive_template_version(self, tenant, leave_template, people):
        template_service.create_version(leave_template.id, tenant.id, {"description": "v2"})
        with pytest.raises(ValidationError):
            create_instance(leave_template.id, people["owner"].id, tenant.id)

    def test_rejects_deep_payload(self, tenant, leave_template, people):
        deep = "leaf"
        for _ in range(12):
            deep = {"n": deep}
        with pytest.raises(ValidationError):
            create_instance(leave_template.id, people["owner"].id, tenant.id, {"meta": deep})


class TestLifecycle:
    def test_full_approval_chain(self, tenant, draft, people):
        result = submit(draft.id, people["owner"].id, tenant.id)
        assert result["new_status"] == "submitted"
        assert result["current_workflow_step"] == "hod_review"

        result = advance(draft.id, people["hod"].id, tenant.id, "approve", "Covered by J. Smith")
        assert result["new_status"] == "in_review"
        assert result["current_workflow_step"] == "principal_review"

        result = advance(draft.id, people["principal"].id, tenant.id, "approve")
        assert result["new_status"] == "approved"
        assert result["current_workflow_step"] is None

        result = complete(draft.id, people["owner"].id, tenant.id)
        assert result["new_status"] == "completed"

        inst = workflow_engine.get_instance(draft.id, tenant.id)
        assert inst.approved_at is not None and inst.completed_at is not None
        history = inst.workflow_history
        assert [h["sequence"] for h in history] == [1, 2, 3, 4]
        assert [h["decision"] for h in history] == ["submitted", "approve", "approve", "completed"]
        assert history[1]["step_name"] == "hod_review"
        assert history[1]["notes"] == "Covered by J. Smith"
        assert history[2]["from_status"] == "in_review"
        assert history[2]["to_status"] == "approved"

    def test_reject_is_terminal(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        result = advance(draft.id, people["hod"].id, tenant.id, "reject", "Exam week")
        assert result["new_status"] == "rejected"
        assert result["current_workflow_step"] is None

        with pytest.raises(InvalidTransitionError):
            advance(draft.id, people["principal"].id, tenant.id, "approve")
        with pytest.raises(InvalidTransitionError):
            complete(draft.id, people["owner"].id, tenant.id)
        assert len(workflow_engine.get_history(draft.id, tenant.id)) == 2

    def test_zero_step_template_auto_approves(self, tenant, school_roles, people):
        tpl = template_service.create_template(
            tenant.id, "Feedback",
            steps=[{"sections": [{"fields": [{"field_id": "comment", "type": "textarea"}]}]}],
        )
        inst = create_instance(tpl.id, people["owner"].id, tenant.id, {"comment": "Great term"})
        result = submit(inst.id, people["owner"].id, tenant.id)

        assert result["new_status"] == "approved"
        assert result["current_workflow_step"] is None
        history = workflow_engine.get_history(inst.id, tenant.id)
        assert len(history) == 1
        assert history[0]["decision"] == "auto_approved"
        assert history[0]["to_status"] == "approved"


class TestSubmit:
    def test_only_owner_submits(self, tenant, draft, people):
        with pytest.raises(PermissionDeniedError):
            submit(draft.id, people["colleague"].id, tenant.id)
        assert workflow_engine.get_instance(draft.id, tenant.id).status == "draft"

    def test_only_drafts(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        with pytest.raises(InvalidTransitionError):
            submit(draft.id, people["owner"].id, tenant.id)

    def test_invalid_form_data(self, tenant, leave_template, people):
        inst = create_instance(leave_template.id, people["owner"].id, tenant.id, {"days": 45})
        with pytest.raises(FormValidationError) as exc:
            submit(inst.id, people["owner"].id, tenant.id)
        assert {e["field_id"] for e in exc.value.errors} == {"reason", "days"}
        reloaded = workflow_engine.get_instance(inst.id, tenant.id)
        assert reloaded.status == "draft"
        assert reloaded.workflow_history == []


class TestAdvance:
    def test_advance_on_draft_is_invalid(self, tenant, draft, people):
        with pytest.raises(InvalidTransitionError):
            advance(draft.id, people["hod"].id, tenant.id, "approve")

    def test_unknown_decision(self, tenant, draft, people):
        with pytest.raises(ValidationError):
            advance(draft.id, people["hod"].id, tenant.id, "maybe")

    def test_wrong_role_is_denied_and_audited(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        with pytest.raises(PermissionDeniedError):
            advance(draft.id, people["colleague"].id, tenant.id, "approve")

        inst = workflow_engine.get_instance(draft.id, tenant.id)
        assert inst.current_workflow_step == "hod_review"
        assert len(inst.workflow_history) == 1
        audits = _denied_audits()
        assert len(audits) == 1
        assert audits[0].diff["attempted"] == "approve"
        assert audits[0].actor_user_id == people["colleague"].id

    def test_principal_cannot_act_on_hod_step(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        inst = workflow_engine.get_instance(draft.id, tenant.id)
        assert can_approve(people["principal"].id, tenant.id, inst) is False
        with pytest.raises(PermissionDeniedError):
            advance(draft.id, people["principal"].id, tenant.id, "approve")

    def test_required_permission_satisfies_step(self, tenant, school_roles, people, make_member):
        tpl = template_service.create_template(
            tenant.id, "Trip consent",
            steps=[{"sections": [{"fields": [{"field_id": "trip", "type": "text"}]}]}],
            workflow_configuration={"steps": [
                {"step_name": "office", "approver_role": "principal",
                 "required_permissions": ["trips.approve"]},
            ]},
        )
        coordinator = make_member(tenant.id, "staff", name="coordinator", granted=["trips.approve"])
        inst = create_instance(tpl.id, people["owner"].id, tenant.id, {"trip": "Museum"})
        submit(inst.id, people["owner"].id, tenant.id)

        assert can_approve(coordinator.id, tenant.id, inst) is True
        result = advance(inst.id, coordinator.id, tenant.id, "approve")
        assert result["new_status"] == "approved"

    def test_denied_permission_blocks_role_wildcard(self, tenant, school_roles, people, make_member):
        tpl = template_service.create_template(
            tenant.id, "Budget",
            steps=[{"sections": [{"fields": [{"field_id": "amount", "type": "currency"}]}]}],
            workflow_configuration={"steps": [
                {"step_name": "finance", "required_permissions": ["forms.approve_budget"]},
            ]},
        )
        blocked = make_member(tenant.id, "principal", name="blocked", denied=["forms.approve_budget"])
        inst = create_instance(tpl.id, people["owner"].id, tenant.id, {"amount": "120.00"})
        submit(inst.id, people["owner"].id, tenant.id)

        assert can_approve(people["principal"].id, tenant.id, inst) is True
        assert can_approve(blocked.id, tenant.id, inst) is False

    def test_inactive_member_cannot_approve(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        membership_service.deactivate_member(people["hod"].id, tenant.id)
        with pytest.raises(PermissionDeniedError):
            advance(draft.id, people["hod"].id, tenant.id, "approve")

    def test_can_approve_matches_gate(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        inst = workflow_engine.get_instance(draft.id, tenant.id)
        verdicts = {name: can_approve(u.id, tenant.id, inst) for name, u in people.items()}
        assert verdicts == {"owner": False, "colleague": False, "hod": True, "principal": False}

        for name, user in people.items():
            if verdicts[name]:
                continue
            with pytest.raises(PermissionDeniedError):
                advance(draft.id, user.id, tenant.id, "approve")
        advance(draft.id, people["hod"].id, tenant.id, "approve")


class TestConditions:
    @pytest.fixture()
    def conditional_template(self, tenant, school_roles):
        return template_service.create_template(
            tenant.id, "Leave (long)",
            steps=[{"sections": [{"fields": [
                {"field_id": "days", "type": "number", "required": True},
            ]}]}],
            workflow_configuration={"steps": [
                {"step_name": "hod_review", "approver_role": "head_of_department"},
                {"step_name": "principal_review", "approver_role": "principal",
                 "conditions": [{"field": "days", "operator": "gt", "value": 5}]},
            ]},
        )

    def test_short_leave_skips_principal(self, tenant, conditional_template, people):
        inst = create_instance(conditional_template.id, people["owner"].id, tenant.id, {"days": 2})
        submit(inst.id, people["owner"].id, tenant.id)
        result = advance(inst.id, people["hod"].id, tenant.id, "approve")
        assert result["new_status"] == "approved"

    def test_long_leave_goes_to_principal(self, tenant, conditional_template, people):
        inst = create_instance(conditional_template.id, people["owner"].id, tenant.id, {"days": 8})
        submit(inst.id, people["owner"].id, tenant.id)
        result = advance(inst.id, people["hod"].id, tenant.id, "approve")
        assert result["current_workflow_step"] == "principal_review"

    def test_malformed_stored_condition_is_unmet(self, tenant, conditional_template, people):
        conditional_template.workflow_configuration = {"steps": [
            {"step_name": "hod_review", "approver_role": "head_of_department"},
            {"step_name": "principal_review", "approver_role": "principal",
             "conditions": [{"field": "days", "operator": "in", "value": "abc"}]},
        ]}
        _db.session.commit()

        inst = create_instance(conditional_template.id, people["owner"].id, tenant.id, {"days": 8})
        submit(inst.id, people["owner"].id, tenant.id)
        result = advance(inst.id, people["hod"].id, tenant.id, "approve")
        assert result["new_status"] == "approved"


class TestMisconfiguredStep:
    def test_missing_role_holds_instance(self, tenant, school_roles, people, caplog):
        tpl = template_service.create_template(
            tenant.id, "Counselling referral",
            steps=[{"sections": [{"fields": [{"field_id": "note", "type": "text"}]}]}],
            workflow_configuration={"steps": [
                {"step_name": "counsellor_review", "approver_role": "counsellor",
                 "required_permissions": ["forms.approve"]},
            ]},
        )
        inst = create_instance(tpl.id, people["owner"].id, tenant.id, {"note": "x"})
        with caplog.at_level("ERROR", logger="formflow.services.workflow_engine"):
            result = submit(inst.id, people["owner"].id, tenant.id)

        assert result["current_workflow_step"] == "counsellor_review"
        assert result["configuration_warnings"][0]["code"] == "WORKFLOW_ROLE_MISSING"
        assert any("counsellor" in r.getMessage() for r in caplog.records)

        for user in people.values():
            assert can_approve(user.id, tenant.id, inst) is False
        with pytest.raises(PermissionDeniedError):
            advance(inst.id, people["principal"].id, tenant.id, "approve")

        held = workflow_engine.get_instance(inst.id, tenant.id)
        assert held.status == "submitted"
        assert held.current_workflow_step == "counsellor_review"


class TestEditing:
    def test_owner_edits_draft(self, tenant, draft, people):
        inst = workflow_engine.update_form_data(draft.id, people["owner"].id, tenant.id, {"days": 4})
        assert inst.form_data["days"] == 4
        assert inst.form_data["reason"] == "Family wedding"
        assert inst.version == 2

    def test_others_cannot_edit_draft(self, tenant, draft, people):
        with pytest.raises(PermissionDeniedError):
            workflow_engine.update_form_data(draft.id, people["hod"].id, tenant.id, {"days": 4})

    def test_edit_rights_pass_to_approver(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        with pytest.raises(PermissionDeniedError):
            workflow_engine.update_form_data(draft.id, people["owner"].id, tenant.id, {"days": 4})
        inst = workflow_engine.update_form_data(draft.id, people["hod"].id, tenant.id, {"days": 2})
        assert inst.form_data["days"] == 2

    def test_terminal_is_immutable(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        advance(draft.id, people["hod"].id, tenant.id, "reject")
        with pytest.raises(InvalidTransitionError):
            workflow_engine.update_form_data(draft.id, people["owner"].id, tenant.id, {"days": 1})

    def test_expected_version_mismatch(self, tenant, draft, people):
        with pytest.raises(StaleStateError) as exc:
            workflow_engine.update_form_data(
                draft.id, people["owner"].id, tenant.id, {"days": 4}, expected_version=7,
            )
        assert exc.value.actual_version == 1


class TestAvailableActions:
    def test_actions_follow_state(self, tenant, draft, people):
        assert _actions(people["owner"], tenant, draft) == ["edit", "submit", "delete"]
        assert _actions(people["hod"], tenant, draft) == []

        submit(draft.id, people["owner"].id, tenant.id)
        inst = workflow_engine.get_instance(draft.id, tenant.id)
        assert _actions(people["hod"], tenant, inst) == ["approve", "reject", "edit"]
        assert _actions(people["owner"], tenant, inst) == []
        assert "delete" in _actions(people["principal"], tenant, inst)


class TestDeleteAndIsolation:
    def test_owner_deletes_draft(self, tenant, draft, people):
        workflow_engine.delete_instance(draft.id, people["owner"].id, tenant.id)
        with pytest.raises(NotFoundError):
            workflow_engine.get_instance(draft.id, tenant.id)
        assert _db.session.get(FormInstance, draft.id).is_deleted

    def test_owner_cannot_delete_submitted(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        with pytest.raises(PermissionDeniedError):
            workflow_engine.delete_instance(draft.id, people["owner"].id, tenant.id)

    def test_cross_tenant_is_not_found(self, tenant, other_tenant, draft, people):
        with pytest.raises(NotFoundError):
            workflow_engine.get_instance(draft.id, other_tenant.id)
        with pytest.raises(NotFoundError):
            advance(draft.id, people["hod"].id, other_tenant.id, "approve")


class TestHistory:
    def test_round_trip_preserves_order(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        advance(draft.id, people["hod"].id, tenant.id, "approve")
        advance(draft.id, people["principal"].id, tenant.id, "approve")
        before = workflow_engine.get_instance(draft.id, tenant.id).to_dict()

        _db.session.expire_all()
        after = workflow_engine.get_instance(draft.id, tenant.id).to_dict()

        assert after["workflow_history"] == before["workflow_history"]
        assert [h["sequence"] for h in after["workflow_history"]] == [1, 2, 3]

    def test_history_is_append_only(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)
        event = FormWorkflowEvent.query.filter_by(instance_id=draft.id).one()
        event.notes = "rewritten"
        with pytest.raises(ValueError):
            _db.session.flush()
        _db.session.rollback()

    def test_unknown_status_and_decision_rejected_by_schema(self, tenant, draft, people):
        table = FormInstance.__table__
        with pytest.raises(IntegrityError):
            _db.session.execute(update(table).where(table.c.id == draft.id).values(status="archived"))
        _db.session.rollback()

        submit(draft.id, people["owner"].id, tenant.id)
        events = FormWorkflowEvent.__table__
        with pytest.raises(IntegrityError):
            _db.session.execute(
                insert(events).values(
                    tenant_id=tenant.id, instance_id=draft.id, sequence=2,
                    decision="escalate", to_status="submitted",
                )
            )
        _db.session.rollback()


class TestOverdue:
    def test_step_past_sla(self, tenant, draft, people):
        submit(draft.id, people["owner"].id, tenant.id)

        soon = datetime.now(timezone.utc) + timedelta(hours=1)
        assert workflow_engine.find_overdue_instances(tenant.id, now=soon) == []

        later = datetime.now(timezone.utc) + timedelta(hours=50)
        overdue = workflow_engine.find_overdue_instances(tenant.id, now=later)
        assert [o["instance_id"] for o in overdue] == [draft.id]
        assert overdue[0]["step_name"] == "hod_review"
        assert overdue[0]["sla_hours"] == 48
        assert overdue[0]["hours_overdue"] >= 1
