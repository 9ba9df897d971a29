"""
Tests: Form templates — structure validation, versioning, configuration checks.
"""

import pytest

from formflow.core.exceptions import NotFoundError, ValidationError
from formflow.models.forms import FormTemplate
from formflow.services import template_service
from formflow.services.template_service import next_version_number


def _steps(*fields):
    return [{"step_name": "Main", "sections": [{"fields": list(fields)}]}]


class TestCreateTemplate:
    def test_create(self, tenant, leave_definition):
        steps, workflow = leave_definition
        tpl = template_service.create_template(
            tenant.id, "Leave request", steps=steps, workflow_configuration=workflow,
        )
        assert tpl.version == "1.0"
        assert tpl.is_active is True
        assert [s["step_name"] for s in tpl.workflow_steps] == ["hod_review", "principal_review"]
        assert list(template_service.get_all_fields(tpl)) == ["reason", "days", "start_date"]

    def test_no_workflow_defaults_to_empty_steps(self, tenant):
        tpl = template_service.create_template(tenant.id, "Feedback", steps=_steps({"field_id": "q"}))
        assert tpl.workflow_configuration == {"steps": []}
        assert tpl.has_workflow is False

    def test_duplicate_field_ids(self, tenant):
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(
                tenant.id, "Bad", steps=_steps({"field_id": "a"}, {"field_id": "a"}),
            )
        assert "steps[0].sections[0].fields[1]" in exc.value.details

    def test_unknown_field_type(self, tenant):
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(
                tenant.id, "Bad", steps=_steps({"field_id": "a", "type": "hologram"}),
            )
        assert "steps[0].sections[0].fields[0].type" in exc.value.details

    def test_workflow_step_rules(self, tenant):
        workflow = {"steps": [
            {"step_name": "review", "approver_role": "x"},
            {"step_name": "review", "approver_role": "y", "sla_hours": -1},
            {"step_name": "nobody"},
            {"step_name": "cond", "approver_role": "z",
             "conditions": [{"field": "days", "operator": "between", "value": 1}]},
        ]}
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(
                tenant.id, "Bad", steps=_steps({"field_id": "days"}), workflow_configuration=workflow,
            )
        details = exc.value.details
        assert "workflow_configuration.steps[1].step_name" in details
        assert "workflow_configuration.steps[1].sla_hours" in details
        assert "workflow_configuration.steps[2]" in details
        assert "workflow_configuration.steps[3].conditions[0]" in details

    def test_membership_conditions_need_a_list(self, tenant):
        workflow = {"steps": [
            {"step_name": "review", "approver_role": "x",
             "conditions": [{"field": "days", "operator": "in", "value": "abc"}]},
        ]}
        fields = _steps(
            {"field_id": "days", "type": "number"},
            {"field_id": "cover", "required_if": {"field": "days", "operator": "not_in", "value": 3}},
        )
        with pytest.raises(ValidationError) as exc:
            template_service.create_template(tenant.id, "Bad", steps=fields, workflow_configuration=workflow)
        details = exc.value.details
        assert "workflow_configuration.steps[0].conditions[0].value" in details
        assert "steps[0].sections[0].fields[1].required_if[0].value" in details

    def test_name_required(self, tenant):
        with pytest.raises(ValidationError):
            template_service.create_template(tenant.id, "", steps=[])


class TestGetTemplate:
    def test_cross_tenant_is_not_found(self, tenant, other_tenant, leave_template):
        assert template_service.get_template(leave_template.id, tenant.id) is leave_template
        with pytest.raises(NotFoundError):
            template_service.get_template(leave_template.id, other_tenant.id)

    def test_missing(self, tenant):
        with pytest.raises(NotFoundError):
            template_service.get_template(9999, tenant.id)


class TestVersioning:
    def test_next_version_number(self):
        assert next_version_number("1.0") == "1.1"
        assert next_version_number("1.9") == "1.10"
        assert next_version_number("2") == "2.1"
        assert next_version_number("beta") == "1.1"

    def test_create_version_deactivates_previous(self, tenant, leave_template):
        new = template_service.create_version(leave_template.id, tenant.id, {"description": "Updated policy"})

        assert new.version == "1.1"
        assert new.parent_template_id == leave_template.id
        assert new.is_active is True
        assert leave_template.is_active is False
        assert leave_template.description == ""
        assert [t.id for t in template_service.list_templates(tenant.id)] == [new.id]
        assert FormTemplate.query.count() == 2

    def test_create_version_is_tenant_scoped(self, other_tenant, leave_template):
        with pytest.raises(NotFoundError):
            template_service.create_version(leave_template.id, other_tenant.id, {"description": "x"})
        assert leave_template.is_active is True

    def test_create_version_without_changes(self, tenant, leave_template):
        new = template_service.create_version(leave_template.id, tenant.id)
        assert new.version == "1.1"
        assert new.steps == leave_template.steps

    def test_unsupported_change(self, leave_template):
        with pytest.raises(ValidationError):
            template_service.create_version(leave_template.id, leave_template.tenant_id, {"tenant_id": 99})


class TestConfigurationIssues:
    def test_missing_role_reported(self, tenant, make_role, leave_definition):
        make_role(tenant.id, "head_of_department", [])
        steps, workflow = leave_definition
        tpl = template_service.create_template(
            tenant.id, "Leave", steps=steps, workflow_configuration=workflow,
        )
        issues = template_service.find_configuration_issues(tpl)
        assert [i["step_name"] for i in issues] == ["principal_review"]
        assert issues[0]["approver_role"] == "principal"

    def test_fully_configured(self, leave_template):
        assert template_service.find_configuration_issues(leave_template) == []

    def test_find_workflow_step(self, leave_template):
        step = template_service.find_workflow_step(leave_template, "principal_review")
        assert step["approver_role"] == "principal"
        assert template_service.find_workflow_step(leave_template, "nope") is None
        assert template_service.find_workflow_step(leave_template, None) is None
