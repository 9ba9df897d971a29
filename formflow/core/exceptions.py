"""
Exception hierarchy for the permission resolver and the workflow engine.

Services raise these types; the app factory registers one handler per
type so every blueprint gets the same HTTP status and JSON envelope.

Usage:
    from formflow.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="FormInstance", resource_id=42, tenant_id=7)
    raise InvalidTransitionError("advance", "draft", reason="Instance has not been submitted")

None of these are retried automatically.
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Security note: Used for BOTH genuinely missing records AND cross-tenant
    access attempts. A 403 would confirm the resource exists; a 404 does not.

    Maps to HTTP 404.
    """

    def __init__(
        self,
        resource: str,
        resource_id: int | str | None = None,
        tenant_id: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.tenant_id = tenant_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        if tenant_id is not None:
            msg += f" (tenant={tenant_id})"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class FormValidationError(ValidationError):
    """Raised by submit when form_data fails the template's field rules.

    ``errors`` is the full per-field list: ``[{"field_id", "message"}, ...]``.
    """

    def __init__(self, errors: list[dict]) -> None:
        self.errors = list(errors)
        super().__init__(
            f"Form data failed validation ({len(self.errors)} error(s))",
            details={"errors": self.errors},
        )


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StaleStateError(ConflictError):
    """Raised when the instance changed after the caller last observed it.

    Either the caller-supplied ``expected_version`` no longer matches, or a
    concurrent transaction committed first and the optimistic-lock UPDATE
    matched zero rows. The caller should reload and decide again.
    """

    def __init__(
        self,
        instance_id: int,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.instance_id = instance_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        Exception.__init__(
            self,
            f"FormInstance id={instance_id} was modified concurrently "
            f"(expected version={expected_version}, current={actual_version})",
        )
        self.resource = "FormInstance"
        self.field = "version"
        self.value = None if expected_version is None else str(expected_version)


class PermissionDeniedError(Exception):
    """Raised when the actor is not allowed to perform the action.

    Maps to HTTP 403.
    """

    def __init__(self, user_id: int, action: str, reason: str | None = None) -> None:
        self.user_id = user_id
        self.action = action
        self.reason = reason
        msg = f"User {user_id} is not permitted to '{action}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTransitionError(Exception):
    """Raised when an action is not allowed from the instance's current state.

    Maps to HTTP 409.
    """

    def __init__(self, action: str, current_status: str, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current_status
        self.reason = reason
        msg = f"Cannot '{action}' form instance (status={current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class WorkflowConfigurationError(Exception):
    """A workflow step that no tenant member can ever act on.

    Never raised out of ``advance``: the engine logs it and attaches
    ``as_warning()`` to ``FormInstance.configuration_warnings`` while the
    instance stays at the step.
    """

    code = "WORKFLOW_ROLE_MISSING"

    def __init__(self, step_name: str, approver_role: str, tenant_id: int) -> None:
        self.step_name = step_name
        self.approver_role = approver_role
        self.tenant_id = tenant_id
        super().__init__(
            f"Workflow step '{step_name}' requires role '{approver_role}' "
            f"which does not exist in tenant {tenant_id}"
        )

    def as_warning(self, detected_at: str | None = None) -> dict:
        return {
            "code": self.code,
            "step_name": self.step_name,
            "approver_role": self.approver_role,
            "message": str(self),
            "detected_at": detected_at,
        }
