"""
Back-office exception hierarchy.

Services raise these; blueprints register handlers against them once (see
``munops.blueprints.register_error_handlers``) and get the same HTTP status
everywhere:

    NotFoundError       → 404
    ValidationError     → 400
    TransitionError     → 400
    PermissionDenied    → 403
    ConflictError       → 409
    StateConflictError  → 409

Usage:
    from munops.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Request", resource_id=42)
    raise ValidationError("Unit is already in repair", details={"code": "UN-1"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist within the given scope.

    Used for BOTH genuinely missing records AND cross-tenant lookups, so a
    404 never confirms that another tenant's row exists.

    Args:
        resource: Human-readable entity name (e.g. "Request", "ProductUnit").
        resource_id: The key that was looked up. Included in logs, not in HTTP response.
        tenant_id: Optional — the scope that was enforced. For debug logging only.
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

    @property
    def public_message(self) -> str:
        return f"{self.resource} not found"


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Examples: a unit that is not in the expected status, a reason code that
    does not fit the chosen disposition, insufficient stock.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique value.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateConflictError(Exception):
    """Raised when the target state is already reached or was taken concurrently.

    Examples: signing an already signed request, executing a fulfilled
    request, a unit claimed by another transaction between read and update.
    """


class PermissionDenied(Exception):
    """Raised when the actor lacks the permission an action requires."""

    def __init__(self, user_id: int | None, permission: str, service_id: int | None = None):
        scope_msg = f" for service {service_id}" if service_id else ""
        super().__init__(f"Permission '{permission}' required{scope_msg}")
        self.user_id = user_id
        self.permission = permission
        self.service_id = service_id


class TransitionError(Exception):
    """Raised when a workflow action is not valid from the current state."""

    def __init__(self, entity: str, action: str, current: str, reason: str | None = None):
        msg = f"Cannot '{action}' {entity} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.entity = entity
        self.action = action
        self.current_status = current
