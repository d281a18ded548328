"""
AFT-wide exception hierarchy.

All workflow operations raise (or return) these types so that blueprints can
map them to HTTP responses in a single place.

Two families live here:

  * ``WorkflowError`` subclasses are expected, user-caused outcomes of a
    workflow operation (wrong role, stale status, missing signature...).
    The exposed operations in ``aft.services.workflow_service`` return them
    as the second element of an ``(result, error)`` tuple.

  * ``StorageError`` and ``ImmutableRecordError`` signal infrastructure or
    programming problems and always propagate.

Usage:
    from aft.core.exceptions import ConflictError, NotFoundError

    raise NotFoundError(resource="TransferRequest", resource_id=42)
"""


class WorkflowError(Exception):
    """Base class for every domain error a workflow operation can produce.

    Attributes:
        code: Machine-readable error code (see ``aft.utils.errors.E``).
        http_status: Status used by ``error_response``.
        details: Structured payload safe to return to API clients.
    """

    code = "ERR_WORKFLOW"
    http_status = 400

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class NotFoundError(WorkflowError):
    """Raised when a requested resource does not exist.

    Args:
        resource: Human-readable entity name (e.g. "TransferRequest").
        resource_id: The key that was looked up. Logged, not shown to users.
    """

    code = "ERR_NOT_FOUND"
    http_status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class AuthorizationError(WorkflowError):
    """The active role (or the user) may not perform this action right now.

    Args:
        message: Explanation suitable for the end user.
        current_role: The session's active role (None if no role selected).
        required_role: The role that owns the request's current status.
    """

    code = "ERR_FORBIDDEN"
    http_status = 403

    def __init__(
        self,
        message: str,
        current_role: str | None = None,
        required_role: str | None = None,
    ) -> None:
        self.current_role = current_role
        self.required_role = required_role
        details = {}
        if current_role is not None:
            details["current_role"] = current_role
        if required_role is not None:
            details["required_role"] = required_role
        super().__init__(message, details)


# Alias used by the authorization gate's callers.
AccessDenied = AuthorizationError


class ConflictError(WorkflowError):
    """The request's stored status no longer matches what the caller saw.

    Args:
        message: Status-specific explanation (e.g. "already been approved").
        actual_status: The status found in storage.
        expected_status: The status the caller acted on.
    """

    code = "ERR_CONFLICT_STATE"
    http_status = 409

    def __init__(
        self,
        message: str,
        actual_status: str | None = None,
        expected_status: str | None = None,
    ) -> None:
        self.actual_status = actual_status
        self.expected_status = expected_status
        super().__init__(
            message,
            {"actual_status": actual_status, "expected_status": expected_status},
        )


class ValidationError(WorkflowError):
    """Well-formed input that violates a business rule.

    Maps to HTTP 422. ``details`` carries a field-level breakdown.
    """

    code = "ERR_VALIDATION_RULE"
    http_status = 422


class MissingSignatureError(ValidationError):
    """A transition that requires a signature was attempted without one."""

    code = "ERR_SIGNATURE_REQUIRED"

    def __init__(self, step_type: str) -> None:
        self.step_type = step_type
        super().__init__(
            f"A signature is required for step '{step_type}'",
            {"step_type": step_type},
        )


class DuplicateSignatureError(WorkflowError):
    """A signature for (request, step) already exists."""

    code = "ERR_CONFLICT_DUPLICATE"
    http_status = 409

    def __init__(self, request_id: int, step_type: str) -> None:
        self.request_id = request_id
        self.step_type = step_type
        super().__init__(
            f"A {step_type} signature already exists for this request",
            {"step_type": step_type},
        )


class NotificationError(Exception):
    """Delivery of a notification failed. Logged by the dispatcher, never raised to callers."""

    def __init__(self, kind: str, recipient: str | None, reason: str) -> None:
        self.kind = kind
        self.recipient = recipient
        self.reason = reason
        super().__init__(f"{kind} notification to {recipient or '<unresolved>'} failed: {reason}")


class StorageError(Exception):
    """The database refused a write or the transaction could not commit.

    The HTTP layer answers 500 with a "try again" message; the original
    exception is chained and logged with context where it is raised.
    """

    code = "ERR_DATABASE"
    http_status = 500

    def __init__(self, message: str = "Storage failure, please try again", context: dict | None = None) -> None:
        self.context = context or {}
        super().__init__(message)


class ImmutableRecordError(Exception):
    """An UPDATE or DELETE was attempted on an append-only record."""

    def __init__(self, model_name: str, operation: str) -> None:
        self.model_name = model_name
        self.operation = operation
        super().__init__(f"{model_name} records are append-only; {operation} is not allowed")
