"""
Domain exception hierarchy.

Services raise these types; blueprints register handlers against them once
and map them to consistent HTTP status codes.

Usage:
    from refinery.core.exceptions import NotFoundError, InvalidTransition

    raise NotFoundError(resource="Batch", resource_id=42)
    raise InvalidTransition("complete_step", "completed", "batch already completed")
"""


class NotFoundError(Exception):
    """Raised when a batch, flow, flag or template does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Batch", "Flow").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would duplicate a unique value.

    Maps to HTTP 409.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class InvalidTransition(ValidationError):
    """A state-machine operation is not legal from the current status.

    The message names the failed precondition so operators can self-correct,
    e.g. ``Cannot 'start' batch (status=completed): batch already completed``.
    """

    def __init__(self, action: str, current: str, reason: str | None = None) -> None:
        self.action = action
        self.current_status = current
        self.reason = reason
        msg = f"Cannot '{action}' (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"action": action, "status": current, "reason": reason})


class GraphError(ValidationError):
    """A Flow has zero or ambiguous start nodes, a dangling edge, or branches."""


class VersionConflictError(ConflictError):
    """The stored batch version advanced since the caller read it."""

    def __init__(self, batch_id: int, expected: int | None, actual: int | None) -> None:
        super().__init__("Batch", "version", str(actual))
        self.batch_id = batch_id
        self.expected = expected
        self.actual = actual
        self.args = (
            f"Batch id={batch_id} was modified concurrently "
            f"(expected version {expected}, stored version {actual}); reload and retry",
        )


class AnalyticsError(Exception):
    """A derivation failed. Always absorbed by the caller and logged."""


class ImmutableEventError(Exception):
    """Attempt to update or delete an event that is already persisted."""
