"""
Engine-wide exception hierarchy.

Every service raises one of these types; blueprints never build error
responses for business failures themselves.  ``app.utils.errors``
registers one handler per type so HTTP status codes stay consistent.

Usage:
    from app.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Decision", resource_id=decision_id)
    raise ValidationError("Comment is required", details={"comment": "empty"})
"""


class EngineError(Exception):
    """Common base so callers can catch any engine failure in one clause."""


class NotFoundError(EngineError):
    """Raised when a decision, option, approval or signer id is unknown.

    Args:
        resource: Human-readable entity name (e.g. "Decision", "Signer").
        resource_id: The id that was looked up.
    """

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(EngineError):
    """Raised when input is well-formed but violates a business rule.

    Maps to HTTP 422.  Never retried automatically.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown; keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(EngineError):
    """Raised on an optimistic-concurrency version mismatch.

    The caller must re-read the record and retry; the engine never
    retries on its own.  Maps to HTTP 409.
    """

    def __init__(
        self,
        resource: str,
        resource_id: str,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        self.resource = resource
        self.resource_id = resource_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        msg = f"{resource} id={resource_id} was modified concurrently"
        if expected_version is not None:
            msg += f" (expected version {expected_version}, found {actual_version})"
        super().__init__(msg)


class InvalidTransitionError(EngineError):
    """Raised when an operation is not legal from the record's current status."""

    def __init__(self, resource: str, action: str, current: str, reason: str | None = None) -> None:
        msg = f"Cannot '{action}' {resource} (status={current})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)
        self.resource = resource
        self.action = action
        self.current_status = current
        self.reason = reason


class NotYourTurnError(EngineError):
    """Raised when a signer acts while not in the active ``pending`` state."""

    def __init__(self, approval_id: str, signer_id: str, state: str) -> None:
        self.approval_id = approval_id
        self.signer_id = signer_id
        self.state = state
        super().__init__(
            f"Signer {signer_id!r} cannot act on approval {approval_id} (signer state={state})"
        )


class ExternalServiceError(EngineError):
    """Raised when an export or notification collaborator fails.

    The state change that triggered the collaborator is already committed
    and is never rolled back because of this error.
    """

    def __init__(self, service: str, message: str) -> None:
        self.service = service
        super().__init__(f"{service}: {message}")


class ImmutableRecordError(EngineError):
    """Raised when code tries to update or delete an append-only record."""

    def __init__(self, entity_type: str, entity_id: str | None, operation: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.operation = operation
        super().__init__(f"{entity_type} id={entity_id} is immutable ({operation} blocked)")
