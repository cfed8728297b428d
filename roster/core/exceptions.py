"""
Roster-wide exception hierarchy.

Services raise these types (or return their ``to_dict()`` form through the
``(result, None) | (None, error)`` tuple convention) so that every blueprint
can translate them into the same HTTP status codes.

Usage:
    from roster.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Delta", resource_id=42)
    raise ValidationError("justification is required", details={"justification": "empty"})
"""

from roster.utils.errors import E


class RosterError(Exception):
    """Base class: carries an error code and the default HTTP status."""

    code = E.INTERNAL
    status = 500

    def to_dict(self) -> dict:
        return {"error": str(self), "code": self.code, "status": self.status}


class NotFoundError(RosterError):
    """Raised when a delta, request or member does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Delta", "Member").
        resource_id: The key that was looked up.
    """

    code = E.NOT_FOUND
    status = 404

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(RosterError):
    """Raised when input violates a business rule before any mutation.

    Missing justification, malformed rank or date, unknown category.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    code = E.VALIDATION_INVALID
    status = 422

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.details:
            body["details"] = self.details
        return body


class ConflictError(RosterError):
    """Raised when the target is not in a state that allows the operation.

    Already-resolved deltas, non-actionable approval steps, duplicate
    registry ids and lost races all map here. ``current`` carries the
    current state so the caller can refresh without a second round trip.

    Maps to HTTP 409.
    """

    code = E.CONFLICT_STATE
    status = 409

    def __init__(self, message: str, current: dict | None = None, code: str | None = None) -> None:
        self.current = current
        if code:
            self.code = code
        super().__init__(message)

    def to_dict(self) -> dict:
        body = super().to_dict()
        if self.current is not None:
            body["current"] = self.current
        return body


class NotAuthorizedError(RosterError):
    """Raised when the actor is not the designated approver for a step."""

    code = E.FORBIDDEN
    status = 403


class FatalError(RosterError):
    """Underlying store unreachable or failed mid-operation.

    Propagated to the caller: the operation is considered not applied and
    must be retried as a whole.
    """

    code = E.DATABASE
    status = 503


class PartialSuccessWarning(UserWarning):
    """Primary mutation applied but a best-effort side write failed.

    Never raised to callers; collected into the ``warnings`` list of a
    successful result so "change applied, history incomplete" stays
    distinguishable from total failure.
    """

    def __init__(self, step: str, message: str) -> None:
        self.step = step
        self.message = message
        super().__init__(f"{step}: {message}")

    def to_dict(self) -> dict:
        return {"step": self.step, "message": self.message}
