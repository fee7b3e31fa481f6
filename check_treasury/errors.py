"""
Treasury Error Taxonomy

Every failure the engine reports to a caller is one of the kinds below.
Each carries a machine-readable code, a human message, remediation tips and
structured details (field names, conflicting ids, counts) so that a client can
decide whether to retry, force, or ask the user to change input.
"""

from typing import Any, Dict, List, Optional
import logging


class TreasuryError(Exception):
    """Base class for all structured treasury errors"""

    code: str = "TREASURY_ERROR"
    http_status: int = 400
    retryable: bool = False
    default_message: str = "Treasury operation failed"
    default_tips: List[str] = []

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        tips: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message or self.default_message
        self.code = code or type(self).code
        self.tips = list(tips) if tips is not None else list(self.default_tips)
        self.details = dict(details or {})
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        """Structured error body returned to clients"""
        return {
            "ok": False,
            "code": self.code,
            "message": self.message,
            "tips": self.tips,
            "details": self.details,
            "retryable": self.retryable,
        }

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(TreasuryError, ValueError):
    """Malformed or missing input. Raised before anything is mutated."""

    code = "VALIDATION_ERROR"
    http_status = 422
    default_message = "Invalid input"

    def __init__(self, message: Optional[str] = None, field: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        if field:
            details.setdefault("field", field)
        super().__init__(message, details=details, **kwargs)
        self.field = field


class InvalidStateTransition(TreasuryError):
    """A transition was attempted from a state that does not allow it"""

    code = "INVALID_STATE_TRANSITION"
    http_status = 409
    default_tips = ["Reload the check and review its current state before retrying"]

    def __init__(
        self,
        current_state: str,
        requested: str,
        direction: Optional[str] = None,
        message: Optional[str] = None,
        **kwargs
    ):
        details = kwargs.pop("details", None) or {}
        details.update({"current_state": current_state, "requested": requested})
        if direction:
            details["direction"] = direction
        message = message or f"Cannot {requested} a check in state '{current_state}'"
        super().__init__(message, details=details, **kwargs)
        self.current_state = current_state
        self.requested = requested


class Conflict(TreasuryError):
    """Uniqueness violation, range overlap or a concurrent change"""

    code = "CONFLICT"
    http_status = 409
    default_message = "The request conflicts with existing data"


class DependencyBlocked(TreasuryError):
    """Deletion refused because dependents exist; can be forced"""

    code = "DEPENDENCY_BLOCKED"
    http_status = 409
    default_message = "The record has dependents and cannot be deleted"
    default_tips = ["Retry with force=true to void the record instead of deleting it"]

    def __init__(self, message: Optional[str] = None, force_allowed: bool = True, **kwargs):
        details = kwargs.pop("details", None) or {}
        details["force_allowed"] = force_allowed
        super().__init__(message, details=details, **kwargs)
        self.force_allowed = force_allowed


class LockTimeout(TreasuryError):
    """Waiting for an exclusive lease timed out"""

    code = "LOCK_TIMEOUT"
    http_status = 503
    retryable = True
    default_message = "The record is busy, another operation is holding it"
    default_tips = [
        "Retry the whole operation in a few seconds",
        "Avoid submitting the same action twice in parallel",
    ]


class NotFound(TreasuryError):
    """The named entity does not exist"""

    code = "NOT_FOUND"
    http_status = 404

    def __init__(self, entity: str, entity_id: Any, message: Optional[str] = None, **kwargs):
        details = kwargs.pop("details", None) or {}
        details.update({"entity": entity, "id": entity_id})
        super().__init__(message or f"{entity} {entity_id} not found", details=details, **kwargs)


class Unexpected(TreasuryError):
    """Unclassified failure; the internal reason stays in the server log"""

    code = "UNEXPECTED"
    http_status = 500
    default_message = "An unexpected error occurred"
    default_tips = ["Try again; if the problem persists contact support"]


def wrap_unexpected(
    exc: BaseException,
    operation: str,
    logger: Optional[logging.Logger] = None,
    **context: Any
) -> TreasuryError:
    """
    Convert any exception into a TreasuryError.

    TreasuryErrors are returned untouched. Anything else is logged with its
    traceback and the given context, and replaced with an Unexpected error
    that does not expose the internal message.
    """
    if isinstance(exc, TreasuryError):
        return exc

    if logger is not None:
        logger.error(
            f"Unexpected failure during {operation}: {exc!r}",
            exc_info=(type(exc), exc, exc.__traceback__),
            extra={"extra": {"operation": operation, **context}},
        )
    return Unexpected(details={"operation": operation})
