"""
Error taxonomy for FocusFlow.

Every failure the core can surface is one of these types. The HTTP
boundary maps them to status codes by type, never by message text.
"""

from typing import Any, Dict, Optional


class FocusFlowError(Exception):
    """Base class for all errors surfaced by the core."""

    status_code: int = 500
    error_type: str = "internal"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.error_type)
        self.message = message or self.error_type

    def to_dict(self) -> Dict[str, Any]:
        """Serialise the error for a response body."""
        return {"error": self.message, "errorType": self.error_type}


class Unauthenticated(FocusFlowError):
    """Caller identity missing or invalid."""

    status_code = 401
    error_type = "unauthenticated"


class NotFound(FocusFlowError):
    """Referenced session, user or group does not exist."""

    status_code = 404
    error_type = "not_found"


class Forbidden(FocusFlowError):
    """Caller does not own (or belong to) the referenced resource."""

    status_code = 403
    error_type = "forbidden"


class InvalidState(FocusFlowError):
    """Operation is not legal in the resource's current state."""

    status_code = 409
    error_type = "invalid_state"


class ValidationError(FocusFlowError):
    """Request payload failed validation at the boundary."""

    status_code = 400
    error_type = "validation"


class ClassificationUnavailable(FocusFlowError):
    """
    External classifier failed or timed out.

    Never surfaced to callers: the classifier catches it and falls back
    to the keyword heuristic. Raised internally so the fallback path has
    a single, typed trigger.
    """

    status_code = 503
    error_type = "classification_unavailable"


class AggregationFailed(FocusFlowError):
    """
    Stats rollup could not be committed after bounded retries.

    This is a partial success: the session is already completed and its
    credited minutes are final. ``result`` carries the finalized stop
    result so callers can still show it.
    """

    status_code = 202
    error_type = "aggregation_failed"

    def __init__(
        self,
        message: str = "",
        result: Optional[Dict[str, Any]] = None,
        user_applied: bool = False,
        member_applied: bool = False,
    ) -> None:
        super().__init__(message)
        self.result = result
        self.user_applied = user_applied  # User rollup landed
        self.member_applied = member_applied  # Member contribution landed, only group totals are stale

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        if self.result is not None:
            body.update(self.result)
        body["statsSynced"] = False
        return body
