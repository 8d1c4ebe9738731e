"""Typed error taxonomy for the approval-routing engine.

Every error carries a machine-readable ``code`` (class attribute) and a
``message`` that is safe to show to the human actor. The HTTP layer maps each
class to a status code in ``approval_routing.main``.

    ApprovalRoutingError
    +-- NoTierMatchedError                 configuration gap, never "auto-approved"
    +-- InvalidTransitionError             terminal state or out-of-order action
    +-- NotEligibleError                   actor not authorised at the current step
    |   +-- DelegationLimitExceededError   delegate bypassed by delegation limits
    +-- ConfigurationError                 tier configuration failed validation
    +-- InvalidDelegationError             malformed or self-referencing delegation
    +-- ConfigurationVersionMismatchError  mutation of a referenced/stale version
    +-- NotFoundError
    +-- LockTimeoutError                   infrastructural, retried with backoff
    +-- StatusProjectionError              cached status drifted from history
"""
from typing import Any


class ApprovalRoutingError(Exception):
    """Base class for all engine errors."""

    code: str = "APPROVAL_ROUTING_ERROR"

    def __init__(self, message: str, **context: Any) -> None:
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "detail": self.message}


class NoTierMatchedError(ApprovalRoutingError):
    code = "NO_TIER_MATCHED"

    def __init__(self, category: str, configuration_id: Any = None) -> None:
        super().__init__(
            f"No approval tier matched this {category} request; "
            "it cannot be routed until an administrator configures a matching tier.",
            category=category,
            configuration_id=configuration_id,
        )
        self.category = category
        self.configuration_id = configuration_id


class InvalidTransitionError(ApprovalRoutingError):
    code = "INVALID_TRANSITION"

    def __init__(self, message: str, status: str | None = None, action: str | None = None) -> None:
        super().__init__(message, status=status, action=action)
        self.status = status
        self.action = action


class NotEligibleError(ApprovalRoutingError):
    code = "NOT_ELIGIBLE"

    def __init__(self, message: str, actor_id: str | None = None, reason: str | None = None) -> None:
        super().__init__(message, actor_id=actor_id, reason=reason)
        self.actor_id = actor_id
        self.reason = reason


class DelegationLimitExceededError(NotEligibleError):
    code = "DELEGATION_LIMIT_EXCEEDED"

    def __init__(self, actor_id: str, reasons: list[str]) -> None:
        super().__init__(
            "Your delegation does not cover this request: " + "; ".join(reasons),
            actor_id=actor_id,
            reason="delegation_limit",
        )
        self.reasons = reasons

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["reasons"] = self.reasons
        return data


class ConfigurationError(ApprovalRoutingError):
    code = "INVALID_CONFIGURATION"


class InvalidDelegationError(ApprovalRoutingError):
    code = "INVALID_DELEGATION"


class ConfigurationVersionMismatchError(ApprovalRoutingError):
    code = "CONFIGURATION_VERSION_MISMATCH"

    def __init__(self, message: str, configuration_id: Any = None, latest_version: int | None = None) -> None:
        super().__init__(message, configuration_id=configuration_id, latest_version=latest_version)
        self.configuration_id = configuration_id
        self.latest_version = latest_version


class NotFoundError(ApprovalRoutingError):
    code = "NOT_FOUND"


class LockTimeoutError(ApprovalRoutingError):
    code = "LOCK_TIMEOUT"


class StatusProjectionError(ApprovalRoutingError):
    code = "STATUS_PROJECTION_MISMATCH"
