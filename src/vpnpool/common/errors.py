"""
Errors raised by the session lifecycle orchestrator.

Every error carries a stable ``code``, the HTTP status the API layer maps it
to, and an optional ``retry_after`` hint in seconds for errors the caller is
expected to back off from.
"""

from typing import Any, Iterable


class VPNPoolError(Exception):
    """Base class for all orchestrator errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, *, retry_after: int | None = None):
        super().__init__(message)
        self.message = message
        self.retry_after = retry_after

    @property
    def details(self) -> dict[str, Any]:
        return {}

    def as_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.message, "code": self.code}
        details = self.details
        if self.retry_after is not None:
            details = {**details, "retry_after_seconds": self.retry_after}
        if details:
            payload["details"] = details
        return payload


class ValidationError(VPNPoolError):
    """Malformed input. The caller's fault, never retried."""

    code = "VALIDATION_ERROR"
    status_code = 400


class OwnerForbidden(VPNPoolError):
    """Owner is disabled or calling from a source address it may not use."""

    code = "FORBIDDEN"
    status_code = 403


class SessionNotFound(VPNPoolError):
    code = "NOT_FOUND"
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__("Session not found")
        self.session_id = session_id


class InvalidTransition(VPNPoolError):
    """A state change that the session state machine does not allow."""

    code = "INVALID_TRANSITION"
    status_code = 409

    def __init__(
        self,
        session_id: str,
        current: str,
        requested: str,
        allowed: Iterable[str],
    ):
        self.session_id = session_id
        self.current = current
        self.requested = requested
        self.allowed = sorted(allowed)
        super().__init__(
            f"Cannot transition session {session_id} from {current} to {requested}. "
            f"Valid transitions: {', '.join(self.allowed) or 'none'}"
        )

    @property
    def details(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "current_status": self.current,
            "requested_status": self.requested,
            "allowed_statuses": self.allowed,
        }


class CapacityExceeded(VPNPoolError):
    """Owner quota or global ceiling reached; back off and retry later."""

    code = "CAPACITY_EXCEEDED"
    status_code = 429


class PoolExhausted(CapacityExceeded):
    """No free address left in the client address pool."""

    code = "POOL_EXHAUSTED"


class ProviderError(VPNPoolError):
    """Base class for failures reported by the compute provisioner."""

    code = "PROVIDER_ERROR"
    status_code = 502


class TransientProviderError(ProviderError):
    """Service unavailable, throttled, timed out or temporarily out of quota."""

    code = "PROVIDER_TRANSIENT"
    status_code = 503


class FatalProviderError(ProviderError):
    code = "PROVIDER_FATAL"
    status_code = 502


class ProvisioningExhausted(VPNPoolError):
    """Internal retries ran out; the caller should retry after a while."""

    code = "PROVISION_FAILED"
    status_code = 503

    def __init__(self, attempts: int, last_error: str, retry_after: int):
        super().__init__(
            f"Provisioning failed after {attempts} attempts: {last_error}",
            retry_after=retry_after,
        )
        self.attempts = attempts
        self.last_error = last_error

    @property
    def details(self) -> dict[str, Any]:
        return {"attempts": self.attempts}


class DeprovisionPending(VPNPoolError):
    """Deprovisioning did not finish within its ceiling; the session is still terminating."""

    code = "TERMINATION_IN_PROGRESS"
    status_code = 202

    def __init__(self, session_id: str, reason: str, retry_after: int | None = None):
        super().__init__(
            f"Session {session_id} is still terminating: {reason}",
            retry_after=retry_after,
        )
        self.session_id = session_id
        self.reason = reason

    @property
    def details(self) -> dict[str, Any]:
        return {"session_id": self.session_id, "status": "terminating"}
