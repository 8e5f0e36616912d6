import pytest

from vpnpool.common.errors import (
    CapacityExceeded,
    DeprovisionPending,
    FatalProviderError,
    InvalidTransition,
    OwnerForbidden,
    PoolExhausted,
    ProviderError,
    ProvisioningExhausted,
    SessionNotFound,
    TransientProviderError,
    ValidationError,
    VPNPoolError,
)


@pytest.mark.parametrize(
    "error, status_code, code",
    [
        (ValidationError("bad"), 400, "VALIDATION_ERROR"),
        (OwnerForbidden("no"), 403, "FORBIDDEN"),
        (SessionNotFound("s1"), 404, "NOT_FOUND"),
        (InvalidTransition("s1", "terminated", "active", []), 409, "INVALID_TRANSITION"),
        (CapacityExceeded("full"), 429, "CAPACITY_EXCEEDED"),
        (PoolExhausted("no addresses"), 429, "POOL_EXHAUSTED"),
        (TransientProviderError("busy"), 503, "PROVIDER_TRANSIENT"),
        (FatalProviderError("broken"), 502, "PROVIDER_FATAL"),
        (ProvisioningExhausted(3, "busy", 60), 503, "PROVISION_FAILED"),
        (DeprovisionPending("s1", "slow"), 202, "TERMINATION_IN_PROGRESS"),
    ],
)
def test_error_codes(error, status_code, code):
    assert isinstance(error, VPNPoolError)
    assert error.status_code == status_code
    assert error.code == code
    assert error.as_payload()["code"] == code


def test_payload_without_details():
    assert ValidationError("bad input").as_payload() == {
        "error": "bad input",
        "code": "VALIDATION_ERROR",
    }


def test_payload_includes_retry_after():
    payload = CapacityExceeded("full", retry_after=60).as_payload()
    assert payload["details"] == {"retry_after_seconds": 60}


def test_invalid_transition_payload():
    error = InvalidTransition("s1", "active", "terminated", ["terminating", "idle"])

    assert error.as_payload() == {
        "error": (
            "Cannot transition session s1 from active to terminated. "
            "Valid transitions: idle, terminating"
        ),
        "code": "INVALID_TRANSITION",
        "details": {
            "session_id": "s1",
            "current_status": "active",
            "requested_status": "terminated",
            "allowed_statuses": ["idle", "terminating"],
        },
    }


def test_provisioning_exhausted_payload():
    payload = ProvisioningExhausted(3, "quota exceeded", 60).as_payload()
    assert payload["error"] == "Provisioning failed after 3 attempts: quota exceeded"
    assert payload["details"] == {"attempts": 3, "retry_after_seconds": 60}


def test_provider_errors_share_base():
    assert issubclass(TransientProviderError, ProviderError)
    assert issubclass(FatalProviderError, ProviderError)
    assert issubclass(PoolExhausted, CapacityExceeded)
