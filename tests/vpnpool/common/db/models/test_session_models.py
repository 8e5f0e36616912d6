from datetime import datetime, timedelta, timezone

import pytest

from vpnpool.common import settings
from vpnpool.common.db.models import (
    SessionStatus,
    VPNSession,
    allowed_transitions,
    can_transition,
    predecessors,
    truncate_error,
)
from vpnpool.common.db.models.sessions import check_transition
from vpnpool.common.errors import InvalidTransition

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def make_session(status=SessionStatus.ACTIVE, idle_minutes=10, inactive_for=None, **kwargs):
    last_activity = NOW - (inactive_for or timedelta())
    return VPNSession(
        id="session-1",
        owner_id="owner-1",
        status=status.value,
        idle_timeout_minutes=idle_minutes,
        provision_attempts=1,
        created_at=NOW - timedelta(hours=1),
        last_activity_at=last_activity,
        **kwargs,
    )


@pytest.mark.parametrize(
    "current, expected",
    [
        (SessionStatus.PROVISIONING, {SessionStatus.ACTIVE, SessionStatus.TERMINATED}),
        (SessionStatus.ACTIVE, {SessionStatus.IDLE, SessionStatus.TERMINATING}),
        (SessionStatus.IDLE, {SessionStatus.TERMINATING}),
        (SessionStatus.TERMINATING, {SessionStatus.TERMINATED}),
        (SessionStatus.TERMINATED, set()),
    ],
)
def test_allowed_transitions(current, expected):
    assert allowed_transitions(current) == expected
    assert allowed_transitions(current.value) == expected


@pytest.mark.parametrize(
    "target, expected",
    [
        (SessionStatus.PROVISIONING, set()),
        (SessionStatus.ACTIVE, {SessionStatus.PROVISIONING}),
        (SessionStatus.IDLE, {SessionStatus.ACTIVE}),
        (SessionStatus.TERMINATING, {SessionStatus.ACTIVE, SessionStatus.IDLE}),
        (SessionStatus.TERMINATED, {SessionStatus.PROVISIONING, SessionStatus.TERMINATING}),
    ],
)
def test_predecessors(target, expected):
    assert predecessors(target) == expected


def test_terminated_is_absorbing():
    for target in SessionStatus:
        assert not can_transition(SessionStatus.TERMINATED, target)


def test_idle_cannot_return_to_active():
    assert not can_transition("idle", "active")


def test_check_transition_reports_current_state():
    with pytest.raises(InvalidTransition) as exc:
        check_transition("session-1", "terminated", "active")

    assert exc.value.current == "terminated"
    assert exc.value.details == {
        "session_id": "session-1",
        "current_status": "terminated",
        "requested_status": "active",
        "allowed_statuses": [],
    }


def test_check_transition_allows_valid_move():
    check_transition("session-1", "provisioning", "active")


def test_truncate_error():
    assert truncate_error(None) is None
    assert truncate_error("short") == "short"
    assert len(truncate_error("x" * 5000)) == settings.MAX_ERROR_MESSAGE_LENGTH


@pytest.mark.parametrize(
    "inactive_for, expected",
    [
        (timedelta(minutes=11), True),
        (timedelta(minutes=10), True),
        (timedelta(minutes=9, seconds=59), False),
        (timedelta(minutes=5), False),
    ],
)
def test_is_idle(inactive_for, expected):
    session = make_session(inactive_for=inactive_for)
    assert session.is_idle(NOW) is expected


@pytest.mark.parametrize(
    "status",
    [
        SessionStatus.PROVISIONING,
        SessionStatus.IDLE,
        SessionStatus.TERMINATING,
    ],
)
def test_is_idle_only_applies_to_active(status):
    session = make_session(status=status, inactive_for=timedelta(days=2))
    assert not session.is_idle(NOW)


def test_idle_timeout_at():
    session = make_session(idle_minutes=30, inactive_for=timedelta(minutes=5))
    assert session.idle_timeout_at == NOW + timedelta(minutes=25)


def test_as_payload_active_session():
    session = make_session(
        client_address="10.8.0.2/32", public_host="203.0.113.10", vpn_port=51820
    )
    payload = session.as_payload()

    assert payload["session_id"] == "session-1"
    assert payload["status"] == "active"
    assert payload["client_address"] == "10.8.0.2/32"
    assert payload["expires_at"] == (NOW + timedelta(minutes=10)).isoformat()
    assert payload["terminated_at"] is None


@pytest.mark.parametrize(
    "status", [SessionStatus.PROVISIONING, SessionStatus.TERMINATING]
)
def test_as_payload_has_no_expiry_outside_live_states(status):
    assert make_session(status=status).as_payload()["expires_at"] is None


def test_duration_ms_of_terminated_session():
    session = make_session(
        status=SessionStatus.TERMINATED, terminated_at=NOW + timedelta(seconds=90)
    )
    assert session.duration_ms == (60 * 60 + 90) * 1000
