"""Tests for the capacity ledger."""

from vpnpool.common import ledger
from vpnpool.common.db.models import LEDGER_ID, CapacityLedger


def current(db_session) -> CapacityLedger:
    return ledger.get_ledger(db_session)


def test_ensure_ledger_creates_missing_row(db_session):
    assert db_session.get(CapacityLedger, LEDGER_ID) is None

    row = ledger.ensure_ledger(db_session)
    db_session.commit()

    assert row.id == LEDGER_ID
    assert row.active_sessions == 0
    assert row.active_compute_units == 0
    assert row.version == 1


def test_try_reserve_up_to_ceiling(db_session, ledger_row):
    assert ledger.try_reserve(db_session, 3, 3)
    assert ledger.try_reserve(db_session, 3, 3)
    assert not current(db_session).at_capacity
    assert ledger.try_reserve(db_session, 3, 3)
    assert not ledger.try_reserve(db_session, 3, 3)
    db_session.commit()

    row = current(db_session)
    assert row.active_sessions == 3
    assert row.active_compute_units == 3
    assert row.at_capacity
    assert row.version == 4


def test_try_reserve_respects_tighter_unit_ceiling(db_session, ledger_row):
    assert ledger.try_reserve(db_session, 3, 1)
    assert not ledger.try_reserve(db_session, 3, 1)
    assert current(db_session).active_sessions == 1


def test_release_decrements_and_adds_bytes(db_session, ledger_row):
    ledger.try_reserve(db_session, 3, 3)
    ledger.try_reserve(db_session, 3, 3)

    assert ledger.release(db_session, 1000, 3, 3)
    row = current(db_session)
    assert row.active_sessions == 1
    assert row.active_compute_units == 1
    assert row.total_bytes_transferred == 1000
    assert not row.at_capacity


def test_release_clears_at_capacity(db_session, ledger_row):
    for _ in range(3):
        ledger.try_reserve(db_session, 3, 3)
    assert current(db_session).at_capacity

    ledger.release(db_session, None, 3, 3)
    assert not current(db_session).at_capacity


def test_release_never_goes_negative(db_session, ledger_row):
    assert not ledger.release(db_session, 500, 3, 3)
    row = current(db_session)
    assert row.active_sessions == 0
    assert row.active_compute_units == 0
    assert row.total_bytes_transferred == 500


def test_reserve_release_conserves_counts(db_session, ledger_row):
    reserved = sum(ledger.try_reserve(db_session, 3, 3) for _ in range(5))
    released = sum(ledger.release(db_session, 0, 3, 3) for _ in range(2))

    row = current(db_session)
    assert reserved == 3
    assert released == 2
    assert row.active_sessions == reserved - released
    assert row.active_compute_units == reserved - released


def test_record_failure_bounded_by_attempts(db_session, ledger_row):
    assert not ledger.record_failure(db_session)

    ledger.record_attempt(db_session)
    ledger.record_attempt(db_session)
    assert ledger.record_failure(db_session)
    assert ledger.record_failure(db_session)
    assert not ledger.record_failure(db_session)

    row = current(db_session)
    assert row.total_provisioning_attempts == 2
    assert row.total_provisioning_failures == 2


def test_every_change_bumps_version(db_session, ledger_row):
    ledger.record_attempt(db_session)
    ledger.add_bytes(db_session, 10)
    ledger.try_reserve(db_session, 3, 3)
    ledger.release(db_session, 0, 3, 3)

    assert current(db_session).version == 5


def test_rejection_reason(db_session, ledger_row):
    assert ledger.rejection_reason(db_session, 2, 3) is None

    ledger.try_reserve(db_session, 2, 3)
    ledger.try_reserve(db_session, 2, 3)
    assert ledger.rejection_reason(db_session, 2, 3) == (
        "Maximum concurrent sessions reached (2/2)"
    )
    assert ledger.rejection_reason(db_session, 3, 2) == (
        "Maximum compute units reached (2/2)"
    )


def test_snapshot(db_session, ledger_row):
    ledger.try_reserve(db_session, 3, 3)
    for _ in range(4):
        ledger.record_attempt(db_session)
    ledger.record_failure(db_session)

    snapshot = ledger.snapshot(db_session, 3, 3)
    assert snapshot["active_sessions"] == 1
    assert snapshot["max_sessions"] == 3
    assert snapshot["max_compute_units"] == 3
    assert snapshot["utilization_percent"] == 33.33
    assert snapshot["success_rate_percent"] == 75.0
    assert snapshot["at_capacity"] is False
    assert snapshot["last_updated"]


def test_success_rate_without_attempts():
    row = CapacityLedger(id=LEDGER_ID, total_provisioning_attempts=0, total_provisioning_failures=0)
    assert row.success_rate_percent == 100.0
