from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest
from sqlalchemy.exc import IntegrityError

from vpnpool.common import addresses
from vpnpool.common.db.models import AddressAllocation
from vpnpool.common.errors import PoolExhausted

NOW = datetime(2026, 10, 18, 12, 0, tzinfo=timezone.utc)


def test_format_address():
    assert addresses.format_address(2, "10.8.0.0/24") == "10.8.0.2/32"
    assert addresses.format_address(254, "10.8.0.0/24") == "10.8.0.254/32"


def test_pool_slots_defaults():
    slots = addresses.pool_slots()
    assert slots[0] == 2
    assert slots[-1] == 254
    assert len(slots) == 253


@pytest.mark.parametrize(
    "used, expected",
    [
        ([], 2),
        ([2, 3], 4),
        ([3], 2),
        ([2, 3, 4], None),
    ],
)
def test_first_free_slot(used, expected):
    assert addresses.first_free_slot(used, range(2, 5)) == expected


def test_allocate_lowest_free_address(db_session):
    first = addresses.allocate(db_session, "s1", now=NOW)
    second = addresses.allocate(db_session, "s2", now=NOW)

    assert first == "10.8.0.2/32"
    assert second == "10.8.0.3/32"


def test_allocate_reuses_released_address(db_session):
    addresses.allocate(db_session, "s1", now=NOW)
    addresses.allocate(db_session, "s2", now=NOW)

    assert addresses.release(db_session, "10.8.0.2/32", now=NOW) == 1
    assert addresses.allocate(db_session, "s3", now=NOW + timedelta(seconds=1)) == "10.8.0.2/32"


def test_live_addresses_are_unique(db_session):
    handed_out = [addresses.allocate(db_session, f"s{i}", now=NOW) for i in range(10)]

    assert len(set(handed_out)) == 10
    live = addresses.live_allocations(db_session, NOW)
    assert len({a.address for a in live}) == len(live) == 10


def test_allocate_exhausted(db_session):
    slots = range(2, 4)
    addresses.allocate(db_session, "s1", slots=slots, now=NOW)
    addresses.allocate(db_session, "s2", slots=slots, now=NOW)

    with pytest.raises(PoolExhausted) as exc:
        addresses.allocate(db_session, "s3", slots=slots, now=NOW)
    assert exc.value.retry_after == 60
    assert exc.value.status_code == 429


def test_allocate_recovers_from_lost_race(db_session):
    # A concurrent writer already holds slot 2 but our scan missed it
    db_session.add(
        AddressAllocation(
            session_id="other",
            address="10.8.0.2/32",
            slot=2,
            allocated_at=NOW - timedelta(seconds=1),
        )
    )
    db_session.flush()

    with patch.object(addresses, "first_free_slot", side_effect=[2, 3]):
        address = addresses.allocate(db_session, "mine", now=NOW)

    assert address == "10.8.0.3/32"
    live = addresses.live_allocations(db_session, NOW)
    assert sorted((a.session_id, a.slot) for a in live) == [("mine", 3), ("other", 2)]


def test_allocate_gives_up_when_every_slot_is_lost(db_session):
    db_session.add(
        AddressAllocation(
            session_id="other",
            address="10.8.0.2/32",
            slot=2,
            allocated_at=NOW - timedelta(seconds=1),
        )
    )
    db_session.flush()

    with patch.object(addresses, "first_free_slot", return_value=2):
        with pytest.raises(PoolExhausted):
            addresses.allocate(db_session, "mine", slots=range(2, 4), now=NOW)

    live = addresses.live_allocations(db_session, NOW)
    assert [a.session_id for a in live] == ["other"]


def test_live_slot_is_unique(db_session):
    for session_id in ("first", "second"):
        db_session.add(
            AddressAllocation(session_id=session_id, address="10.8.0.2/32", slot=2)
        )
    with pytest.raises(IntegrityError):
        db_session.flush()


def test_released_slot_can_be_held_again(db_session):
    db_session.add(
        AddressAllocation(
            session_id="old", address="10.8.0.2/32", slot=2, expires_at=NOW
        )
    )
    db_session.add(AddressAllocation(session_id="new", address="10.8.0.2/32", slot=2))
    db_session.flush()

    assert [a.session_id for a in addresses.live_allocations(db_session, NOW)] == ["new"]


def test_release_is_idempotent(db_session):
    addresses.allocate(db_session, "s1", now=NOW)

    assert addresses.release(db_session, "10.8.0.2/32", now=NOW) == 1
    assert addresses.release(db_session, "10.8.0.2/32", now=NOW) == 0
    assert addresses.release(db_session, "10.8.0.99/32", now=NOW) == 0
    assert addresses.release(db_session, None, now=NOW) == 0


def test_release_for_session(db_session):
    addresses.allocate(db_session, "s1", now=NOW)
    addresses.allocate(db_session, "s2", now=NOW)

    assert addresses.release_for_session(db_session, "s1", now=NOW) == 1
    assert [a.session_id for a in addresses.live_allocations(db_session, NOW)] == ["s2"]


def test_pool_usage(db_session):
    slots = range(2, 6)
    addresses.allocate(db_session, "s1", slots=slots, now=NOW)
    addresses.allocate(db_session, "s2", slots=slots, now=NOW)

    assert addresses.pool_usage(db_session, slots) == {
        "pool_size": 4,
        "allocated": 2,
        "available": 2,
    }
