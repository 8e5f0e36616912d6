"""
Client address allocation.

Addresses come from a fixed slot range of the VPN subnet. There is no
in-memory cache: every allocation scans the live rows and inserts its pick.
A partial unique index on `slot` keeps two live rows off the same address.
"""

import ipaddress
import logging
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from vpnpool.common import settings
from vpnpool.common.db.models import AddressAllocation, utcnow
from vpnpool.common.errors import PoolExhausted

logger = logging.getLogger(__name__)


def pool_slots(start: int | None = None, end: int | None = None) -> range:
    start = settings.IP_POOL_START if start is None else start
    end = settings.IP_POOL_END if end is None else end
    return range(start, end + 1)


def format_address(slot: int, subnet: str | None = None) -> str:
    network = ipaddress.ip_network(subnet or settings.VPN_SUBNET)
    return f"{network.network_address + slot}/32"


def first_free_slot(used: Iterable[int], slots: Sequence[int]) -> int | None:
    taken = set(used)
    return next((slot for slot in slots if slot not in taken), None)


def _live(now: datetime):
    return or_(
        AddressAllocation.expires_at.is_(None),
        AddressAllocation.expires_at > now,
    )


def live_allocations(
    db: Session, now: datetime | None = None
) -> Sequence[AddressAllocation]:
    now = now or utcnow()
    return db.scalars(
        select(AddressAllocation)
        .where(_live(now))
        .order_by(AddressAllocation.allocated_at, AddressAllocation.id)
    ).all()


def allocate(
    db: Session,
    session_id: str,
    slots: Sequence[int] | None = None,
    subnet: str | None = None,
    now: datetime | None = None,
) -> str:
    """Hand out the lowest free address of the pool to `session_id`.

    Each pick is inserted under a savepoint. The partial unique index on live
    slots rejects a pick a concurrent writer already holds; the slot is then
    skipped and the pool rescanned. Raises PoolExhausted once no slot is left.
    """
    slots = slots if slots is not None else pool_slots()
    now = now or utcnow()
    lost: set[int] = set()

    for _ in slots:
        used = [a.slot for a in live_allocations(db, now)]
        slot = first_free_slot([*used, *lost], slots)
        if slot is None:
            break

        address = format_address(slot, subnet)
        try:
            with db.begin_nested():
                db.add(
                    AddressAllocation(
                        session_id=session_id, address=address, slot=slot, allocated_at=now
                    )
                )
        except IntegrityError:
            logger.warning(f"Lost race for {address}, rescanning")
            lost.add(slot)
            continue

        logger.info(f"Allocated {address} to session {session_id}")
        return address

    raise PoolExhausted(
        f"No free client address in pool ({len(slots)} slots)",
        retry_after=settings.CAPACITY_RETRY_AFTER,
    )


def release(db: Session, address: str | None, now: datetime | None = None) -> int:
    """Expire every live allocation of `address`. Releasing a free address is a no-op."""
    if not address:
        return 0
    now = now or utcnow()
    result = db.execute(
        update(AddressAllocation)
        .where(AddressAllocation.address == address, _live(now))
        .values(expires_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.info(f"Released {address}")
    return result.rowcount


def release_for_session(db: Session, session_id: str, now: datetime | None = None) -> int:
    now = now or utcnow()
    result = db.execute(
        update(AddressAllocation)
        .where(AddressAllocation.session_id == session_id, _live(now))
        .values(expires_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount


def pool_usage(
    db: Session, slots: Sequence[int] | None = None, now: datetime | None = None
) -> dict[str, int]:
    slots = slots if slots is not None else pool_slots()
    in_use = len({a.slot for a in live_allocations(db, now) if a.slot in slots})
    return {
        "pool_size": len(slots),
        "allocated": in_use,
        "available": len(slots) - in_use,
    }
