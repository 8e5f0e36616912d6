"""
Capacity ledger operations.

The ledger is a single row. Every mutation is one conditional UPDATE that
also bumps the version, so concurrent callers never overshoot the ceilings
or drive counters negative. Functions never commit.
"""

import logging

from sqlalchemy import case, or_, update
from sqlalchemy.orm import Session

from vpnpool.common import settings
from vpnpool.common.db.models import LEDGER_ID, CapacityLedger, utcnow

logger = logging.getLogger(__name__)


def _ceilings(
    max_sessions: int | None, max_compute_units: int | None
) -> tuple[int, int]:
    return (
        max_sessions or settings.MAX_CONCURRENT_SESSIONS,
        max_compute_units or settings.MAX_COMPUTE_UNITS,
    )


def ensure_ledger(db: Session) -> CapacityLedger:
    """Return the ledger row, creating it if the database was not seeded."""
    ledger = db.get(CapacityLedger, LEDGER_ID, populate_existing=True)
    if ledger is None:
        logger.warning("Capacity ledger row missing, creating it")
        ledger = CapacityLedger(id=LEDGER_ID)
        db.add(ledger)
        db.flush()
    return ledger


def get_ledger(db: Session) -> CapacityLedger:
    return ensure_ledger(db)


def rejection_reason(
    db: Session,
    max_sessions: int | None = None,
    max_compute_units: int | None = None,
) -> str | None:
    """Why a new session cannot be admitted right now, or None."""
    max_sessions, max_compute_units = _ceilings(max_sessions, max_compute_units)
    return ensure_ledger(db).can_admit(max_sessions, max_compute_units)


def _apply(db: Session, *conditions, **values) -> bool:
    result = db.execute(
        update(CapacityLedger)
        .where(CapacityLedger.id == LEDGER_ID, *conditions)
        .values(
            version=CapacityLedger.version + 1,
            last_updated=utcnow(),
            **values,
        )
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def try_reserve(
    db: Session,
    max_sessions: int | None = None,
    max_compute_units: int | None = None,
) -> bool:
    """Compare-and-increment one session and one compute unit.

    Returns False without changing anything if either ceiling is reached.
    """
    max_sessions, max_compute_units = _ceilings(max_sessions, max_compute_units)
    ensure_ledger(db)
    reserved = _apply(
        db,
        CapacityLedger.active_sessions < max_sessions,
        CapacityLedger.active_compute_units < max_compute_units,
        active_sessions=CapacityLedger.active_sessions + 1,
        active_compute_units=CapacityLedger.active_compute_units + 1,
        at_capacity=case(
            (
                or_(
                    CapacityLedger.active_sessions + 1 >= max_sessions,
                    CapacityLedger.active_compute_units + 1 >= max_compute_units,
                ),
                True,
            ),
            else_=False,
        ),
    )
    if not reserved:
        logger.info("Capacity ledger at ceiling, reservation refused")
    return reserved


def release(
    db: Session,
    bytes_transferred: int | None = None,
    max_sessions: int | None = None,
    max_compute_units: int | None = None,
) -> bool:
    """Give back one session and one compute unit, adding transferred bytes."""
    max_sessions, max_compute_units = _ceilings(max_sessions, max_compute_units)
    ensure_ledger(db)
    released = _apply(
        db,
        CapacityLedger.active_sessions > 0,
        CapacityLedger.active_compute_units > 0,
        active_sessions=CapacityLedger.active_sessions - 1,
        active_compute_units=CapacityLedger.active_compute_units - 1,
        total_bytes_transferred=CapacityLedger.total_bytes_transferred
        + (bytes_transferred or 0),
        at_capacity=case(
            (
                or_(
                    CapacityLedger.active_sessions - 1 >= max_sessions,
                    CapacityLedger.active_compute_units - 1 >= max_compute_units,
                ),
                True,
            ),
            else_=False,
        ),
    )
    if not released:
        logger.error("Capacity ledger release with no active sessions recorded")
        if bytes_transferred:
            add_bytes(db, bytes_transferred)
    return released


def add_bytes(db: Session, bytes_transferred: int) -> bool:
    ensure_ledger(db)
    return _apply(
        db,
        total_bytes_transferred=CapacityLedger.total_bytes_transferred
        + bytes_transferred,
    )


def record_attempt(db: Session) -> bool:
    ensure_ledger(db)
    return _apply(
        db,
        total_provisioning_attempts=CapacityLedger.total_provisioning_attempts + 1,
    )


def record_failure(db: Session) -> bool:
    """Count a failed provisioning. Never lets failures exceed attempts."""
    ensure_ledger(db)
    recorded = _apply(
        db,
        CapacityLedger.total_provisioning_failures
        < CapacityLedger.total_provisioning_attempts,
        total_provisioning_failures=CapacityLedger.total_provisioning_failures + 1,
    )
    if not recorded:
        logger.warning("Provisioning failure recorded without a matching attempt")
    return recorded


def snapshot(
    db: Session,
    max_sessions: int | None = None,
    max_compute_units: int | None = None,
):
    max_sessions, max_compute_units = _ceilings(max_sessions, max_compute_units)
    return ensure_ledger(db).as_payload(max_sessions, max_compute_units)
