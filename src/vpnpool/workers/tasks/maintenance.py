import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete

from vpnpool.common import audit, settings
from vpnpool.common.celery_app import (
    app,
    CLEANUP_ADDRESS_ALLOCATIONS,
    CLEANUP_EXPIRED_EVENTS,
)
from vpnpool.common.db.connection import make_session
from vpnpool.common.db.models import AddressAllocation

logger = logging.getLogger(__name__)


@app.task(name=CLEANUP_EXPIRED_EVENTS)
def cleanup_expired_events() -> dict[str, int]:
    """Drop audit events past the retention window."""
    logger.info("Cleaning up expired operational events")
    with make_session() as session:
        deleted = audit.purge_expired_events(session, settings.EVENT_RETENTION_DAYS)
    return {"deleted": deleted}


@app.task(name=CLEANUP_ADDRESS_ALLOCATIONS)
def cleanup_address_allocations() -> dict[str, int]:
    """Drop released address allocations older than the event retention window."""
    cutoff = datetime.now(timezone.utc) - timedelta(days=settings.EVENT_RETENTION_DAYS)
    with make_session() as session:
        result = session.execute(
            delete(AddressAllocation)
            .where(
                AddressAllocation.expires_at.is_not(None),
                AddressAllocation.expires_at < cutoff,
            )
            .execution_options(synchronize_session=False)
        )
        deleted = result.rowcount
    logger.info(f"Deleted {deleted} released address allocations")
    return {"deleted": deleted}
