"""
Audit trail helpers.

`record_event` adds an event to an open session. `log_event` writes one in
its own short transaction, so events survive the rollback of the operation
they describe.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Callable

from sqlalchemy import delete
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from vpnpool.common import settings
from vpnpool.common.db.models import (
    MAX_EVENT_MESSAGE_LENGTH,
    EventOutcome,
    EventType,
    OperationalEvent,
    utcnow,
)

logger = logging.getLogger(__name__)


def serialize_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Ensure metadata values are JSON-serializable."""
    result = {}
    for k, v in metadata.items():
        try:
            json.dumps(v)
            result[k] = v
        except (TypeError, ValueError):
            result[k] = str(v)
    return result


def record_event(
    db: Session,
    event_type: EventType | str,
    outcome: EventOutcome | str,
    message: str,
    *,
    owner_id: str | None = None,
    session_id: str | None = None,
    metadata: dict[str, Any] | None = None,
    source_ip: str | None = None,
    duration_ms: int | None = None,
    now: datetime | None = None,
) -> OperationalEvent:
    now = now or utcnow()
    event = OperationalEvent(
        event_date=now.strftime("%Y-%m-%d"),
        timestamp=now,
        event_type=EventType(event_type).value,
        outcome=EventOutcome(outcome).value,
        owner_id=owner_id,
        session_id=session_id,
        message=message[:MAX_EVENT_MESSAGE_LENGTH],
        event_metadata=serialize_metadata(metadata or {}),
        source_ip=source_ip,
        duration_ms=duration_ms,
    )
    db.add(event)
    return event


def log_event(
    session_factory: Callable[[], Session],
    event_type: EventType | str,
    outcome: EventOutcome | str,
    message: str,
    **kwargs: Any,
) -> None:
    """Write an event in its own transaction. Failures are logged, not raised."""
    db = session_factory()
    try:
        record_event(db, event_type, outcome, message, **kwargs)
        db.commit()
    except SQLAlchemyError as e:
        logger.error(f"Failed to write audit event {event_type}: {e}")
        db.rollback()
    finally:
        db.close()


def purge_expired_events(
    db: Session,
    retention_days: int | None = None,
    now: datetime | None = None,
) -> int:
    retention_days = retention_days or settings.EVENT_RETENTION_DAYS
    cutoff = (now or utcnow()) - timedelta(days=retention_days)
    result = db.execute(
        delete(OperationalEvent)
        .where(OperationalEvent.timestamp < cutoff)
        .execution_options(synchronize_session=False)
    )
    logger.info(f"Purged {result.rowcount} events older than {cutoff.isoformat()}")
    return result.rowcount
