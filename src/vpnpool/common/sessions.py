"""
Session store operations.

All state changes go through conditional UPDATE statements so that two
callers racing on the same session cannot both win. Functions take an open
SQLAlchemy session and never commit; the caller owns the transaction.
"""

import logging
from datetime import datetime
from typing import Iterable, Sequence

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from vpnpool.common import settings
from vpnpool.common.db.models import (
    SessionStatus,
    VPNSession,
    allowed_transitions,
    predecessors,
    truncate_error,
    utcnow,
)
from vpnpool.common.errors import InvalidTransition, SessionNotFound, ValidationError

logger = logging.getLogger(__name__)


def validate_idle_timeout(idle_timeout_minutes: int | None) -> int:
    if idle_timeout_minutes is None:
        return settings.DEFAULT_IDLE_TIMEOUT_MINUTES
    if isinstance(idle_timeout_minutes, bool) or not isinstance(
        idle_timeout_minutes, int
    ):
        raise ValidationError("idle_timeout_minutes must be an integer")
    if not (
        settings.MIN_IDLE_TIMEOUT_MINUTES
        <= idle_timeout_minutes
        <= settings.MAX_IDLE_TIMEOUT_MINUTES
    ):
        raise ValidationError(
            f"idle_timeout_minutes must be between {settings.MIN_IDLE_TIMEOUT_MINUTES} "
            f"and {settings.MAX_IDLE_TIMEOUT_MINUTES}"
        )
    return idle_timeout_minutes


def parse_status(status: str | None) -> SessionStatus | None:
    if status is None:
        return None
    try:
        return SessionStatus(status)
    except ValueError:
        valid = ", ".join(s.value for s in SessionStatus)
        raise ValidationError(f"Invalid status filter {status!r}. Valid values: {valid}")


def create_vpn_session(
    db: Session,
    owner_id: str,
    idle_timeout_minutes: int,
    source_ip: str | None = None,
    now: datetime | None = None,
) -> VPNSession:
    """Add a new provisioning session. Flushed, not committed."""
    now = now or utcnow()
    vpn_session = VPNSession(
        owner_id=owner_id,
        status=SessionStatus.PROVISIONING.value,
        idle_timeout_minutes=idle_timeout_minutes,
        provision_attempts=0,
        source_ip=source_ip,
        created_at=now,
        last_activity_at=now,
    )
    db.add(vpn_session)
    db.flush()
    return vpn_session


def get_vpn_session(
    db: Session, session_id: str, owner_id: str | None = None
) -> VPNSession:
    """Load a session, hiding sessions that belong to someone else."""
    vpn_session = db.get(VPNSession, session_id, populate_existing=True)
    if vpn_session is None or (owner_id is not None and vpn_session.owner_id != owner_id):
        raise SessionNotFound(session_id)
    return vpn_session


def transition(
    db: Session,
    session_id: str,
    target: str | SessionStatus,
    *,
    from_statuses: Iterable[str | SessionStatus] | None = None,
    conditions: Iterable = (),
    now: datetime | None = None,
    **values,
) -> VPNSession:
    """Move a session to `target` if it is currently in a legal predecessor state.

    `from_statuses` narrows the accepted predecessors further and
    `conditions` adds extra WHERE clauses. Extra keyword arguments are
    written in the same UPDATE. On a miss the row is reloaded and
    InvalidTransition reports the state that was actually found.
    """
    target = SessionStatus(target)
    sources = predecessors(target)
    if from_statuses is not None:
        sources = sources & {SessionStatus(s) for s in from_statuses}

    if target == SessionStatus.TERMINATED:
        values.setdefault("terminated_at", now or utcnow())
    if "error_message" in values:
        values["error_message"] = truncate_error(values["error_message"])

    result = db.execute(
        update(VPNSession)
        .where(
            VPNSession.id == session_id,
            VPNSession.status.in_([s.value for s in sources]),
            *conditions,
        )
        .values(status=target.value, **values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        current = db.scalar(select(VPNSession.status).where(VPNSession.id == session_id))
        if current is None:
            raise SessionNotFound(session_id)
        raise InvalidTransition(
            session_id,
            current,
            target.value,
            [s.value for s in allowed_transitions(current)],
        )

    logger.debug(f"Session {session_id} -> {target.value}")
    return get_vpn_session(db, session_id)


def increment_attempts(
    db: Session, session_id: str, max_attempts: int | None = None
) -> bool:
    """Count one more provisioning attempt.

    Only matches a session still in provisioning and below the attempt
    ceiling, so a miss means the session was superseded or is out of tries.
    """
    max_attempts = max_attempts or settings.PROVISION_MAX_ATTEMPTS
    result = db.execute(
        update(VPNSession)
        .where(
            VPNSession.id == session_id,
            VPNSession.status == SessionStatus.PROVISIONING.value,
            VPNSession.provision_attempts < max_attempts,
        )
        .values(provision_attempts=VPNSession.provision_attempts + 1)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def touch_activity(db: Session, session_id: str, now: datetime | None = None) -> bool:
    """Refresh last activity for an active session. Never moves it backwards."""
    now = now or utcnow()
    result = db.execute(
        update(VPNSession)
        .where(
            VPNSession.id == session_id,
            VPNSession.status == SessionStatus.ACTIVE.value,
            VPNSession.last_activity_at < now,
        )
        .values(last_activity_at=now)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


def set_error(db: Session, session_id: str, message: str) -> None:
    db.execute(
        update(VPNSession)
        .where(VPNSession.id == session_id)
        .values(error_message=truncate_error(message))
        .execution_options(synchronize_session=False)
    )


def owner_sessions(
    db: Session,
    owner_id: str,
    statuses: Iterable[str | SessionStatus] | None = None,
) -> Sequence[VPNSession]:
    query = select(VPNSession).where(VPNSession.owner_id == owner_id)
    if statuses is not None:
        query = query.where(
            VPNSession.status.in_([SessionStatus(s).value for s in statuses])
        )
    query = query.order_by(VPNSession.created_at.desc())
    return db.scalars(query.execution_options(populate_existing=True)).all()


def count_in_status(
    db: Session,
    statuses: Iterable[str | SessionStatus],
    owner_id: str | None = None,
) -> int:
    query = select(func.count(VPNSession.id)).where(
        VPNSession.status.in_([SessionStatus(s).value for s in statuses])
    )
    if owner_id is not None:
        query = query.where(VPNSession.owner_id == owner_id)
    return db.scalar(query) or 0


def find_idle_sessions(db: Session, now: datetime | None = None) -> list[VPNSession]:
    """Active sessions whose inactivity deadline has passed.

    The timeout is per session, so the filter runs in Python over the
    active set, which is bounded by the capacity ceiling.
    """
    now = now or utcnow()
    active = db.scalars(
        select(VPNSession)
        .where(VPNSession.status == SessionStatus.ACTIVE.value)
        .execution_options(populate_existing=True)
    ).all()
    return [s for s in active if s.is_idle(now)]
