"""
Idle session reaper.

Runs on a beat schedule, finds active sessions past their inactivity
deadline and routes each through termination.
"""

import logging
from datetime import datetime

from vpnpool.common import audit
from vpnpool.common.celery_app import app, REAP_IDLE_SESSIONS
from vpnpool.common.db.connection import transaction
from vpnpool.common.db.models import EventOutcome, EventType, SessionStatus, VPNSession
from vpnpool.common.errors import DeprovisionPending, InvalidTransition, VPNPoolError
from vpnpool.common.orchestrator import (
    IDLE_REASON,
    SessionOrchestrator,
    get_orchestrator,
)
from vpnpool.common.sessions import find_idle_sessions, transition

logger = logging.getLogger(__name__)


def mark_idle(orchestrator: SessionOrchestrator, candidate: VPNSession, now: datetime) -> bool:
    """Move a candidate from active to idle unless someone got there first.

    The update also requires last activity to be unchanged since the scan,
    so a session touched in the meantime is left alone.
    """
    try:
        with transaction(orchestrator.session_factory) as db:
            transition(
                db,
                candidate.id,
                SessionStatus.IDLE,
                from_statuses=[SessionStatus.ACTIVE],
                conditions=[VPNSession.last_activity_at == candidate.last_activity_at],
            )
            audit.record_event(
                db,
                EventType.IDLE_DETECTED,
                EventOutcome.SUCCESS,
                f"Session {candidate.id} idle since {candidate.last_activity_at.isoformat()}",
                owner_id=candidate.owner_id,
                session_id=candidate.id,
                metadata={"idle_timeout_minutes": candidate.idle_timeout_minutes},
                now=now,
            )
    except InvalidTransition as e:
        logger.info(f"Skipping session {candidate.id}: now {e.current}")
        return False
    return True


def reap_idle(
    orchestrator: SessionOrchestrator, now: datetime | None = None
) -> dict[str, int]:
    now = now or orchestrator.clock()
    with transaction(orchestrator.session_factory) as db:
        candidates = find_idle_sessions(db, now)

    stats = {"checked": len(candidates), "reclaimed": 0, "skipped": 0, "pending": 0, "errors": 0}
    for candidate in candidates:
        if not mark_idle(orchestrator, candidate, now):
            stats["skipped"] += 1
            continue

        try:
            orchestrator.terminate(candidate.id, reason=IDLE_REASON)
            stats["reclaimed"] += 1
        except DeprovisionPending as e:
            logger.error(f"Idle session {candidate.id} left terminating: {e}")
            stats["pending"] += 1
        except VPNPoolError as e:
            logger.exception(f"Failed to reclaim idle session {candidate.id}: {e}")
            stats["errors"] += 1

    if candidates:
        logger.info(f"Idle sweep: {stats}")
    return stats


@app.task(name=REAP_IDLE_SESSIONS)
def reap_idle_sessions() -> dict[str, int]:
    logger.info("Sweeping for idle sessions")
    return reap_idle(get_orchestrator())
