"""
Session lifecycle orchestration.

`SessionOrchestrator` admits requests, drives provisioning through the retry
loop, activates sessions against the capacity ledger and tears them down.
Every step runs in its own short transaction; the only serialization point
is the per-owner admission sequence bumped at the start of `admit`.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime
from functools import partial
from typing import Any, Callable, NoReturn

from sqlalchemy import update
from sqlalchemy.orm import Session

from vpnpool.common import addresses, audit, ledger, settings
from vpnpool.common.db.connection import get_session_factory, transaction
from vpnpool.common.db.models import (
    EventOutcome,
    EventType,
    KeyRole,
    Owner,
    SessionStatus,
    VPNSession,
    utcnow,
)
from vpnpool.common.errors import (
    CapacityExceeded,
    DeprovisionPending,
    FatalProviderError,
    InvalidTransition,
    OwnerForbidden,
    ProviderError,
    ProvisioningExhausted,
    SessionNotFound,
    ValidationError,
    VPNPoolError,
)
from vpnpool.common.providers.compute import (
    ComputeProvisioner,
    DockerProvisioner,
    EndpointRef,
    Health,
    ProvisionParams,
)
from vpnpool.common.providers.keys import KeyIssuer
from vpnpool.common.providers.publisher import ConfigPublisher
from vpnpool.common.retry import Outcome, RetryPolicy, is_transient, run_with_retry
from vpnpool.common.sessions import (
    count_in_status,
    create_vpn_session,
    get_vpn_session,
    increment_attempts,
    owner_sessions,
    parse_status,
    set_error,
    touch_activity,
    transition,
    validate_idle_timeout,
)

logger = logging.getLogger(__name__)

SUPERSEDED_MESSAGE = "superseded by new request"
IDLE_REASON = "idle timeout"


@dataclass
class ProvisionResult:
    session_id: str
    status: str
    client_address: str | None
    public_host: str | None
    vpn_port: int | None
    provision_attempts: int
    expires_at: str | None
    config_url: str | None = None
    config_expires_at: str | None = None
    superseded: list[str] = field(default_factory=list)

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class TerminationResult:
    session_id: str
    status: str
    reason: str
    bytes_transferred: int | None
    duration_ms: int

    def as_payload(self) -> dict[str, Any]:
        return asdict(self)


class SessionOrchestrator:
    def __init__(
        self,
        provisioner: ComputeProvisioner,
        session_factory: Callable[[], Session] | None = None,
        key_issuer: KeyIssuer | None = None,
        publisher: ConfigPublisher | None = None,
        policy: RetryPolicy | None = None,
        classifier: Callable[[Exception], bool] = is_transient,
        sleep: Callable[[float], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
        deprovision_timeout: float | None = None,
        status_timeout: float | None = None,
        max_sessions: int | None = None,
        max_compute_units: int | None = None,
        executor: ThreadPoolExecutor | None = None,
    ):
        self.provisioner = provisioner
        self.session_factory = session_factory or get_session_factory()
        self.keys = key_issuer or KeyIssuer(self.session_factory)
        self.publisher = publisher or ConfigPublisher()
        self.policy = policy or RetryPolicy()
        self.classifier = classifier
        self.sleep = sleep
        self.clock = clock
        self.deprovision_timeout = deprovision_timeout or settings.DEPROVISION_TIMEOUT
        self.status_timeout = status_timeout or settings.STATUS_TIMEOUT
        self.max_sessions = max_sessions or settings.MAX_CONCURRENT_SESSIONS
        self.max_compute_units = max_compute_units or settings.MAX_COMPUTE_UNITS
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max(2, self.max_compute_units * 2),
            thread_name_prefix="vpn-provider",
        )

    def audit_event(self, event_type: EventType, outcome: EventOutcome, message: str, **kwargs):
        audit.log_event(
            self.session_factory, event_type, outcome, message, now=self.clock(), **kwargs
        )

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def start(
        self,
        owner_id: str,
        idle_timeout_minutes: int | None = None,
        source_ip: str | None = None,
    ) -> ProvisionResult:
        """Admit a request and drive it to an active session."""
        vpn_session, superseded = self.admit(owner_id, idle_timeout_minutes, source_ip)
        result = self.provision(vpn_session.id)
        result.superseded = superseded
        return result

    def admit(
        self,
        owner_id: str,
        idle_timeout_minutes: int | None = None,
        source_ip: str | None = None,
    ) -> tuple[VPNSession, list[str]]:
        """Run the admission checks and create a provisioning session.

        Returns the new session and the ids of the sessions it superseded.
        """
        now = self.clock()
        try:
            idle_timeout = validate_idle_timeout(idle_timeout_minutes)
            with transaction(self.session_factory) as db:
                owner = self._lock_owner(db, owner_id)
                self._check_owner(owner, source_ip)
                self._check_quota(db, owner)

                reason = ledger.rejection_reason(
                    db, self.max_sessions, self.max_compute_units
                )
                if reason:
                    raise CapacityExceeded(
                        reason, retry_after=settings.CAPACITY_RETRY_AFTER
                    )

                superseded = self._supersede(db, owner_id, now)
                vpn_session = create_vpn_session(
                    db, owner_id, idle_timeout, source_ip=source_ip, now=now
                )
                vpn_session.client_address = addresses.allocate(
                    db, vpn_session.id, now=now
                )
                audit.record_event(
                    db,
                    EventType.PROVISION_START,
                    EventOutcome.SUCCESS,
                    f"Admitted session {vpn_session.id}",
                    owner_id=owner_id,
                    session_id=vpn_session.id,
                    source_ip=source_ip,
                    metadata={
                        "idle_timeout_minutes": idle_timeout,
                        "client_address": vpn_session.client_address,
                        "superseded": [s.id for s in superseded],
                    },
                    now=now,
                )
        except ValidationError as e:
            self.audit_event(
                EventType.PROVISION_FAILURE,
                EventOutcome.FAILURE,
                f"Admission rejected: {e.message}",
                owner_id=owner_id,
                source_ip=source_ip,
                metadata={"idle_timeout_minutes": idle_timeout_minutes},
            )
            raise
        except OwnerForbidden as e:
            self.audit_event(
                EventType.AUTH_FAILURE,
                EventOutcome.FAILURE,
                e.message,
                owner_id=owner_id,
                source_ip=source_ip,
            )
            raise
        except CapacityExceeded as e:
            self.audit_event(
                EventType.CAPACITY_REJECTED,
                EventOutcome.WARNING,
                e.message,
                owner_id=owner_id,
                source_ip=source_ip,
            )
            raise

        for old in superseded:
            self._discard_artifacts(old.id)
        logger.info(
            f"Admitted session {vpn_session.id} for owner {owner_id} "
            f"(superseded {len(superseded)})"
        )
        return vpn_session, [s.id for s in superseded]

    def _lock_owner(self, db: Session, owner_id: str) -> Owner:
        """Bump the owner's admission sequence, serializing its admissions."""
        result = db.execute(
            update(Owner)
            .where(Owner.id == owner_id)
            .values(admission_seq=Owner.admission_seq + 1)
            .execution_options(synchronize_session=False)
        )
        owner = db.get(Owner, owner_id, populate_existing=True)
        if result.rowcount != 1 or owner is None:
            raise OwnerForbidden("Unknown owner")
        return owner

    def _check_owner(self, owner: Owner, source_ip: str | None) -> None:
        if not owner.is_active:
            raise OwnerForbidden("Owner account is disabled")
        if not owner.is_ip_allowed(source_ip):
            raise OwnerForbidden(f"Source address {source_ip} is not allowed")

    def _check_quota(self, db: Session, owner: Owner) -> None:
        """Provisioning sessions do not count: this admission supersedes them."""
        holding = owner_sessions(db, owner.id, [SessionStatus.ACTIVE, SessionStatus.IDLE])
        if any(s.status == SessionStatus.ACTIVE.value for s in holding):
            raise CapacityExceeded(
                "Owner already has an active session",
                retry_after=settings.CAPACITY_RETRY_AFTER,
            )
        if len(holding) >= owner.max_concurrent_sessions:
            raise CapacityExceeded(
                "Owner session quota reached "
                f"({len(holding)}/{owner.max_concurrent_sessions})",
                retry_after=settings.CAPACITY_RETRY_AFTER,
            )

    def supersede(self, owner_id: str) -> list[str]:
        """Terminate every provisioning session of `owner_id`."""
        with transaction(self.session_factory) as db:
            superseded = self._supersede(db, owner_id, self.clock())
        for old in superseded:
            self._discard_artifacts(old.id)
        return [s.id for s in superseded]

    def _supersede(self, db: Session, owner_id: str, now: datetime) -> list[VPNSession]:
        superseded = []
        for pending in owner_sessions(db, owner_id, [SessionStatus.PROVISIONING]):
            try:
                old = transition(
                    db,
                    pending.id,
                    SessionStatus.TERMINATED,
                    from_statuses=[SessionStatus.PROVISIONING],
                    now=now,
                    error_message=SUPERSEDED_MESSAGE,
                )
            except InvalidTransition as e:
                # Activated between the quota check and now
                raise CapacityExceeded(
                    f"Owner already has an active session ({e.current})",
                    retry_after=settings.CAPACITY_RETRY_AFTER,
                )
            addresses.release_for_session(db, old.id, now=now)
            audit.record_event(
                db,
                EventType.PROVISION_SUPERSEDED,
                EventOutcome.WARNING,
                f"Session {old.id} {SUPERSEDED_MESSAGE}",
                owner_id=owner_id,
                session_id=old.id,
                now=now,
            )
            logger.info(f"Session {old.id} {SUPERSEDED_MESSAGE}")
            superseded.append(old)
        return superseded

    # ------------------------------------------------------------------
    # Provisioning
    # ------------------------------------------------------------------

    def provision(self, session_id: str) -> ProvisionResult:
        """Start the compute unit for an admitted session and activate it."""
        with transaction(self.session_factory) as db:
            vpn_session = get_vpn_session(db, session_id)
        vpn_session.check_transition(SessionStatus.ACTIVE)

        owner_id = vpn_session.owner_id
        client_public_key, client_handle = self.keys.issue_key_pair(
            session_id, KeyRole.CLIENT
        )
        server_public_key, server_handle = self.keys.issue_key_pair(
            session_id, KeyRole.SERVER
        )
        params = ProvisionParams(
            client_address=vpn_session.client_address or "",
            server_private_key=self.keys.reveal(server_handle),
            client_public_key=client_public_key,
            labels={"vpn-owner": owner_id},
        )

        def before_attempt(attempt: int) -> bool:
            with transaction(self.session_factory) as db:
                counted = increment_attempts(db, session_id, self.policy.max_attempts)
                if counted:
                    ledger.record_attempt(db)
            return counted

        kwargs = {"sleep": self.sleep} if self.sleep is not None else {}
        result = run_with_retry(
            lambda attempt: self.provisioner.start(session_id, params),
            policy=self.policy,
            classifier=self.classifier,
            before_attempt=before_attempt,
            **kwargs,
        )

        if result.outcome == Outcome.ABORTED:
            self._discard_artifacts(session_id)
            self._raise_current_state(session_id, SessionStatus.ACTIVE)

        if result.outcome != Outcome.SUCCEEDED:
            self._fail_provisioning(session_id, owner_id, result)

        endpoint = result.value
        self._activate(session_id, owner_id, endpoint)

        published = None
        try:
            published = self.publisher.publish(
                session_id,
                self.keys.reveal(client_handle),
                params.client_address,
                server_public_key,
                endpoint,
            )
            self.audit_event(
                EventType.CONFIG_GENERATED,
                EventOutcome.SUCCESS,
                f"Client config published for session {session_id}",
                owner_id=owner_id,
                session_id=session_id,
            )
        except (OSError, ValueError) as e:
            logger.error(f"Failed to publish config for session {session_id}: {e}")
            with transaction(self.session_factory) as db:
                set_error(db, session_id, f"Config publishing failed: {e}")

        with transaction(self.session_factory) as db:
            active = get_vpn_session(db, session_id)
        return ProvisionResult(
            session_id=session_id,
            status=active.status,
            client_address=active.client_address,
            public_host=active.public_host,
            vpn_port=active.vpn_port,
            provision_attempts=active.provision_attempts,
            expires_at=active.idle_timeout_at.isoformat(),
            config_url=published and published.url,
            config_expires_at=published and published.expires_at.isoformat(),
        )

    def _activate(self, session_id: str, owner_id: str, endpoint: EndpointRef) -> None:
        """Attach the endpoint, flip to active and take a ledger slot atomically.

        If the session was superseded meanwhile or the ledger filled up, the
        new compute unit is stopped and the session ends terminated.
        """
        now = self.clock()
        try:
            with transaction(self.session_factory) as db:
                vpn_session = transition(
                    db,
                    session_id,
                    SessionStatus.ACTIVE,
                    compute_ref=endpoint.compute_ref,
                    public_host=endpoint.public_host,
                    vpn_port=endpoint.port,
                    last_activity_at=now,
                )
                if not ledger.try_reserve(db, self.max_sessions, self.max_compute_units):
                    raise CapacityExceeded(
                        "Capacity ceiling reached while provisioning",
                        retry_after=settings.CAPACITY_RETRY_AFTER,
                    )
                db.execute(
                    update(Owner)
                    .where(Owner.id == owner_id)
                    .values(
                        total_sessions_created=Owner.total_sessions_created + 1,
                        last_session_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                audit.record_event(
                    db,
                    EventType.PROVISION_SUCCESS,
                    EventOutcome.SUCCESS,
                    f"Session {session_id} active at {endpoint.public_host}:{endpoint.port}",
                    owner_id=owner_id,
                    session_id=session_id,
                    duration_ms=vpn_session.duration_ms,
                    metadata={"attempts": vpn_session.provision_attempts},
                    now=now,
                )
        except InvalidTransition:
            logger.warning(f"Session {session_id} superseded after its unit started")
            self._stop_orphan(endpoint)
            self._discard_artifacts(session_id)
            raise
        except CapacityExceeded as e:
            logger.warning(f"Session {session_id} lost its capacity slot")
            self._stop_orphan(endpoint)
            with transaction(self.session_factory) as db:
                transition(
                    db,
                    session_id,
                    SessionStatus.TERMINATED,
                    from_statuses=[SessionStatus.PROVISIONING],
                    now=now,
                    error_message=e.message,
                )
                addresses.release_for_session(db, session_id, now=now)
            self._discard_artifacts(session_id)
            self.audit_event(
                EventType.CAPACITY_REJECTED,
                EventOutcome.FAILURE,
                e.message,
                owner_id=owner_id,
                session_id=session_id,
            )
            raise

    def _fail_provisioning(self, session_id: str, owner_id: str, result) -> NoReturn:
        if result.outcome == Outcome.EXHAUSTED:
            error: VPNPoolError = ProvisioningExhausted(
                result.attempts, result.last_error, settings.PROVISION_RETRY_AFTER
            )
        elif isinstance(result.error, FatalProviderError):
            error = result.error
        else:
            error = FatalProviderError(result.last_error)

        now = self.clock()
        try:
            with transaction(self.session_factory) as db:
                transition(
                    db,
                    session_id,
                    SessionStatus.TERMINATED,
                    from_statuses=[SessionStatus.PROVISIONING],
                    now=now,
                    error_message=error.message,
                )
                addresses.release_for_session(db, session_id, now=now)
                ledger.record_failure(db)
        except InvalidTransition:
            logger.info(f"Session {session_id} was superseded while failing")
        self._discard_artifacts(session_id)

        self.audit_event(
            EventType.PROVISION_FAILURE,
            EventOutcome.FAILURE,
            error.message,
            owner_id=owner_id,
            session_id=session_id,
            metadata={"attempts": result.attempts, "outcome": result.outcome.value},
        )
        logger.error(f"Provisioning of session {session_id} failed: {error.message}")
        raise error

    def _stop_orphan(self, endpoint: EndpointRef) -> None:
        future = self.executor.submit(self.provisioner.stop, endpoint.compute_ref)
        try:
            future.result(timeout=self.deprovision_timeout)
        except (FuturesTimeout, ProviderError) as e:
            logger.error(
                f"Orphaned compute unit {endpoint.compute_ref} could not be stopped, "
                f"needs operator follow-up: {e}"
            )

    def _discard_artifacts(self, session_id: str) -> None:
        self.keys.discard(session_id)
        self.publisher.expire(session_id)

    def _raise_current_state(self, session_id: str, requested: SessionStatus) -> NoReturn:
        with transaction(self.session_factory) as db:
            vpn_session = get_vpn_session(db, session_id)
        vpn_session.check_transition(requested)
        raise InvalidTransition(
            session_id,
            vpn_session.status,
            requested.value,
            [s.value for s in vpn_session.allowed_transitions()],
        )

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(
        self,
        session_id: str,
        reason: str = "user request",
        owner_id: str | None = None,
        source_ip: str | None = None,
    ) -> TerminationResult:
        try:
            with transaction(self.session_factory) as db:
                get_vpn_session(db, session_id, owner_id)
                vpn_session = transition(
                    db,
                    session_id,
                    SessionStatus.TERMINATING,
                    from_statuses=[SessionStatus.ACTIVE, SessionStatus.IDLE],
                )
                audit.record_event(
                    db,
                    EventType.STOP_START,
                    EventOutcome.SUCCESS,
                    f"Stopping session {session_id}: {reason}",
                    owner_id=vpn_session.owner_id,
                    session_id=session_id,
                    source_ip=source_ip,
                    now=self.clock(),
                )
        except (SessionNotFound, InvalidTransition) as e:
            self.audit_event(
                EventType.STOP_FAILURE,
                EventOutcome.FAILURE,
                f"Stop of session {session_id} rejected: {e.message}",
                owner_id=owner_id,
                session_id=session_id,
                source_ip=source_ip,
                metadata={"reason": reason},
            )
            raise

        if not vpn_session.compute_ref:
            return self._finish_termination(session_id, reason, None)

        future = self.executor.submit(self._deprovision, vpn_session.compute_ref)
        try:
            bytes_transferred = future.result(timeout=self.deprovision_timeout)
        except FuturesTimeout:
            future.add_done_callback(partial(self._finish_late, session_id, reason))
            self._deprovision_stuck(
                vpn_session, f"deprovisioning exceeded {self.deprovision_timeout:g}s"
            )
            raise DeprovisionPending(session_id, "deprovisioning timed out")
        except ProviderError as e:
            self._deprovision_stuck(vpn_session, str(e))
            raise DeprovisionPending(
                session_id, str(e), retry_after=settings.PROVISION_RETRY_AFTER
            )
        return self._finish_termination(session_id, reason, bytes_transferred)

    def _deprovision(self, compute_ref: str) -> int | None:
        bytes_transferred = self.provisioner.bytes_transferred(compute_ref)
        self.provisioner.stop(compute_ref)
        return bytes_transferred

    def _deprovision_stuck(self, vpn_session: VPNSession, reason: str) -> None:
        logger.error(
            f"Session {vpn_session.id} stuck in terminating ({reason}); "
            f"compute unit {vpn_session.compute_ref} needs operator follow-up"
        )
        with transaction(self.session_factory) as db:
            set_error(db, vpn_session.id, f"Deprovisioning incomplete: {reason}")
        self.audit_event(
            EventType.STOP_FAILURE,
            EventOutcome.WARNING,
            f"Deprovisioning incomplete: {reason}",
            owner_id=vpn_session.owner_id,
            session_id=vpn_session.id,
        )

    def _finish_late(self, session_id: str, reason: str, future: Future) -> None:
        if future.exception() is not None:
            logger.error(
                f"Late deprovisioning of session {session_id} failed: {future.exception()}"
            )
            return
        try:
            self._finish_termination(session_id, reason, future.result())
        except VPNPoolError as e:
            logger.error(f"Could not finish termination of session {session_id}: {e}")

    def _finish_termination(
        self, session_id: str, reason: str, bytes_transferred: int | None
    ) -> TerminationResult:
        now = self.clock()
        with transaction(self.session_factory) as db:
            vpn_session = transition(
                db,
                session_id,
                SessionStatus.TERMINATED,
                from_statuses=[SessionStatus.TERMINATING],
                now=now,
                bytes_transferred=bytes_transferred,
            )
            addresses.release(db, vpn_session.client_address, now=now)
            ledger.release(
                db, bytes_transferred, self.max_sessions, self.max_compute_units
            )
            event_type = (
                EventType.AUTO_SHUTDOWN if reason == IDLE_REASON else EventType.STOP_SUCCESS
            )
            audit.record_event(
                db,
                event_type,
                EventOutcome.SUCCESS,
                f"Session {session_id} terminated: {reason}",
                owner_id=vpn_session.owner_id,
                session_id=session_id,
                duration_ms=vpn_session.duration_ms,
                metadata={"bytes_transferred": bytes_transferred, "reason": reason},
                now=now,
            )

        self._discard_artifacts(session_id)
        logger.info(f"Session {session_id} terminated ({reason})")
        return TerminationResult(
            session_id=session_id,
            status=vpn_session.status,
            reason=reason,
            bytes_transferred=bytes_transferred,
            duration_ms=vpn_session.duration_ms,
        )

    # ------------------------------------------------------------------
    # Queries and activity
    # ------------------------------------------------------------------

    def status(self, session_id: str, owner_id: str | None = None) -> dict[str, Any]:
        with transaction(self.session_factory) as db:
            vpn_session = get_vpn_session(db, session_id, owner_id)

        health = None
        if vpn_session.status == SessionStatus.ACTIVE.value and vpn_session.compute_ref:
            health = self._probe(vpn_session.compute_ref)
            if health == Health.HEALTHY and self.record_activity(session_id):
                with transaction(self.session_factory) as db:
                    vpn_session = get_vpn_session(db, session_id)

        payload: dict[str, Any] = dict(vpn_session.as_payload())
        payload["health"] = health and health.value
        return payload

    def _probe(self, compute_ref: str) -> Health:
        future = self.executor.submit(self.provisioner.get_status, compute_ref)
        try:
            return future.result(timeout=self.status_timeout)
        except FuturesTimeout:
            logger.warning(f"Health probe for {compute_ref} timed out")
        except ProviderError as e:
            logger.warning(f"Health probe for {compute_ref} failed: {e}")
        return Health.UNKNOWN

    def list_sessions(self, owner_id: str, status: str | None = None) -> dict[str, Any]:
        status_filter = parse_status(status)
        with transaction(self.session_factory) as db:
            sessions = owner_sessions(
                db, owner_id, [status_filter] if status_filter else None
            )
            active_count = count_in_status(
                db, [SessionStatus.PROVISIONING, SessionStatus.ACTIVE], owner_id
            )
            return {
                "sessions": [s.as_summary() for s in sessions],
                "total_count": len(sessions),
                "active_count": active_count,
            }

    def record_activity(self, session_id: str, owner_id: str | None = None) -> bool:
        with transaction(self.session_factory) as db:
            if owner_id is not None:
                get_vpn_session(db, session_id, owner_id)
            touched = touch_activity(db, session_id, self.clock())
            if not touched:
                # Raises SessionNotFound for unknown ids
                get_vpn_session(db, session_id)
        return touched

    def capacity(self) -> dict[str, Any]:
        with transaction(self.session_factory) as db:
            snapshot = dict(
                ledger.snapshot(db, self.max_sessions, self.max_compute_units)
            )
            snapshot["address_pool"] = addresses.pool_usage(db, now=self.clock())
            snapshot["sessions_by_status"] = {
                status.value: count_in_status(db, [status])
                for status in SessionStatus
                if status != SessionStatus.TERMINATED
            }
            return snapshot


_orchestrator: SessionOrchestrator | None = None


def get_orchestrator() -> SessionOrchestrator:
    """Process-wide orchestrator backed by the Docker provisioner."""
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = SessionOrchestrator(DockerProvisioner())
    return _orchestrator
