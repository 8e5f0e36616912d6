"""
VPN session records and the session state machine.

A session moves provisioning -> active -> idle -> terminating -> terminated.
Provisioning sessions can also go straight to terminated (failed or
superseded). Nothing leaves terminated.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta
from enum import Enum
from typing import TYPE_CHECKING, Any, TypedDict

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vpnpool.common import settings
from vpnpool.common.db.models.base import Base, UTCDateTime, utcnow
from vpnpool.common.errors import InvalidTransition

if TYPE_CHECKING:
    from vpnpool.common.db.models.owners import Owner


class SessionStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    IDLE = "idle"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


VALID_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PROVISIONING: frozenset(
        {SessionStatus.ACTIVE, SessionStatus.TERMINATED}
    ),
    SessionStatus.ACTIVE: frozenset({SessionStatus.IDLE, SessionStatus.TERMINATING}),
    SessionStatus.IDLE: frozenset({SessionStatus.TERMINATING}),
    SessionStatus.TERMINATING: frozenset({SessionStatus.TERMINATED}),
    SessionStatus.TERMINATED: frozenset(),
}

# States that hold (or are about to hold) a compute unit
LIVE_STATUSES = (
    SessionStatus.PROVISIONING,
    SessionStatus.ACTIVE,
    SessionStatus.IDLE,
    SessionStatus.TERMINATING,
)


def allowed_transitions(current: str | SessionStatus) -> frozenset[SessionStatus]:
    return VALID_TRANSITIONS[SessionStatus(current)]


def predecessors(target: str | SessionStatus) -> frozenset[SessionStatus]:
    """All states from which `target` may legally be entered."""
    target = SessionStatus(target)
    return frozenset(
        source for source, targets in VALID_TRANSITIONS.items() if target in targets
    )


def can_transition(current: str | SessionStatus, target: str | SessionStatus) -> bool:
    return SessionStatus(target) in allowed_transitions(current)


def check_transition(
    session_id: str, current: str | SessionStatus, target: str | SessionStatus
) -> None:
    if not can_transition(current, target):
        raise InvalidTransition(
            session_id,
            SessionStatus(current).value,
            SessionStatus(target).value,
            [s.value for s in allowed_transitions(current)],
        )


def truncate_error(message: str | None) -> str | None:
    if message is None:
        return None
    return message[: settings.MAX_ERROR_MESSAGE_LENGTH]


class SessionPayload(TypedDict):
    session_id: str
    owner_id: str
    status: str
    client_address: str | None
    public_host: str | None
    vpn_port: int | None
    created_at: str
    last_activity_at: str
    terminated_at: str | None
    expires_at: str | None
    idle_timeout_minutes: int
    provision_attempts: int
    error_message: str | None
    bytes_transferred: int | None


class VPNSession(Base):
    __tablename__ = "vpn_sessions"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    owner_id: Mapped[str] = mapped_column(String(64), ForeignKey("owners.id"))
    status: Mapped[str] = mapped_column(
        String(20), default=SessionStatus.PROVISIONING.value
    )

    # Endpoint, known once provisioned
    client_address: Mapped[str | None] = mapped_column(String(18))
    compute_ref: Mapped[str | None] = mapped_column(String(255))
    public_host: Mapped[str | None] = mapped_column(String(255))
    vpn_port: Mapped[int | None] = mapped_column(Integer)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    terminated_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    idle_timeout_minutes: Mapped[int] = mapped_column(
        Integer, default=settings.DEFAULT_IDLE_TIMEOUT_MINUTES
    )
    provision_attempts: Mapped[int] = mapped_column(Integer, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    bytes_transferred: Mapped[int | None] = mapped_column(BigInteger)
    source_ip: Mapped[str | None] = mapped_column(String(45))

    owner: Mapped[Owner] = relationship("Owner", back_populates="sessions")

    __table_args__ = (
        CheckConstraint(
            f"idle_timeout_minutes BETWEEN {settings.MIN_IDLE_TIMEOUT_MINUTES} "
            f"AND {settings.MAX_IDLE_TIMEOUT_MINUTES}",
            name="vpn_sessions_idle_timeout_range",
        ),
        CheckConstraint(
            "provision_attempts >= 0", name="vpn_sessions_attempts_non_negative"
        ),
        CheckConstraint(
            "(status = 'terminated') = (terminated_at IS NOT NULL)",
            name="vpn_sessions_terminated_at_iff_terminated",
        ),
        CheckConstraint(
            "status IN ('provisioning', 'active', 'idle', 'terminating', 'terminated')",
            name="vpn_sessions_status_valid",
        ),
        Index("idx_vpn_sessions_owner_status", "owner_id", "status"),
        Index("idx_vpn_sessions_status_activity", "status", "last_activity_at"),
        Index("idx_vpn_sessions_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<VPNSession(id={self.id}, owner={self.owner_id}, status={self.status})>"
        )

    @property
    def idle_timeout(self) -> timedelta:
        return timedelta(minutes=self.idle_timeout_minutes)

    @property
    def idle_timeout_at(self) -> datetime:
        return self.last_activity_at + self.idle_timeout

    def is_idle(self, now: datetime | None = None) -> bool:
        """Only active sessions can go idle; every other state is exempt."""
        if self.status != SessionStatus.ACTIVE.value:
            return False
        now = now or utcnow()
        return now - self.last_activity_at >= self.idle_timeout

    def allowed_transitions(self) -> frozenset[SessionStatus]:
        return allowed_transitions(self.status)

    def check_transition(self, target: str | SessionStatus) -> None:
        check_transition(self.id, self.status, target)

    @property
    def duration_ms(self) -> int:
        end = self.terminated_at or utcnow()
        return int((end - self.created_at).total_seconds() * 1000)

    def as_payload(self) -> SessionPayload:
        expires_at = None
        if self.status in (SessionStatus.ACTIVE.value, SessionStatus.IDLE.value):
            expires_at = self.idle_timeout_at.isoformat()
        return SessionPayload(
            session_id=self.id,
            owner_id=self.owner_id,
            status=self.status,
            client_address=self.client_address,
            public_host=self.public_host,
            vpn_port=self.vpn_port,
            created_at=self.created_at.isoformat(),
            last_activity_at=self.last_activity_at.isoformat(),
            terminated_at=self.terminated_at and self.terminated_at.isoformat(),
            expires_at=expires_at,
            idle_timeout_minutes=self.idle_timeout_minutes,
            provision_attempts=self.provision_attempts,
            error_message=self.error_message,
            bytes_transferred=self.bytes_transferred,
        )

    def as_summary(self) -> dict[str, Any]:
        return {
            "session_id": self.id,
            "status": self.status,
            "client_address": self.client_address,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "terminated_at": self.terminated_at and self.terminated_at.isoformat(),
        }
