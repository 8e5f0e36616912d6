"""
Audit trail of operational events.

Every admission, provisioning attempt, supersede, stop, idle detection and
auto-shutdown is recorded here whatever its outcome.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import BigInteger, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from vpnpool.common.db.models.base import Base, JSONType, UTCDateTime, utcnow

MAX_EVENT_MESSAGE_LENGTH = 2000


class EventType(str, Enum):
    PROVISION_START = "vpn.provision.start"
    PROVISION_SUCCESS = "vpn.provision.success"
    PROVISION_FAILURE = "vpn.provision.failure"
    PROVISION_SUPERSEDED = "vpn.provision.superseded"
    STOP_START = "vpn.stop.start"
    STOP_SUCCESS = "vpn.stop.success"
    STOP_FAILURE = "vpn.stop.failure"
    IDLE_DETECTED = "vpn.idle.detected"
    AUTO_SHUTDOWN = "vpn.auto.shutdown"
    AUTH_SUCCESS = "auth.success"
    AUTH_FAILURE = "auth.failure"
    CONFIG_GENERATED = "config.generated"
    CONFIG_DOWNLOADED = "config.downloaded"
    CAPACITY_REJECTED = "capacity.rejected"


class EventOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    WARNING = "warning"


class OperationalEvent(Base):
    __tablename__ = "operational_events"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    # YYYY-MM-DD, kept separately for day-bucketed queries
    event_date: Mapped[str] = mapped_column(String(10))
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    event_type: Mapped[str] = mapped_column(String(50))
    outcome: Mapped[str] = mapped_column(String(10))
    owner_id: Mapped[str | None] = mapped_column(String(64))
    session_id: Mapped[str | None] = mapped_column(String(36))
    message: Mapped[str] = mapped_column(Text)
    event_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, default=dict
    )
    source_ip: Mapped[str | None] = mapped_column(String(45))
    duration_ms: Mapped[int | None] = mapped_column(BigInteger)

    __table_args__ = (
        Index("idx_operational_events_timestamp", "timestamp"),
        Index("idx_operational_events_type", "event_type"),
        Index("idx_operational_events_session", "session_id"),
        Index("idx_operational_events_owner_date", "owner_id", "event_date"),
    )

    def __repr__(self) -> str:
        return (
            f"<OperationalEvent(type={self.event_type}, outcome={self.outcome}, "
            f"session={self.session_id})>"
        )

    def serialize(self) -> dict[str, Any]:
        return {
            "event_id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "event_type": self.event_type,
            "outcome": self.outcome,
            "owner_id": self.owner_id,
            "session_id": self.session_id,
            "message": self.message,
            "metadata": self.event_metadata,
            "source_ip": self.source_ip,
            "duration_ms": self.duration_ms,
        }
