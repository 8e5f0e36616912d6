"""
Single-row capacity ledger.

The row is only ever changed through conditional UPDATE statements in
vpnpool.common.ledger; every change bumps `version`.
"""

from datetime import datetime
from typing import TypedDict

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Integer
from sqlalchemy.orm import Mapped, mapped_column

from vpnpool.common.db.models.base import Base, UTCDateTime, utcnow

LEDGER_ID = 1


class LedgerPayload(TypedDict):
    active_sessions: int
    active_compute_units: int
    max_sessions: int
    max_compute_units: int
    total_provisioning_attempts: int
    total_provisioning_failures: int
    total_bytes_transferred: int
    at_capacity: bool
    utilization_percent: float
    success_rate_percent: float
    version: int
    last_updated: str


class CapacityLedger(Base):
    __tablename__ = "capacity_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, default=LEDGER_ID)
    active_compute_units: Mapped[int] = mapped_column(Integer, default=0)
    active_sessions: Mapped[int] = mapped_column(Integer, default=0)
    total_provisioning_attempts: Mapped[int] = mapped_column(BigInteger, default=0)
    total_provisioning_failures: Mapped[int] = mapped_column(BigInteger, default=0)
    total_bytes_transferred: Mapped[int] = mapped_column(BigInteger, default=0)
    at_capacity: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(BigInteger, default=1)
    last_updated: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        CheckConstraint("id = 1", name="capacity_ledger_singleton"),
        CheckConstraint(
            "active_sessions >= 0 AND active_compute_units >= 0",
            name="capacity_ledger_non_negative",
        ),
        CheckConstraint(
            "active_sessions <= active_compute_units",
            name="capacity_ledger_sessions_within_units",
        ),
        CheckConstraint(
            "total_provisioning_failures <= total_provisioning_attempts",
            name="capacity_ledger_failures_within_attempts",
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<CapacityLedger(sessions={self.active_sessions}, "
            f"units={self.active_compute_units}, version={self.version})>"
        )

    def utilization_percent(self, max_compute_units: int) -> float:
        if max_compute_units <= 0:
            return 100.0
        return round(self.active_compute_units / max_compute_units * 100, 2)

    @property
    def success_rate_percent(self) -> float:
        if not self.total_provisioning_attempts:
            return 100.0
        succeeded = self.total_provisioning_attempts - self.total_provisioning_failures
        return round(succeeded / self.total_provisioning_attempts * 100, 2)

    def can_admit(self, max_sessions: int, max_compute_units: int) -> str | None:
        """Return the rejection reason, or None if there is room for one more."""
        if self.active_compute_units >= max_compute_units:
            return (
                "Maximum compute units reached "
                f"({self.active_compute_units}/{max_compute_units})"
            )
        if self.active_sessions >= max_sessions:
            return (
                "Maximum concurrent sessions reached "
                f"({self.active_sessions}/{max_sessions})"
            )
        return None

    def as_payload(self, max_sessions: int, max_compute_units: int) -> LedgerPayload:
        return LedgerPayload(
            active_sessions=self.active_sessions,
            active_compute_units=self.active_compute_units,
            max_sessions=max_sessions,
            max_compute_units=max_compute_units,
            total_provisioning_attempts=self.total_provisioning_attempts,
            total_provisioning_failures=self.total_provisioning_failures,
            total_bytes_transferred=self.total_bytes_transferred,
            at_capacity=self.at_capacity,
            utilization_percent=self.utilization_percent(max_compute_units),
            success_rate_percent=self.success_rate_percent,
            version=self.version,
            last_updated=self.last_updated.isoformat(),
        )
