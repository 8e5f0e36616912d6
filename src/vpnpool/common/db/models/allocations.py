from datetime import datetime

from sqlalchemy import BigInteger, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from vpnpool.common.db.models.base import Base, UTCDateTime, utcnow


class AddressAllocation(Base):
    """A client address handed to a session.

    An allocation is live while `expires_at` is unset or in the future.
    Released allocations are kept with `expires_at` in the past.
    """

    __tablename__ = "address_allocations"

    id: Mapped[int] = mapped_column(
        BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True
    )
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("vpn_sessions.id"))
    address: Mapped[str] = mapped_column(String(18))
    slot: Mapped[int] = mapped_column(Integer)
    allocated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime())

    __table_args__ = (
        # At most one live allocation per slot
        Index(
            "idx_address_allocations_live_slot",
            "slot",
            unique=True,
            postgresql_where=text("expires_at IS NULL"),
            sqlite_where=text("expires_at IS NULL"),
        ),
        Index("idx_address_allocations_session", "session_id"),
        Index("idx_address_allocations_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AddressAllocation(address={self.address}, session={self.session_id}, "
            f"expires_at={self.expires_at})>"
        )

    def is_live(self, now: datetime | None = None) -> bool:
        return self.expires_at is None or self.expires_at > (now or utcnow())
