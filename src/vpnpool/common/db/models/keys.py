from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Index, LargeBinary, String
from sqlalchemy.orm import Mapped, mapped_column

from vpnpool.common.db.models.base import Base, UTCDateTime, utcnow


class KeyRole(str, Enum):
    SERVER = "server"
    CLIENT = "client"


class SessionKey(Base):
    """A WireGuard key pair issued for one side of a session tunnel."""

    __tablename__ = "session_keys"

    handle: Mapped[str] = mapped_column(String(64), primary_key=True)
    session_id: Mapped[str] = mapped_column(String(36), ForeignKey("vpn_sessions.id"))
    role: Mapped[str] = mapped_column(String(10))
    public_key: Mapped[str] = mapped_column(String(64))
    encrypted_private_key: Mapped[bytes] = mapped_column(LargeBinary)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)

    __table_args__ = (
        Index("idx_session_keys_session_role", "session_id", "role", unique=True),
    )

    def __repr__(self) -> str:
        return f"<SessionKey(handle={self.handle}, role={self.role})>"
