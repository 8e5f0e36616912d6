import hashlib
import ipaddress
import secrets
import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import BigInteger, Boolean, CheckConstraint, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vpnpool.common import settings
from vpnpool.common.db.models.base import Base, JSONType, UTCDateTime, utcnow

API_KEY_PREFIX = "vpn_"


def generate_api_key() -> str:
    return f"{API_KEY_PREFIX}{secrets.token_urlsafe(32)}"


def hash_api_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode()).hexdigest()


class Owner(Base):
    """A caller allowed to request VPN sessions, together with its quota."""

    __tablename__ = "owners"

    id: Mapped[str] = mapped_column(
        String(64), primary_key=True, default=lambda: str(uuid.uuid4())
    )
    name: Mapped[str] = mapped_column(String(255))
    email: Mapped[str | None] = mapped_column(String(255), unique=True)
    api_key_hash: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    # CIDR strings; None means any source address is accepted
    allowed_source_cidrs: Mapped[list[str] | None] = mapped_column(JSONType)

    max_concurrent_sessions: Mapped[int] = mapped_column(
        Integer, default=settings.DEFAULT_OWNER_QUOTA
    )
    total_sessions_created: Mapped[int] = mapped_column(BigInteger, default=0)
    last_session_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    # Bumped at the start of every admission to serialize same-owner requests
    admission_seq: Mapped[int] = mapped_column(BigInteger, default=0)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=utcnow, onupdate=utcnow
    )

    sessions = relationship("VPNSession", back_populates="owner")

    __table_args__ = (
        CheckConstraint(
            "max_concurrent_sessions >= 1", name="owners_quota_positive"
        ),
    )

    def __repr__(self) -> str:
        return f"<Owner(id={self.id}, name={self.name}, active={self.is_active})>"

    @classmethod
    def create_with_api_key(
        cls, name: str, email: str | None = None, **kwargs: Any
    ) -> tuple["Owner", str]:
        """Create an owner and return it together with its plaintext API key.

        Only the hash is stored, so the key cannot be shown again later.
        """
        api_key = generate_api_key()
        owner = cls(name=name, email=email, api_key_hash=hash_api_key(api_key), **kwargs)
        return owner, api_key

    def verify_api_key(self, api_key: str) -> bool:
        return secrets.compare_digest(hash_api_key(api_key), self.api_key_hash)

    def is_ip_allowed(self, source_ip: str | None) -> bool:
        if not self.allowed_source_cidrs:
            return True
        if not source_ip:
            return False
        try:
            address = ipaddress.ip_address(source_ip)
        except ValueError:
            return False
        for cidr in self.allowed_source_cidrs:
            try:
                network = ipaddress.ip_network(cidr, strict=False)
            except ValueError:
                continue
            if address.version == network.version and address in network:
                return True
        return False

    def serialize(self) -> dict[str, Any]:
        return {
            "owner_id": self.id,
            "name": self.name,
            "email": self.email,
            "is_active": self.is_active,
            "allowed_source_cidrs": self.allowed_source_cidrs,
            "max_concurrent_sessions": self.max_concurrent_sessions,
            "total_sessions_created": self.total_sessions_created,
            "last_session_at": self.last_session_at
            and self.last_session_at.isoformat(),
        }
