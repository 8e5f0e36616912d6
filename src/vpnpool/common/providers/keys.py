"""WireGuard key issuing with encryption at rest.

Key pairs are Curve25519 (X25519). Private halves are stored Fernet
encrypted with a key derived from SECRETS_ENCRYPTION_KEY and are only
decrypted on demand through `reveal`.
"""

import base64
import functools
import logging
import secrets
from typing import Callable

from cryptography.fernet import Fernet
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
from sqlalchemy import delete, select
from sqlalchemy.orm import Session

from vpnpool.common import settings
from vpnpool.common.db.models import KeyRole, SessionKey

logger = logging.getLogger(__name__)


@functools.lru_cache(maxsize=8)
def derive_encryption_key(secret: str, salt: bytes) -> bytes:
    """Derive a Fernet-compatible key from a secret string.

    Uses PBKDF2 with SHA256 and 480,000 iterations (OWASP recommendation).
    """
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,
    )
    return base64.urlsafe_b64encode(kdf.derive(secret.encode()))


def get_fernet() -> Fernet:
    secret = settings.SECRETS_ENCRYPTION_KEY
    if not secret:
        raise ValueError(
            "SECRETS_ENCRYPTION_KEY must be set to issue keys. "
            'Generate with: python -c "import secrets; print(secrets.token_hex(32))"'
        )
    return Fernet(derive_encryption_key(secret, settings.SECRETS_ENCRYPTION_SALT))


def generate_key_pair() -> tuple[str, str]:
    """Return (private_key, public_key), both base64 as WireGuard expects."""
    private = X25519PrivateKey.generate()
    private_raw = private.private_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PrivateFormat.Raw,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_raw = private.public_key().public_bytes(
        encoding=serialization.Encoding.Raw,
        format=serialization.PublicFormat.Raw,
    )
    return base64.b64encode(private_raw).decode(), base64.b64encode(public_raw).decode()


class KeyIssuer:
    """Issues, reveals and discards per-session key pairs."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def issue_key_pair(self, session_id: str, role: KeyRole | str) -> tuple[str, str]:
        """Create a key pair for one side of the tunnel.

        Returns (public_key, handle). The handle is the only way to get the
        private half back.
        """
        role = KeyRole(role)
        private_key, public_key = generate_key_pair()
        handle = f"{role.value}-{secrets.token_hex(16)}"
        db = self.session_factory()
        try:
            db.add(
                SessionKey(
                    handle=handle,
                    session_id=session_id,
                    role=role.value,
                    public_key=public_key,
                    encrypted_private_key=get_fernet().encrypt(private_key.encode()),
                )
            )
            db.commit()
        finally:
            db.close()
        logger.info(f"Issued {role.value} key pair for session {session_id}")
        return public_key, handle

    def reveal(self, handle: str) -> str:
        db = self.session_factory()
        try:
            key = db.get(SessionKey, handle)
            if key is None:
                raise KeyError(f"Unknown key handle: {handle}")
            return get_fernet().decrypt(key.encrypted_private_key).decode()
        finally:
            db.close()

    def public_key(self, session_id: str, role: KeyRole | str) -> str | None:
        db = self.session_factory()
        try:
            return db.scalar(
                select(SessionKey.public_key).where(
                    SessionKey.session_id == session_id,
                    SessionKey.role == KeyRole(role).value,
                )
            )
        finally:
            db.close()

    def discard(self, session_id: str) -> int:
        db = self.session_factory()
        try:
            result = db.execute(
                delete(SessionKey).where(SessionKey.session_id == session_id)
            )
            db.commit()
        finally:
            db.close()
        if result.rowcount:
            logger.info(f"Discarded {result.rowcount} keys for session {session_id}")
        return result.rowcount
