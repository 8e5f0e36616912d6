"""
Client configuration publishing.

The rendered WireGuard config holds the client's private key, so it is kept
encrypted on disk and only handed out through a signed, time-limited link.
"""

import logging
import pathlib
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from urllib.parse import quote

from cryptography.fernet import InvalidToken

from vpnpool.common import settings
from vpnpool.common.errors import OwnerForbidden, SessionNotFound
from vpnpool.common.providers.compute import EndpointRef
from vpnpool.common.providers.keys import get_fernet

logger = logging.getLogger(__name__)


@dataclass
class PublishedConfig:
    url: str
    expires_at: datetime


def render_client_config(
    client_private_key: str,
    client_address: str,
    server_public_key: str,
    endpoint: EndpointRef,
    dns_servers: list[str] | None = None,
    allowed_ips: str | None = None,
    keepalive: int | None = None,
) -> str:
    dns_servers = dns_servers if dns_servers is not None else settings.VPN_DNS_SERVERS
    lines = [
        "[Interface]",
        f"PrivateKey = {client_private_key}",
        f"Address = {client_address}",
    ]
    if dns_servers:
        lines.append(f"DNS = {', '.join(dns_servers)}")
    lines += [
        "",
        "[Peer]",
        f"PublicKey = {server_public_key}",
        f"Endpoint = {endpoint.public_host}:{endpoint.port}",
        f"AllowedIPs = {allowed_ips or settings.VPN_ALLOWED_IPS}",
        f"PersistentKeepalive = {keepalive or settings.VPN_PERSISTENT_KEEPALIVE}",
    ]
    return "\n".join(lines) + "\n"


class ConfigPublisher:
    def __init__(
        self,
        storage_dir: pathlib.Path | None = None,
        server_url: str | None = None,
        valid_for: int | None = None,
    ):
        self.storage_dir = storage_dir or settings.CLIENT_CONFIG_DIR
        self.server_url = (server_url or settings.SERVER_URL).rstrip("/")
        self.valid_for = valid_for or settings.CONFIG_LINK_VALID_FOR

    def path_for(self, session_id: str) -> pathlib.Path:
        return self.storage_dir / f"{session_id}.conf.enc"

    def publish(
        self,
        session_id: str,
        client_private_key: str,
        client_address: str,
        server_public_key: str,
        endpoint: EndpointRef,
    ) -> PublishedConfig:
        content = render_client_config(
            client_private_key, client_address, server_public_key, endpoint
        )
        fernet = get_fernet()
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.path_for(session_id).write_bytes(fernet.encrypt(content.encode()))

        token = fernet.encrypt(session_id.encode()).decode()
        url = f"{self.server_url}/vpn/configs/{session_id}?token={quote(token)}"
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.valid_for)
        logger.info(f"Published client config for session {session_id}")
        return PublishedConfig(url=url, expires_at=expires_at)

    def open(self, session_id: str, token: str) -> str:
        fernet = get_fernet()
        try:
            token_session = fernet.decrypt(token.encode(), ttl=self.valid_for).decode()
        except InvalidToken:
            raise OwnerForbidden("Invalid or expired download link")
        if token_session != session_id:
            raise OwnerForbidden("Invalid or expired download link")

        path = self.path_for(session_id)
        if not path.exists():
            raise SessionNotFound(session_id)
        return fernet.decrypt(path.read_bytes()).decode()

    def expire(self, session_id: str) -> bool:
        path = self.path_for(session_id)
        if not path.exists():
            return False
        path.unlink(missing_ok=True)
        logger.info(f"Expired client config for session {session_id}")
        return True
