import base64
from unittest.mock import patch

import pytest

from vpnpool.common import settings
from vpnpool.common.db.models import KeyRole, SessionKey
from vpnpool.common.providers.keys import KeyIssuer, generate_key_pair, get_fernet


@pytest.fixture
def issuer(session_factory):
    return KeyIssuer(session_factory)


def test_generate_key_pair():
    private_key, public_key = generate_key_pair()

    assert len(base64.b64decode(private_key)) == 32
    assert len(base64.b64decode(public_key)) == 32
    assert private_key != public_key
    assert generate_key_pair() != (private_key, public_key)


def test_get_fernet_requires_secret():
    with patch.object(settings, "SECRETS_ENCRYPTION_KEY", ""):
        with pytest.raises(ValueError):
            get_fernet()


def test_issue_and_reveal(issuer, db_session):
    public_key, handle = issuer.issue_key_pair("s1", KeyRole.CLIENT)

    assert handle.startswith("client-")
    private_key = issuer.reveal(handle)
    assert len(base64.b64decode(private_key)) == 32
    assert issuer.public_key("s1", "client") == public_key

    stored = db_session.get(SessionKey, handle)
    assert stored.role == "client"
    assert private_key.encode() not in stored.encrypted_private_key


def test_reveal_unknown_handle(issuer):
    with pytest.raises(KeyError):
        issuer.reveal("client-nope")


def test_public_key_missing(issuer):
    assert issuer.public_key("s1", KeyRole.SERVER) is None


def test_discard(issuer):
    issuer.issue_key_pair("s1", KeyRole.CLIENT)
    _, server_handle = issuer.issue_key_pair("s1", KeyRole.SERVER)
    _, other_handle = issuer.issue_key_pair("s2", KeyRole.CLIENT)

    assert issuer.discard("s1") == 2
    assert issuer.discard("s1") == 0
    assert issuer.public_key("s1", KeyRole.CLIENT) is None
    with pytest.raises(KeyError):
        issuer.reveal(server_handle)
    assert issuer.reveal(other_handle)
