"""
Shared fixtures for the Portal Client tests.
"""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest
from jose.utils import base64url_encode

from portal_client.auth.request_signer import RequestSigner
from portal_client.auth.session_store import PersistentBackend

CLIENT_ID = "acme-portal"
SHARED_SECRET = "test-shared-secret"
API_KEY = "test-api-key"
ORIGIN = "https://portal.example.com"
FIXED_MOMENT = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def make_token(claims) -> str:
    """Build an unsigned JWT-shaped token carrying *claims*."""
    header = base64url_encode(json.dumps({"alg": "none", "typ": "JWT"}).encode("utf-8"))
    payload = base64url_encode(json.dumps(claims).encode("utf-8"))
    return f"{header.decode('ascii')}.{payload.decode('ascii')}.signature"


class FakeKeyring:
    """In-memory stand-in for the keyring module's password API."""

    def __init__(self):
        self.passwords = {}

    def set_password(self, service, key, value):
        self.passwords[(service, key)] = value

    def get_password(self, service, key):
        return self.passwords.get((service, key))

    def delete_password(self, service, key):
        del self.passwords[(service, key)]


@pytest.fixture
def signer():
    return RequestSigner(
        client_id=CLIENT_ID,
        shared_secret=SHARED_SECRET,
        api_key=API_KEY,
        origin=ORIGIN,
        clock=lambda: FIXED_MOMENT
    )


@pytest.fixture
def no_keyring():
    """Force the persistent tier onto its file fallback."""
    with patch.object(PersistentBackend, '_check_keyring_availability', return_value=False):
        yield


@pytest.fixture
def fake_keyring():
    fake = FakeKeyring()
    with patch('portal_client.auth.session_store.keyring', fake):
        yield fake


@pytest.fixture
def portal_environ(tmp_path):
    """Environment for a fully configured, non-production client."""
    return {
        'PORTAL_BASE_URL': 'http://127.0.0.1:8080',
        'PORTAL_ORIGIN': ORIGIN,
        'PORTAL_CLIENT_ID': CLIENT_ID,
        'PORTAL_SHARED_SECRET': SHARED_SECRET,
        'PORTAL_API_KEY': API_KEY,
        'PORTAL_SECURITY_LEVEL': 'memory_only',
        'PORTAL_SESSION_DIR': str(tmp_path / 'sessions'),
    }
