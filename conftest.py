"""
Pytest configuration and shared fixtures.

Test settings are written to the environment before any application
import, so the module-level app is built against a throwaway database
and media root.
"""

import base64
import os
import tempfile

import httpx
import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

_TEST_DIR = tempfile.mkdtemp(prefix="social_insight_tests_")

os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_TEST_DIR, 'test.sqlite')}")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_VERIFY_TOKEN", "test_verify_token")
os.environ.setdefault("WEBHOOK_LOG_PATH", os.path.join(_TEST_DIR, "webhook.log"))
os.environ.setdefault("MEDIA_STORAGE_PATH", os.path.join(_TEST_DIR, "media"))
os.environ.setdefault("MEDIA_CDN_BASE_URL", "https://mmg.whatsapp.net")

# Clear settings cache before any app imports to ensure test env vars are used
from social_insight.config import get_settings  # noqa: E402
get_settings.cache_clear()

from social_insight.crypto import compute_mac, derive_media_keys  # noqa: E402


MEDIA_KEY = bytes(range(32))


@pytest.fixture
def media_key() -> bytes:
    return MEDIA_KEY


@pytest.fixture
def media_key_b64() -> str:
    return base64.b64encode(MEDIA_KEY).decode("ascii")


class FakeMediaHost:
    """Serves registered blobs by URL through httpx.MockTransport."""

    def __init__(self):
        self.blobs = {}
        self.requests = []

    def add(self, url: str, blob: bytes) -> None:
        self.blobs[url] = blob

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(str(request.url))
        blob = self.blobs.get(str(request.url))
        if blob is None:
            return httpx.Response(404, content=b"not found")
        return httpx.Response(200, content=blob)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))


@pytest.fixture
def media_host() -> FakeMediaHost:
    return FakeMediaHost()


def encrypt_blob(plaintext: bytes, media_key: bytes, kind: str) -> bytes:
    """Build a gateway-style blob: ``AES-CBC(plaintext) || mac``."""
    keys = derive_media_keys(media_key, kind)

    padder = padding.PKCS7(algorithms.AES.block_size).padder()
    padded = padder.update(plaintext) + padder.finalize()

    encryptor = Cipher(algorithms.AES(keys.cipher_key), modes.CBC(keys.iv)).encryptor()
    ciphertext = encryptor.update(padded) + encryptor.finalize()

    return ciphertext + compute_mac(keys, ciphertext)


@pytest.fixture
def encrypt_media():
    return encrypt_blob
