"""
Shared fixtures: deterministic stub ciphers and configuration helpers.
"""

import base64
import binascii

import pytest

from sops_sakura_kms.core.config_manager import ShimConfig
from sops_sakura_kms.exceptions import CipherError
from sops_sakura_kms.transit.cipher import Cipher


class StubCipher(Cipher):
    """Base64 identity cipher that records every call."""

    def __init__(self):
        self.calls = []

    async def encrypt(self, key_id: str, plaintext: bytes) -> str:
        self.calls.append(("encrypt", key_id, plaintext))
        return base64.b64encode(plaintext).decode("ascii")

    async def decrypt(self, key_id: str, ciphertext: str) -> bytes:
        self.calls.append(("decrypt", key_id, ciphertext))
        try:
            return base64.b64decode(ciphertext, validate=True)
        except binascii.Error as e:
            raise CipherError(f"failed to decrypt: {e}") from e


class FailingCipher(Cipher):
    """Cipher whose backend always fails."""

    def __init__(self, message: str = "failed to encrypt: key 123 not found"):
        self.message = message

    async def encrypt(self, key_id: str, plaintext: bytes) -> str:
        raise CipherError(self.message)

    async def decrypt(self, key_id: str, ciphertext: str) -> bytes:
        raise CipherError(self.message)


@pytest.fixture
def stub_cipher():
    """Create a stub cipher."""
    return StubCipher()


@pytest.fixture
def failing_cipher():
    """Create a cipher whose backend always fails."""
    return FailingCipher()


@pytest.fixture
def make_config():
    """Build a ShimConfig listening on an ephemeral loopback port."""
    def _make(key_id="test-key-123", command="sops", server_only=False, addr="127.0.0.1:0"):
        return ShimConfig(
            kms={"key_id": key_id},
            server={"addr": addr, "shutdown_timeout": 1.0},
            command=command,
            server_only=server_only,
        )
    return _make
