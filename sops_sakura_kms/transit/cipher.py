"""
Cipher capability.

Defines the two-operation encryption interface used by the transit handlers
and its Sakura Cloud KMS implementation.

Author: sops-sakura-kms Team
Date: 2026-10-19
"""

import base64
import binascii
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import httpx

from ..core.logging_config import get_logger
from ..exceptions import CipherError, ConfigurationError

logger = get_logger(__name__)

ENCRYPT_ALGORITHM = "aes-256-gcm"


class Cipher(ABC):
    """Encrypt/decrypt capability backed by a key management service."""

    @abstractmethod
    async def encrypt(self, key_id: str, plaintext: bytes) -> str:
        """
        Encrypt plaintext with the key identified by ``key_id``.

        Returns:
            Opaque ciphertext token
        """

    @abstractmethod
    async def decrypt(self, key_id: str, ciphertext: str) -> bytes:
        """
        Decrypt a ciphertext token produced by ``encrypt``.

        Returns:
            Plaintext bytes
        """

    async def aclose(self) -> None:
        """Release backend resources."""


class SakuraKMS(Cipher):
    """
    Cipher backed by the Sakura Cloud KMS key API.

    One ``httpx.AsyncClient`` is shared by all calls; it holds no
    per-request state, so concurrent requests for different keys are safe.
    Retry policy is left to the transport.
    """

    def __init__(
        self,
        access_token: Optional[str],
        access_token_secret: Optional[str],
        endpoint: str,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize the KMS client.

        Args:
            access_token: Sakura Cloud API access token
            access_token_secret: Sakura Cloud API access token secret
            endpoint: API root URL
            timeout: Request timeout in seconds
            transport: Optional httpx transport (used by tests)

        Raises:
            ConfigurationError: If credentials are missing
        """
        if not access_token or not access_token_secret:
            raise ConfigurationError(
                "SAKURACLOUD_ACCESS_TOKEN and SAKURACLOUD_ACCESS_TOKEN_SECRET "
                "environment variables are required"
            )
        self._client = httpx.AsyncClient(
            base_url=endpoint.rstrip("/"),
            auth=httpx.BasicAuth(access_token, access_token_secret),
            timeout=timeout,
            headers={"Accept": "application/json"},
            transport=transport,
        )

    @classmethod
    def from_config(cls, kms_config, transport: Optional[httpx.AsyncBaseTransport] = None) -> "SakuraKMS":
        """Build a client from a ``KMSConfig``."""
        return cls(
            access_token=kms_config.access_token,
            access_token_secret=kms_config.access_token_secret,
            endpoint=kms_config.endpoint,
            timeout=kms_config.timeout,
            transport=transport,
        )

    async def encrypt(self, key_id: str, plaintext: bytes) -> str:
        """Encrypt plaintext with AES-256-GCM."""
        payload = {
            "Key": {
                "Plain": base64.b64encode(plaintext).decode("ascii"),
                "Algorithm": ENCRYPT_ALGORITHM,
            }
        }
        try:
            key = await self._call(key_id, "encrypt", payload)
            ciphertext = key["Cipher"]
        except CipherError as e:
            raise CipherError(f"failed to encrypt: {e.message}") from e
        except (KeyError, TypeError) as e:
            raise CipherError(f"failed to encrypt: unexpected response: missing {e}") from e
        if not isinstance(ciphertext, str):
            raise CipherError("failed to encrypt: unexpected response: Cipher is not a string")
        return ciphertext

    async def decrypt(self, key_id: str, ciphertext: str) -> bytes:
        """Decrypt a KMS ciphertext token."""
        payload = {"Key": {"Cipher": ciphertext}}
        try:
            key = await self._call(key_id, "decrypt", payload)
            return base64.b64decode(key["Plain"], validate=True)
        except CipherError as e:
            raise CipherError(f"failed to decrypt: {e.message}") from e
        except (KeyError, TypeError) as e:
            raise CipherError(f"failed to decrypt: unexpected response: missing {e}") from e
        except binascii.Error as e:
            raise CipherError(f"failed to decrypt: invalid base64 plaintext in response: {e}") from e

    async def _call(self, key_id: str, operation: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        path = f"/kms/keys/{key_id}/{operation}"
        logger.debug(f"KMS {operation} request for key {key_id}")
        try:
            response = await self._client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise CipherError(f"{type(e).__name__}: {e}") from e

        if response.is_error:
            raise CipherError(
                f"KMS API returned {response.status_code}: {self._error_message(response)}"
            )
        try:
            body = response.json()
        except ValueError as e:
            raise CipherError(f"invalid JSON response from KMS API: {e}") from e
        return body["Key"]

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        """Extract the API's error message, falling back to the raw body."""
        try:
            body = response.json()
        except ValueError:
            return response.text.strip() or response.reason_phrase
        if isinstance(body, dict):
            for field in ("error_msg", "message", "error_message"):
                if body.get(field):
                    return str(body[field])
        return response.text.strip()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "SakuraKMS":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()
