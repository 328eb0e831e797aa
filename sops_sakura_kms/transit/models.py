"""
Transit Models.

Pydantic models for the Vault transit engine encrypt/decrypt wire format.

Author: sops-sakura-kms Team
Date: 2026-10-19
"""

from typing import List

from pydantic import BaseModel, ConfigDict, Field


VAULT_PREFIX = "vault:v1:"


class EncryptRequest(BaseModel):
    """Request body for the transit encrypt endpoint.

    Attributes:
        plaintext: Base64-encoded plaintext bytes
    """

    plaintext: str = ""

    model_config = ConfigDict(
        json_schema_extra={"example": {"plaintext": "SGVsbG8="}}
    )


class EncryptResponse(BaseModel):
    """Response body for the transit encrypt endpoint.

    Attributes:
        ciphertext: ``vault:v1:`` followed by the KMS ciphertext token
    """

    ciphertext: str


class DecryptRequest(BaseModel):
    """Request body for the transit decrypt endpoint.

    Attributes:
        ciphertext: ``vault:v1:`` followed by the KMS ciphertext token
    """

    ciphertext: str = ""


class DecryptResponse(BaseModel):
    """Response body for the transit decrypt endpoint.

    Attributes:
        plaintext: Base64-encoded plaintext bytes
    """

    plaintext: str


class ErrorResponse(BaseModel):
    """Vault style error body."""

    errors: List[str] = Field(default_factory=list)
