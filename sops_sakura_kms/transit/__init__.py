"""
Vault transit engine compatible API.

Implements the encrypt/decrypt subset of the HashiCorp Vault transit
engine that SOPS uses, backed by Sakura Cloud KMS.

Author: sops-sakura-kms Team
Date: 2026-10-19
"""

from .cipher import Cipher, SakuraKMS
from .models import (
    VAULT_PREFIX,
    EncryptRequest,
    EncryptResponse,
    DecryptRequest,
    DecryptResponse,
    ErrorResponse,
)
from .routes import create_app, create_router

__all__ = [
    # Cipher
    "Cipher",
    "SakuraKMS",
    # Models
    "VAULT_PREFIX",
    "EncryptRequest",
    "EncryptResponse",
    "DecryptRequest",
    "DecryptResponse",
    "ErrorResponse",
    # Application
    "create_app",
    "create_router",
]
