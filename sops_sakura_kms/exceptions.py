"""
sops-sakura-kms exceptions.

Error taxonomy shared by the HTTP handlers, the cipher and the orchestrator.
Request-level errors carry the HTTP status they are answered with.

Author: sops-sakura-kms Team
Date: 2026-10-19
"""


class ShimError(Exception):
    """Base exception for sops-sakura-kms errors."""

    status_code: int = 500

    def __init__(self, message: str):
        """Initialize shim error.

        Args:
            message: Human-readable error message
        """
        super().__init__(message)
        self.message = message


class ConfigurationError(ShimError):
    """Raised when required configuration is missing or invalid."""


class InvalidRequestError(ShimError):
    """Raised when a transit request cannot be accepted.

    Covers bad content-type, malformed JSON, bad base64 and
    ciphertext without the vault prefix.
    """

    status_code = 400


class CipherError(ShimError):
    """Raised when the KMS backend fails to encrypt or decrypt."""

    status_code = 500


class ServerStartupError(ShimError):
    """Raised when the local transit server cannot be started."""


class CommandLaunchError(ShimError):
    """Raised when the wrapped command cannot be launched."""

    def __init__(self, command: str, reason: str):
        """Initialize command launch error.

        Args:
            command: Command that failed to launch
            reason: Underlying failure
        """
        super().__init__(f"failed to execute {command}: {reason}")
        self.command = command
        self.reason = reason
