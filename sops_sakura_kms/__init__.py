"""
sops-sakura-kms: SOPS wrapper for Sakura Cloud KMS

Serves a Vault transit engine compatible API backed by Sakura Cloud KMS
and runs SOPS against it.
"""

__version__ = "0.3.1"

from .core.config_manager import ShimConfig, load_config
from .core.wrapper import EXIT_CODE_ERROR, run_server, run_wrapper, serve_forever
from .transit import Cipher, SakuraKMS, create_app

__all__ = [
    "__version__",
    "EXIT_CODE_ERROR",
    "ShimConfig",
    "load_config",
    "run_server",
    "run_wrapper",
    "serve_forever",
    "Cipher",
    "SakuraKMS",
    "create_app",
]
