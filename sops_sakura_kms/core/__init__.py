"""Core module initialization."""

from .config_manager import ConfigManager, ShimConfig, load_config
from .logging_config import setup_logging, get_logger
from .lifecycle import ServerLifecycle, ServerState

__all__ = [
    "ConfigManager",
    "ShimConfig",
    "load_config",
    "setup_logging",
    "get_logger",
    "ServerLifecycle",
    "ServerState",
]
