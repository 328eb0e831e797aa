"""Version reporting for the wrapper and the wrapped command."""

import asyncio
from typing import TextIO

from .. import __version__
from .config_manager import ShimConfig
from .logging_config import get_logger
from .wrapper import EXIT_CODE_ERROR

logger = get_logger(__name__)

VERSION_ARGS = ("--version", "--disable-version-check")


async def show_version(config: ShimConfig, out: TextIO) -> int:
    """
    Print the wrapped command's version followed by our own.

    Our own version line is written even when the command fails.

    Returns:
        0 on success, ``EXIT_CODE_ERROR`` if the command cannot be run
    """
    try:
        return await _command_version(config.command, out)
    finally:
        out.write(f"sops-sakura-kms version {__version__}\n")
        out.flush()


async def _command_version(command: str, out: TextIO) -> int:
    try:
        process = await asyncio.create_subprocess_exec(
            command,
            *VERSION_ARGS,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as e:
        logger.error(f"failed to execute {command} --version: {e.strerror or e}")
        return EXIT_CODE_ERROR

    output, _ = await process.communicate()
    out.write(output.decode(errors="replace"))
    if process.returncode != 0:
        logger.error(f"failed to execute {command} --version: exit status {process.returncode}")
        return EXIT_CODE_ERROR
    return 0
