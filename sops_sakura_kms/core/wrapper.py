"""
SOPS wrapper orchestration.

Starts the Vault transit compatible server, points the wrapped command at
it through environment variables, supervises the child process and tears
the server down on every exit path.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Mapping, Optional, Sequence

from ..exceptions import CommandLaunchError, ConfigurationError
from ..transit.cipher import Cipher, SakuraKMS
from ..transit.routes import create_app
from .config_manager import KEY_ID_ENV_VARS, ShimConfig
from .lifecycle import ServerLifecycle
from .logging_config import get_logger, log_with_context

logger = get_logger(__name__)

# Reserved for wrapper-internal failures that never reach the child
EXIT_CODE_ERROR = 255

VAULT_TOKEN = "dummy"
TRANSIT_FLAG = "--hc-vault-transit"
CHILD_TERMINATE_TIMEOUT = 5.0


def check_args(args: Sequence[str]) -> None:
    """
    Reject arguments that would bypass the local transit server.

    Raises:
        ConfigurationError: If ``--hc-vault-transit`` is given
    """
    for arg in args:
        if arg == TRANSIT_FLAG or arg.startswith(TRANSIT_FLAG + "="):
            raise ConfigurationError(
                f"{TRANSIT_FLAG} must not be specified: the transit URI is set by "
                "sops-sakura-kms through SOPS_VAULT_URIS"
            )


def require_key_id(config: ShimConfig) -> str:
    """Return the configured key id or fail naming the expected variables."""
    if not config.kms.key_id:
        raise ConfigurationError(
            f"{' or '.join(KEY_ID_ENV_VARS)} environment variable is required"
        )
    return config.kms.key_id


def vault_env(address: str, key_id: str) -> Dict[str, str]:
    """
    Environment variables that make SOPS use the local transit server.

    Args:
        address: ``host:port`` the server is listening on
        key_id: KMS key used for newly encrypted files

    Returns:
        Mapping of variable name to value
    """
    return {
        "VAULT_ADDR": f"http://{address}",
        "VAULT_TOKEN": VAULT_TOKEN,
        "SOPS_VAULT_URIS": f"http://{address}/v1/transit/encrypt/{key_id}",
    }


def exit_code_of(returncode: int) -> int:
    """Map a child return code to the wrapper's exit code.

    A child killed by signal N reports -N; shells report that as 128 + N.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


@asynccontextmanager
async def _open_cipher(config: ShimConfig, cipher: Optional[Cipher]) -> AsyncIterator[Cipher]:
    """Yield the injected cipher, or a Sakura KMS client closed on exit."""
    if cipher is not None:
        yield cipher
        return
    kms = SakuraKMS.from_config(config.kms)
    try:
        yield kms
    finally:
        await kms.aclose()


def _lifecycle(config: ShimConfig, cipher: Cipher) -> ServerLifecycle:
    return ServerLifecycle(
        create_app(cipher),
        config.server.addr,
        shutdown_timeout=config.server.shutdown_timeout,
    )


@asynccontextmanager
async def run_server(config: ShimConfig, cipher: Optional[Cipher] = None) -> AsyncIterator[Dict[str, str]]:
    """
    Run the transit server for in-process use.

    Yields the environment variables a SOPS library or subprocess needs
    to use the server; the server is shut down when the block exits::

        async with run_server(config) as env:
            os.environ.update(env)
            ...

    Raises:
        ConfigurationError: If no key id is configured
        ServerStartupError: If the server cannot be started
    """
    key_id = require_key_id(config)
    async with _open_cipher(config, cipher) as active_cipher:
        async with _lifecycle(config, active_cipher) as server:
            yield vault_env(server.address, key_id)


async def serve_forever(config: ShimConfig, cipher: Optional[Cipher] = None) -> None:
    """
    Server-only mode: run the transit server until cancelled.

    No key id is needed; clients name the key in each request path.
    """
    async with _open_cipher(config, cipher) as active_cipher:
        async with _lifecycle(config, active_cipher) as server:
            logger.info(f"Server ready on {server.address}, waiting for shutdown signal")
            await asyncio.Event().wait()


async def _spawn(command: str, args: Sequence[str], env: Mapping[str, str]) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(command, *args, env=dict(env))
    except OSError as e:
        raise CommandLaunchError(command, e.strerror or str(e)) from e


async def _terminate(process: asyncio.subprocess.Process) -> None:
    """Terminate the child, escalating to SIGKILL after a grace period."""
    if process.returncode is not None:
        return
    logger.info(f"Terminating child process {process.pid}")
    try:
        process.terminate()
    except ProcessLookupError:
        # already reaped
        return
    try:
        await asyncio.wait_for(process.wait(), timeout=CHILD_TERMINATE_TIMEOUT)
    except asyncio.TimeoutError:
        logger.warning(f"Child process {process.pid} did not exit, killing it")
        await _kill(process)
    except asyncio.CancelledError:
        # a second cancellation must not leave the child running
        logger.warning(f"Cancelled while waiting for child process {process.pid}, killing it")
        await asyncio.shield(_kill(process))
        raise


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        # already reaped
        return
    await process.wait()


async def run_wrapper(
    config: ShimConfig,
    args: Sequence[str],
    cipher: Optional[Cipher] = None,
) -> int:
    """
    Run the wrapped command against a local transit server.

    Steps:
    1. Check preconditions (key id, conflicting arguments)
    2. Start the server and wait until it is healthy
    3. Run the command with the Vault environment and inherited stdio
    4. Shut the server down and return the command's exit code

    Cancelling the calling task terminates the child and shuts the
    server down before the cancellation propagates.

    Args:
        config: Loaded configuration
        args: Arguments passed verbatim to the command
        cipher: Cipher to use instead of Sakura Cloud KMS

    Returns:
        The child's exit code (128 + N when killed by signal N)

    Raises:
        ConfigurationError: If preconditions fail; no server is started
        ServerStartupError: If the server cannot be started
        CommandLaunchError: If the command cannot be launched
    """
    key_id = require_key_id(config)
    check_args(args)

    log_with_context(
        logger, logging.INFO, "Starting Vault-compatible API server for Sakura KMS",
        key_id=key_id, addr=config.server.addr,
    )

    async with run_server(config, cipher) as env:
        log_with_context(
            logger, logging.INFO, "Server started successfully, executing command",
            command=config.command, args=" ".join(args),
        )
        child_env = {**os.environ, **env}
        process = await _spawn(config.command, args, child_env)
        try:
            returncode = await process.wait()
        finally:
            await _terminate(process)

    code = exit_code_of(returncode)
    if code != 0:
        logger.debug(f"{config.command} exited with code {code}")
    return code
