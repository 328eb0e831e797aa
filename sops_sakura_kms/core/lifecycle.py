"""
Transit server lifecycle manager.

Runs the transit API under uvicorn on a background asyncio task, polls the
health endpoint until the server is ready and guarantees a graceful
shutdown on every exit path.
"""

import asyncio
import contextlib
import socket
from enum import Enum
from typing import Callable, Optional

import httpx
import uvicorn
from fastapi import FastAPI

from ..exceptions import ServerStartupError
from .logging_config import get_logger

logger = get_logger(__name__)

HEALTH_ATTEMPTS = 30
HEALTH_INTERVAL = 0.1


class ServerState(str, Enum):
    """Transit server lifecycle states."""
    STOPPED = "stopped"
    STARTING = "starting"
    READY = "ready"
    SHUTTING_DOWN = "shutting_down"
    FAILED = "failed"


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the caller."""

    def install_signal_handlers(self) -> None:
        pass

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class ServerLifecycle:
    """
    Manage the transit server from start to shutdown.

    Responsibilities:
    - Bind the listening socket and surface bind failures
    - Run uvicorn on a background task
    - Poll ``/health`` until ready, racing the listener task for early failure
    - Shut down exactly once, letting in-flight requests finish

    Use as an async context manager to get start, readiness and shutdown
    as one scoped resource::

        async with ServerLifecycle(app, "127.0.0.1:8200") as server:
            ...
    """

    def __init__(
        self,
        app: FastAPI,
        addr: str,
        *,
        health_attempts: int = HEALTH_ATTEMPTS,
        health_interval: float = HEALTH_INTERVAL,
        shutdown_timeout: float = 5.0,
    ):
        """
        Initialize lifecycle manager.

        Args:
            app: ASGI application to serve
            addr: Listen address in ``host:port`` form; port 0 picks a free port
            health_attempts: Number of readiness polls before giving up
            health_interval: Per-attempt timeout and delay between polls (seconds)
            shutdown_timeout: Maximum time to wait for in-flight requests (seconds)
        """
        host, _, port = addr.rpartition(":")
        self._host = host.strip("[]")
        self._port = int(port)
        self._app = app
        self._health_attempts = health_attempts
        self._health_interval = health_interval
        self._shutdown_timeout = shutdown_timeout
        self._state = ServerState.STOPPED
        self._state_callbacks: list[Callable] = []
        self._socket: Optional[socket.socket] = None
        self._server: Optional[_Server] = None
        self._task: Optional[asyncio.Task] = None
        self._shutdown_done = False

    def set_state(self, new_state: ServerState) -> None:
        """
        Update lifecycle state and notify callbacks.

        Args:
            new_state: New lifecycle state
        """
        old_state = self._state
        if old_state == new_state:
            return

        logger.debug(f"Server state transition: {old_state.value} -> {new_state.value}")
        self._state = new_state

        for callback in self._state_callbacks:
            try:
                callback(old_state, new_state)
            except Exception as e:
                logger.error(f"Error in state callback: {e}", exc_info=True)

    def register_state_callback(self, callback: Callable) -> None:
        """
        Register callback for state changes.

        Callbacks should accept (old_state, new_state) as arguments.
        """
        self._state_callbacks.append(callback)

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def address(self) -> str:
        """Bound ``host:port``; reflects the real port once started."""
        host = f"[{self._host}]" if ":" in self._host else self._host
        return f"{host}:{self._port}"

    @property
    def base_url(self) -> str:
        return f"http://{self.address}"

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self._host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self._host, self._port))
        except OSError:
            sock.close()
            raise
        self._port = sock.getsockname()[1]
        return sock

    async def start(self) -> None:
        """
        Bind the listener and launch uvicorn in the background.

        Does not wait for readiness; call ``wait_ready`` for that.

        Raises:
            ServerStartupError: If the address cannot be bound
            RuntimeError: If the server was already started
        """
        if self._state != ServerState.STOPPED or self._task is not None:
            raise RuntimeError(f"Server cannot be started in state {self._state.value}")

        self.set_state(ServerState.STARTING)
        try:
            self._socket = self._bind()
        except OSError as e:
            self.set_state(ServerState.FAILED)
            raise ServerStartupError(f"failed to listen on {self.address}: {e}") from e

        config = uvicorn.Config(
            self._app,
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=self._shutdown_timeout,
        )
        self._server = _Server(config)
        self._task = asyncio.create_task(
            self._server.serve(sockets=[self._socket]),
            name="transit-server",
        )
        logger.info(f"Starting Vault transit compatible server on {self.address}")

    def _check_listener(self) -> None:
        """Raise if the listener task already finished during startup."""
        if self._task is None:
            raise RuntimeError("Server not started. Call start() first.")
        if not self._task.done():
            return
        self.set_state(ServerState.FAILED)
        exc = None if self._task.cancelled() else self._task.exception()
        if exc is not None:
            raise ServerStartupError(f"server exited during startup: {exc}") from exc
        raise ServerStartupError("server exited during startup")

    async def wait_ready(self) -> None:
        """
        Poll the health endpoint until the server answers 200.

        Raises:
            ServerStartupError: If the listener fails or the attempts run out
        """
        health_url = f"{self.base_url}/health"
        async with httpx.AsyncClient(timeout=self._health_interval, trust_env=False) as client:
            for attempt in range(1, self._health_attempts + 1):
                self._check_listener()
                try:
                    response = await client.get(health_url)
                    if response.status_code == 200:
                        self.set_state(ServerState.READY)
                        logger.debug(f"Server healthy after {attempt} attempt(s)")
                        return
                except httpx.HTTPError as e:
                    logger.debug(f"Health check attempt {attempt} failed: {e!r}")
                await asyncio.sleep(self._health_interval)

        self._check_listener()
        self.set_state(ServerState.FAILED)
        raise ServerStartupError("server did not become healthy")

    async def shutdown(self) -> None:
        """
        Stop accepting connections and wait for in-flight requests.

        Safe to call on every exit path, including after a failed start;
        only the first call does any work.
        """
        if self._shutdown_done:
            return
        self._shutdown_done = True

        if self._task is None:
            if self._socket is not None:
                self._socket.close()
            self.set_state(ServerState.STOPPED)
            return

        logger.info("Shutting down server...")
        self.set_state(ServerState.SHUTTING_DOWN)
        self._server.should_exit = True
        try:
            await asyncio.shield(self._task)
        except asyncio.CancelledError:
            if not self._task.cancelled():
                raise
        except Exception as e:
            logger.error(f"Server task failed: {e}", exc_info=True)
        finally:
            self._socket.close()
            self.set_state(ServerState.STOPPED)

    async def __aenter__(self) -> "ServerLifecycle":
        try:
            await self.start()
            await self.wait_ready()
        except BaseException:
            await self.shutdown()
            raise
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.shutdown()
