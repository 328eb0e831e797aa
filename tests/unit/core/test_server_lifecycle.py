"""
Unit tests for the transit server lifecycle.

Servers bind ephemeral loopback ports so tests can run in parallel.
"""

import asyncio
import base64
import socket

import httpx
import pytest
from fastapi import FastAPI, Response

from sops_sakura_kms.core.lifecycle import ServerLifecycle, ServerState
from sops_sakura_kms.exceptions import ServerStartupError
from sops_sakura_kms.transit import create_app


class TestServerLifecycle:
    """Test start, readiness and shutdown."""

    @pytest.mark.asyncio
    async def test_start_ready_shutdown(self, stub_cipher):
        """Test the full state sequence."""
        server = ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0", shutdown_timeout=1.0)
        transitions = []
        server.register_state_callback(lambda old, new: transitions.append(new))

        assert server.state == ServerState.STOPPED
        await server.start()
        assert server.state == ServerState.STARTING
        assert server.address != "127.0.0.1:0"

        await server.wait_ready()
        assert server.state == ServerState.READY

        async with httpx.AsyncClient(base_url=server.base_url, trust_env=False) as client:
            response = await client.put("/v1/transit/encrypt/k1", json={"plaintext": "SGVsbG8="})
        assert response.json() == {"ciphertext": "vault:v1:SGVsbG8="}

        await server.shutdown()
        assert server.state == ServerState.STOPPED
        assert transitions == [
            ServerState.STARTING,
            ServerState.READY,
            ServerState.SHUTTING_DOWN,
            ServerState.STOPPED,
        ]

    @pytest.mark.asyncio
    async def test_context_manager_releases_port(self, stub_cipher):
        """Test the scoped form shuts down and frees the listener."""
        async with ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0") as server:
            assert server.state == ServerState.READY
            host, port = server.address.rsplit(":", 1)

        assert server.state == ServerState.STOPPED
        with pytest.raises(httpx.ConnectError):
            async with httpx.AsyncClient(trust_env=False) as client:
                await client.get(f"http://{host}:{port}/health")

    @pytest.mark.asyncio
    async def test_shutdown_is_idempotent(self, stub_cipher):
        """Test calling shutdown twice is safe."""
        server = ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0")
        await server.start()
        await server.wait_ready()

        await server.shutdown()
        await server.shutdown()

        assert server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_shutdown_without_start(self, stub_cipher):
        """Test shutdown before start is a no-op."""
        server = ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0")

        await server.shutdown()

        assert server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, stub_cipher):
        """Test a running server cannot be started again."""
        async with ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0") as server:
            with pytest.raises(RuntimeError):
                await server.start()

    @pytest.mark.asyncio
    async def test_address_in_use(self, stub_cipher):
        """Test bind failures surface immediately."""
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", 0))
        blocker.listen(1)
        port = blocker.getsockname()[1]
        try:
            server = ServerLifecycle(create_app(stub_cipher), f"127.0.0.1:{port}")
            with pytest.raises(ServerStartupError) as exc_info:
                async with server:
                    pytest.fail("server should not start")

            assert "failed to listen" in str(exc_info.value)
            assert server.state == ServerState.STOPPED
        finally:
            blocker.close()

    @pytest.mark.asyncio
    async def test_health_never_ready(self):
        """Test exhausting the attempt budget is a startup error."""
        app = FastAPI()

        @app.get("/health")
        async def unhealthy():
            return Response(status_code=503)

        server = ServerLifecycle(app, "127.0.0.1:0", health_attempts=3, health_interval=0.01)
        with pytest.raises(ServerStartupError, match="server did not become healthy"):
            async with server:
                pass

        assert server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_listener_failure_detected_early(self, stub_cipher):
        """Test a crashed listener task is reported without waiting for all attempts."""
        server = ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0", health_attempts=1000)

        async def crash(sockets=None):
            raise OSError("listener exploded")

        await server.start()
        server._task.cancel()
        server._task = asyncio.create_task(crash())
        await asyncio.sleep(0)

        with pytest.raises(ServerStartupError, match="listener exploded"):
            await asyncio.wait_for(server.wait_ready(), timeout=2.0)
        assert server.state == ServerState.FAILED

        await server.shutdown()
        assert server.state == ServerState.STOPPED

    @pytest.mark.asyncio
    async def test_inflight_request_completes_on_shutdown(self):
        """Test shutdown waits for in-flight requests."""
        app = FastAPI()
        started = asyncio.Event()

        @app.get("/health")
        async def health():
            return {}

        @app.get("/slow")
        async def slow():
            started.set()
            await asyncio.sleep(0.3)
            return {"done": True}

        async with ServerLifecycle(app, "127.0.0.1:0", shutdown_timeout=5.0) as server:
            async with httpx.AsyncClient(base_url=server.base_url, trust_env=False) as client:
                request = asyncio.create_task(client.get("/slow"))
                await started.wait()
                await server.shutdown()
                response = await request

        assert response.status_code == 200
        assert response.json() == {"done": True}

    @pytest.mark.asyncio
    async def test_concurrent_requests(self, stub_cipher):
        """Test concurrent encrypt and decrypt calls on a running server."""
        plaintexts = [f"secret-{i}".encode() for i in range(10)]

        async with ServerLifecycle(create_app(stub_cipher), "127.0.0.1:0") as server:
            async with httpx.AsyncClient(base_url=server.base_url, trust_env=False) as client:
                encrypted = await asyncio.gather(*(
                    client.put(
                        f"/v1/transit/encrypt/key-{i}",
                        json={"plaintext": base64.b64encode(p).decode()},
                    )
                    for i, p in enumerate(plaintexts)
                ))
                decrypted = await asyncio.gather(*(
                    client.post(
                        f"/v1/transit/decrypt/key-{i}",
                        json={"ciphertext": response.json()["ciphertext"]},
                    )
                    for i, response in enumerate(encrypted)
                ))

        assert all(response.status_code == 200 for response in encrypted + decrypted)
        assert [base64.b64decode(r.json()["plaintext"]) for r in decrypted] == plaintexts
        assert sorted(call[1] for call in stub_cipher.calls if call[0] == "encrypt") == sorted(
            f"key-{i}" for i in range(10)
        )
