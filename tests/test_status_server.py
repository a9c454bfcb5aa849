"""Tests for the local status endpoint."""

import httpx
import pytest
from fastapi.testclient import TestClient

from cllmhub.status_server import StatusServer, create_status_app
from tests.test_provider import FakeHub, envelope, make_provider


class TestStatusApp:

    def test_health(self):
        provider = make_provider()
        client = TestClient(create_status_app(provider))

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "connected": True}

    def test_health_when_disconnected(self):
        hub = FakeHub()
        hub.connected = False
        client = TestClient(create_status_app(make_provider(hub=hub)))

        assert client.get("/health").json()["connected"] is False

    def test_status(self):
        provider = make_provider()
        client = TestClient(create_status_app(provider))

        data = client.get("/status").json()

        assert data["provider_id"] == "prov0001"
        assert data["model"] == "llama3"
        assert data["status"] == "online"
        assert data["request_count"] == 0
        assert data["queue_depth"] == 0
        assert data["gpu_util"] == 0.0


class TestStatusServer:

    @pytest.mark.asyncio
    async def test_serves_on_ephemeral_port(self):
        provider = make_provider()
        await provider.handle_request(envelope("req-1"))
        server = StatusServer(provider, port=0)

        port = await server.start()
        try:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"http://127.0.0.1:{port}/status")
        finally:
            await server.stop()

        assert port > 0
        assert response.status_code == 200
        assert response.json()["request_count"] == 1

    @pytest.mark.asyncio
    async def test_stop_without_start(self):
        await StatusServer(make_provider()).stop()
