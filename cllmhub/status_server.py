"""Local status endpoint for a running provider.

Optional (`cllmhub publish --status-port N`). Serves:
- GET /health - liveness and hub connection state
- GET /status - ProviderStatus snapshot

uvicorn runs inside the provider's event loop, bound to localhost.
"""

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Optional

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel

from .runtime import get_version

if TYPE_CHECKING:
    from .provider import Provider

logger = logging.getLogger(__name__)


class HealthResponse(BaseModel):
    status: str
    connected: bool


class StatusResponse(BaseModel):
    provider_id: str
    model: str
    status: str
    uptime_seconds: int
    request_count: int
    queue_depth: int
    gpu_util: float
    timestamp: str


def create_status_app(provider: "Provider") -> FastAPI:
    """Build the FastAPI app exposing provider status."""
    app = FastAPI(
        title="cLLMHub Provider",
        description="Status of a locally published model",
        version=get_version(),
    )

    @app.get("/health", response_model=HealthResponse)
    async def health():
        """Health check endpoint."""
        return {"status": "ok", "connected": provider.hub.connected}

    @app.get("/status", response_model=StatusResponse)
    async def status():
        """Current provider status."""
        return provider.status().to_dict()

    return app


class StatusServer:
    """Runs the status app on the current event loop."""

    def __init__(self, provider: "Provider", host: str = "127.0.0.1", port: int = 0):
        self.provider = provider
        self.host = host
        self.requested_port = port
        self.port: Optional[int] = None
        self._server: Optional[uvicorn.Server] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self) -> int:
        """Start serving and return the bound port."""
        config = uvicorn.Config(
            create_status_app(self.provider),
            host=self.host,
            port=self.requested_port,
            log_level="warning",
            access_log=False,
        )
        server = uvicorn.Server(config)
        # The CLI owns SIGINT/SIGTERM
        server.capture_signals = contextlib.nullcontext
        self._server = server
        self._task = asyncio.create_task(server.serve())

        while not server.started:
            if self._task.done():
                # Surface bind errors etc.
                self._task.result()
                raise RuntimeError("status server exited during startup")
            await asyncio.sleep(0.05)

        self.port = server.servers[0].sockets[0].getsockname()[1]
        logger.info(f"Status endpoint listening on http://{self.host}:{self.port}")
        return self.port

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
