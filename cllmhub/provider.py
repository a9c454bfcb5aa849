"""Provider: publishes one local model to the gateway.

The provider owns the backend and the hub connection. Each inference
request from the gateway runs in its own task so a slow generation never
blocks the read loop or other requests. A heartbeat task reports the
current queue depth every 30 seconds.
"""

import asyncio
import logging
import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .backends import Backend, InferenceRequest, StreamToken, create_backend
from .config import ProviderConfig
from .errors import BackendFailure, BackendUnavailable, HandshakeError, TransportError
from .hub import HubConnection
from .messages import RequestEnvelope

logger = logging.getLogger(__name__)

HEARTBEAT_INTERVAL = 30.0
HEALTH_CHECK_TIMEOUT = 10.0


def new_provider_id() -> str:
    """Short random id, stable for the life of the process."""
    return uuid.uuid4().hex[:8]


@dataclass
class SessionState:
    """Identity and load of this provider."""
    provider_id: str
    model: str
    backend_type: str
    max_concurrent: int
    queue_depth: int = 0  # in-flight requests, including ones waiting for a slot
    request_count: int = 0
    start_time: float = field(default_factory=time.time)


@dataclass
class ProviderStatus:
    """Point-in-time provider status."""
    provider_id: str
    model: str
    status: str
    uptime_seconds: int
    request_count: int
    queue_depth: int
    gpu_util: float
    timestamp: datetime

    def to_dict(self) -> dict:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


class Provider:
    """
    Bridges gateway requests to the local backend.

    Use Provider.create() to health-check the backend and register with
    the gateway, then await start() until the connection ends.
    """

    def __init__(
        self,
        config: ProviderConfig,
        backend: Backend,
        hub: HubConnection,
        provider_id: str,
        heartbeat_interval: float = HEARTBEAT_INTERVAL,
    ):
        self.config = config
        self.backend = backend
        self.hub = hub
        self.heartbeat_interval = heartbeat_interval
        self.session = SessionState(
            provider_id=provider_id,
            model=config.model,
            backend_type=backend.name,
            max_concurrent=config.max_concurrent,
        )

        # Guards queue_depth / request_count; never held across an await
        self._lock = threading.Lock()
        self._slots = asyncio.Semaphore(config.max_concurrent)
        self._tasks: set[asyncio.Task] = set()
        self._heartbeat_task: asyncio.Task | None = None

        # Called after each successful request
        # Signature: (request_id: str, tokens: int, latency_ms: int) -> None
        self.on_request_complete: Callable[[str, int, int], None] | None = None

    @property
    def provider_id(self) -> str:
        return self.session.provider_id

    @property
    def queue_depth(self) -> int:
        with self._lock:
            return self.session.queue_depth

    @property
    def request_count(self) -> int:
        with self._lock:
            return self.session.request_count

    @classmethod
    async def create(cls, config: ProviderConfig, backend: Optional[Backend] = None) -> "Provider":
        """Check the backend, then connect and register with the gateway.

        Raises:
            ConfigurationError: the backend cannot be built
            BackendFailure: the backend health check failed
            HandshakeError: the gateway could not be reached or refused us
        """
        backend = backend or create_backend(config.backend)

        try:
            await asyncio.wait_for(backend.health(), timeout=HEALTH_CHECK_TIMEOUT)
        except asyncio.TimeoutError:
            await backend.close()
            raise BackendUnavailable(f"{backend.name} health check timed out")
        except BackendFailure:
            await backend.close()
            raise

        provider_id = new_provider_id()
        try:
            hub = await HubConnection.connect(
                hub_url=config.hub_url,
                provider_id=provider_id,
                model=config.model,
                backend=backend.name,
                max_concurrent=config.max_concurrent,
                token=config.token,
                description=config.description,
            )
        except HandshakeError:
            await backend.close()
            raise

        return cls(config, backend, hub, provider_id)

    async def start(self) -> None:
        """Serve requests until the connection ends.

        Returns after stop(); raises TransportError if the connection fails.
        """
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())
        try:
            await self.hub.read_loop(self.submit)
        finally:
            await self._stop_heartbeat()

    async def stop(self) -> None:
        """Stop publishing. In-flight requests are left to finish on their own."""
        await self._stop_heartbeat()
        await self.hub.close()

    async def close(self) -> None:
        """Release the backend HTTP client."""
        await self.backend.close()

    async def wait_idle(self) -> None:
        """Wait for every in-flight request to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def status(self) -> ProviderStatus:
        with self._lock:
            return ProviderStatus(
                provider_id=self.session.provider_id,
                model=self.session.model,
                status="online" if self.hub.connected else "offline",
                uptime_seconds=int(time.time() - self.session.start_time),
                request_count=self.session.request_count,
                queue_depth=self.session.queue_depth,
                gpu_util=0.0,
                timestamp=datetime.now(timezone.utc),
            )

    # -------------------------------------------------------------------------
    # Request dispatch
    # -------------------------------------------------------------------------

    def submit(self, envelope: RequestEnvelope) -> asyncio.Task:
        """Run a gateway request in its own task."""
        task = asyncio.create_task(self.handle_request(envelope))
        # Keep a reference so the task isn't garbage collected mid-flight
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def handle_request(self, envelope: RequestEnvelope) -> None:
        """Run one request and send exactly one outcome to the gateway."""
        with self._in_flight():
            start = time.monotonic()
            request_id = envelope.request_id

            if self.config.reject_when_busy and self._slots.locked():
                logger.warning(f"Rejecting {request_id[:8]}: all {self.config.max_concurrent} slots busy")
                await self._send_error(request_id, "provider at capacity")
                return

            async with self._slots:
                logger.info(f"Request {request_id[:8]}... (stream={envelope.params.stream})")
                request = envelope.to_inference_request()
                if envelope.params.stream:
                    await self._handle_stream(request_id, request, start)
                else:
                    await self._handle_complete(request_id, request, start)

    async def _handle_complete(self, request_id: str, request: InferenceRequest, start: float) -> None:
        try:
            result = await self.backend.complete(request)
        except Exception as e:
            await self._fail(request_id, "inference failed", e)
            return

        latency_ms = int((time.monotonic() - start) * 1000)
        try:
            await self.hub.send_response(request_id, result.text, latency_ms, result.usage())
        except TransportError as e:
            logger.error(f"Could not send response for {request_id[:8]}: {e}")
        else:
            logger.info(f"Response sent for {request_id[:8]}... ({latency_ms}ms)")

        self._record_request(request_id, result.total_tokens, latency_ms)

    async def _handle_stream(self, request_id: str, request: InferenceRequest, start: float) -> None:
        index = 0

        async def send_token(token: StreamToken) -> None:
            nonlocal index
            # The backend's terminal token carries no fragment; the summary is sent below
            if not token.token:
                return
            await self.hub.send_stream_token(request_id, token.token, index, done=False)
            index += 1

        try:
            result = await self.backend.stream(request, send_token)
        except Exception as e:
            await self._fail(request_id, "streaming failed", e)
            return

        latency_ms = int((time.monotonic() - start) * 1000)
        try:
            await self.hub.send_stream_token(
                request_id, "", index, done=True, text=result.text, usage=result.usage(),
            )
        except TransportError as e:
            logger.error(f"Could not send final token for {request_id[:8]}: {e}")
        else:
            logger.info(f"Stream complete for {request_id[:8]}... ({index} tokens, {latency_ms}ms)")

        self._record_request(request_id, result.total_tokens, latency_ms)

    async def _fail(self, request_id: str, prefix: str, error: Exception) -> None:
        if isinstance(error, (BackendFailure, TransportError)):
            logger.warning(f"Request {request_id[:8]} failed: {error}")
        else:
            logger.exception(f"Unexpected error handling {request_id[:8]}")
        await self._send_error(request_id, f"{prefix}: {error}")

    async def _send_error(self, request_id: str, message: str) -> None:
        try:
            await self.hub.send_error(request_id, message)
        except TransportError as e:
            logger.error(f"Could not send error for {request_id[:8]}: {e}")

    @contextmanager
    def _in_flight(self):
        with self._lock:
            self.session.queue_depth += 1
        try:
            yield
        finally:
            with self._lock:
                self.session.queue_depth -= 1

    def _record_request(self, request_id: str, tokens: int, latency_ms: int) -> None:
        with self._lock:
            self.session.request_count += 1
        if self.on_request_complete:
            self.on_request_complete(request_id, tokens, latency_ms)

    # -------------------------------------------------------------------------
    # Heartbeat
    # -------------------------------------------------------------------------

    async def _heartbeat_loop(self) -> None:
        """Send a heartbeat now and then every heartbeat_interval seconds.

        Beats are pinned to the loop clock, so time spent sending does not
        stretch the period. A beat whose slot has already passed is skipped.
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        beat = 0
        while True:
            await self._send_heartbeat()
            elapsed = loop.time() - start
            beat = max(beat + 1, int(elapsed // self.heartbeat_interval) + 1)
            await asyncio.sleep(start + beat * self.heartbeat_interval - loop.time())

    async def _send_heartbeat(self) -> None:
        depth = self.queue_depth
        try:
            await self.hub.send_heartbeat(depth, 0.0)
            logger.debug(f"Heartbeat sent (queue_depth={depth})")
        except TransportError as e:
            logger.warning(f"Heartbeat failed: {e}")

    async def _stop_heartbeat(self) -> None:
        task = self._heartbeat_task
        if task is None:
            return
        self._heartbeat_task = None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
