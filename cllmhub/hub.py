"""WebSocket connection to the cLLMHub gateway.

This is the transport half of the provider bridge. It:
1. Opens one persistent WebSocket to the gateway
2. Registers the provider (model, backend, concurrency, token)
3. Reads frames sequentially and hands inference requests to a callback
4. Serializes every outbound frame behind one lock

There is no reconnection: once the connection drops the session is over
and the process has to be restarted.
"""

import asyncio
import json
import logging
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import websockets
from pydantic import ValidationError

from .errors import HandshakeError, TransportError
from .messages import (
    MSG_ERROR,
    MSG_PING,
    MSG_REGISTERED,
    MSG_REQUEST,
    RequestEnvelope,
    error_message,
    heartbeat_message,
    register_message,
    response_message,
    stream_token_message,
)

logger = logging.getLogger(__name__)

PROVIDER_WS_PATH = "/provider/ws"
HANDSHAKE_TIMEOUT = 15.0
WRITE_TIMEOUT = 10.0

_WS_SCHEMES = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}


class ConnectionState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    REGISTERING = "registering"
    ACTIVE = "active"
    CLOSED = "closed"


def provider_ws_url(hub_url: str) -> str:
    """Turn the hub base URL into the provider WebSocket endpoint.

    http -> ws, https -> wss, ws/wss kept, anything else -> ws.
    The path is always replaced with /provider/ws.
    """
    parts = urlsplit(hub_url.strip())
    if not parts.netloc:
        raise HandshakeError(f"invalid hub URL: {hub_url!r}")
    scheme = _WS_SCHEMES.get(parts.scheme.lower(), "ws")
    return urlunsplit((scheme, parts.netloc, PROVIDER_WS_PATH, parts.query, ""))


class HubConnection:
    """
    The provider's single connection to the gateway.

    Create it with HubConnection.connect(), which only returns once the
    gateway has acknowledged the registration.
    """

    def __init__(self, provider_id: str, model: str):
        self.provider_id = provider_id
        self.model = model
        self.ws: Any = None
        self.state = ConnectionState.DISCONNECTED
        self._write_lock = asyncio.Lock()
        self._closing = False

    @property
    def connected(self) -> bool:
        return self.state == ConnectionState.ACTIVE

    @classmethod
    async def connect(
        cls,
        hub_url: str,
        provider_id: str,
        model: str,
        backend: str,
        max_concurrent: int,
        token: str,
        description: str = "",
        handshake_timeout: float = HANDSHAKE_TIMEOUT,
    ) -> "HubConnection":
        """Dial the gateway, register, and wait for confirmation.

        Raises:
            HandshakeError: dial failed, the gateway rejected the
                registration, or no reply arrived in time
        """
        conn = cls(provider_id=provider_id, model=model)
        url = provider_ws_url(hub_url)

        conn.state = ConnectionState.CONNECTING
        logger.info(f"Connecting to {url}...")
        try:
            conn.ws = await websockets.connect(url, ping_interval=30, ping_timeout=10)
        except websockets.exceptions.InvalidStatus as e:
            conn.state = ConnectionState.CLOSED
            status = e.response.status_code
            if status == 401:
                raise HandshakeError("failed to connect to hub: HTTP 401: Invalid or expired token") from e
            raise HandshakeError(f"failed to connect to hub: HTTP {status}") from e
        except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
            conn.state = ConnectionState.CLOSED
            raise HandshakeError(f"failed to connect to hub: {e}") from e

        try:
            await conn._register(
                register_message(
                    provider_id=provider_id,
                    model=model,
                    backend=backend,
                    max_concurrent=max_concurrent,
                    token=token,
                    description=description,
                ),
                handshake_timeout,
            )
        except BaseException:
            await conn.close()
            raise

        conn.state = ConnectionState.ACTIVE
        logger.info(f"Registered as provider {provider_id}")
        return conn

    async def _register(self, register_msg: dict, timeout: float) -> None:
        self.state = ConnectionState.REGISTERING
        try:
            await self._send(register_msg)
        except TransportError as e:
            raise HandshakeError(f"failed to send register: {e}") from e
        logger.debug("Registration sent, waiting for ACK...")

        try:
            raw = await asyncio.wait_for(self.ws.recv(), timeout=timeout)
        except asyncio.TimeoutError as e:
            raise HandshakeError("registration timeout (no response from hub)") from e
        except websockets.ConnectionClosed as e:
            raise HandshakeError(f"failed to read register response: {e}") from e

        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise HandshakeError(f"failed to parse register response: {e}") from e
        if not isinstance(data, dict):
            raise HandshakeError("failed to parse register response: not a JSON object")

        msg_type = data.get("type")
        if msg_type == MSG_ERROR:
            raise HandshakeError(f"registration failed: {data.get('message', 'unknown')}")
        if msg_type != MSG_REGISTERED:
            raise HandshakeError(f"unexpected response type: {msg_type}")

    async def read_loop(self, on_request: Callable[[RequestEnvelope], Any]) -> None:
        """Read frames until the connection ends.

        Returns normally after close(). Raises TransportError if the
        connection fails or the gateway closes it.
        """
        try:
            async for raw in self.ws:
                self._handle_frame(raw, on_request)
        except asyncio.CancelledError:
            logger.info("Read loop cancelled")
            raise
        except websockets.ConnectionClosed as e:
            if self._closing:
                logger.info("Connection closed")
                return
            raise TransportError(f"ws read error: {e}") from e
        finally:
            self.state = ConnectionState.CLOSED

        if not self._closing:
            raise TransportError("connection closed by hub")
        logger.info("Connection closed")

    def _handle_frame(self, raw: Any, on_request: Callable[[RequestEnvelope], Any]) -> None:
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, TypeError):
            logger.debug("Dropping malformed frame")
            return
        if not isinstance(data, dict):
            return

        msg_type = data.get("type")
        if msg_type == MSG_REQUEST:
            try:
                envelope = RequestEnvelope.model_validate(data)
            except ValidationError as e:
                logger.warning(f"invalid request message: {e}")
                return
            on_request(envelope)
        elif msg_type == MSG_PING:
            # Keeps the connection alive, no answer needed
            pass
        else:
            logger.debug(f"Unknown message type: {msg_type}")

    # -------------------------------------------------------------------------
    # Outbound frames
    # -------------------------------------------------------------------------

    async def send_response(self, request_id: str, text: str, latency_ms: int, usage: dict) -> None:
        await self._send(response_message(request_id, text, self.provider_id, latency_ms, usage))

    async def send_stream_token(
        self,
        request_id: str,
        token: str,
        index: int,
        done: bool,
        text: str = "",
        usage: Optional[dict] = None,
    ) -> None:
        await self._send(stream_token_message(request_id, token, index, done, text, usage))

    async def send_error(self, request_id: str, message: str) -> None:
        await self._send(error_message(request_id, message))

    async def send_heartbeat(self, queue_depth: int, gpu_util: float = 0.0) -> None:
        await self._send(heartbeat_message(self.provider_id, self.model, queue_depth, gpu_util))

    async def _send(self, data: dict, timeout: float = WRITE_TIMEOUT) -> None:
        """Send one frame to the gateway with timeout.

        Raises:
            TransportError: not connected, send timed out, or socket failed.
                The read loop is left to notice a dead connection itself.
        """
        # Capture reference to avoid race with close()
        ws = self.ws
        if ws is None or self.state == ConnectionState.CLOSED:
            raise TransportError("not connected")

        async with self._write_lock:
            try:
                await asyncio.wait_for(ws.send(json.dumps(data)), timeout=timeout)
            except asyncio.TimeoutError as e:
                raise TransportError(f"send timed out after {timeout}s") from e
            except (websockets.ConnectionClosed, OSError) as e:
                raise TransportError(f"send failed: {e}") from e

    async def close(self) -> None:
        """Close the connection. Safe to call more than once."""
        if self._closing:
            return
        self._closing = True
        self.state = ConnectionState.CLOSED
        if self.ws is not None:
            try:
                await self.ws.close()
            except (websockets.exceptions.WebSocketException, OSError) as e:
                logger.debug(f"Error closing connection: {e}")
