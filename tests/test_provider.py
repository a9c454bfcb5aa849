"""
Tests for request dispatch and heartbeats.

FakeHub records every outbound frame in wire format; FakeBackend answers
from a script and can be held open to observe concurrency.
"""

import asyncio
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from cllmhub.backends import InferenceResult, StreamToken
from cllmhub.backends.ollama import OllamaBackend
from cllmhub.config import BackendConfig, ProviderConfig
from cllmhub.errors import BackendError, BackendUnavailable, HandshakeError, TransportError
from cllmhub.messages import (
    InferenceParams,
    RequestEnvelope,
    error_message,
    heartbeat_message,
    response_message,
    stream_token_message,
)
from cllmhub.provider import Provider


class FakeHub:
    """Stands in for HubConnection and records frames as the gateway would see them."""

    def __init__(self, provider_id: str = "prov0001", model: str = "llama3"):
        self.provider_id = provider_id
        self.model = model
        self.frames = []
        self.connected = True
        self.fail_stream_tokens = False
        self._closed = asyncio.Event()

    def of_type(self, msg_type):
        return [f for f in self.frames if f["type"] == msg_type]

    async def read_loop(self, on_request):
        await self._closed.wait()

    async def close(self):
        self.connected = False
        self._closed.set()

    async def send_response(self, request_id, text, latency_ms, usage):
        self.frames.append(response_message(request_id, text, self.provider_id, latency_ms, usage))

    async def send_stream_token(self, request_id, token, index, done, text="", usage=None):
        if self.fail_stream_tokens:
            raise TransportError("send failed: connection lost")
        self.frames.append(stream_token_message(request_id, token, index, done, text, usage))

    async def send_error(self, request_id, message):
        self.frames.append(error_message(request_id, message))

    async def send_heartbeat(self, queue_depth, gpu_util=0.0):
        self.frames.append(heartbeat_message(self.provider_id, self.model, queue_depth, gpu_util))


class FakeBackend:
    """Scripted backend. Set `gate` to hold every call until it is set."""

    name = "ollama"

    def __init__(self, text: str = "Hello world", fragments=None, error: Exception = None):
        self.text = text
        self.fragments = fragments if fragments is not None else ["Hello", " ", "world"]
        self.error = error
        self.gate = None
        self.active = 0
        self.peak_active = 0
        self.closed = False

    async def _enter(self):
        self.active += 1
        self.peak_active = max(self.peak_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
        finally:
            self.active -= 1

    async def complete(self, request):
        await self._enter()
        if self.error:
            raise self.error
        return InferenceResult(text=self.text, prompt_tokens=4, completion_tokens=3)

    async def stream(self, request, on_token):
        await self._enter()
        for i, fragment in enumerate(self.fragments):
            await on_token(StreamToken(token=fragment, index=i))
        if self.error:
            raise self.error
        text = "".join(self.fragments)
        await on_token(StreamToken(token="", index=len(self.fragments), done=True, text=text))
        return InferenceResult(text=text, prompt_tokens=4, completion_tokens=len(self.fragments))

    async def health(self):
        if self.error:
            raise self.error

    async def close(self):
        self.closed = True


def make_config(**kwargs) -> ProviderConfig:
    return ProviderConfig(model="llama3", token="tok", backend=BackendConfig(model="llama3"), **kwargs)


def envelope(request_id: str, stream: bool = False) -> RequestEnvelope:
    return RequestEnvelope(
        request_id=request_id,
        model="llama3",
        prompt="hi",
        params=InferenceParams(max_tokens=32, stream=stream),
    )


def make_provider(backend=None, hub=None, **config_kwargs) -> Provider:
    return Provider(
        make_config(**config_kwargs),
        backend or FakeBackend(),
        hub or FakeHub(),
        provider_id="prov0001",
    )


# =============================================================================
# Non-streaming
# =============================================================================

class TestCompleteRequests:

    @pytest.mark.asyncio
    async def test_success_sends_one_response(self):
        provider = make_provider()
        completed = []
        provider.on_request_complete = lambda rid, tokens, ms: completed.append((rid, tokens))

        await provider.handle_request(envelope("req-1"))

        frames = provider.hub.frames
        assert len(frames) == 1
        response = frames[0]
        assert response["type"] == "response"
        assert response["request_id"] == "req-1"
        assert response["text"] == "Hello world"
        assert response["provider_id"] == "prov0001"
        assert response["usage"] == {"prompt_tokens": 4, "completion_tokens": 3, "total_tokens": 7}
        assert response["latency_ms"] >= 0
        assert provider.request_count == 1
        assert completed == [("req-1", 7)]

    @pytest.mark.asyncio
    async def test_backend_error_sends_exactly_one_error(self):
        backend = FakeBackend(error=BackendError("ollama", 500, "out of memory"))
        provider = make_provider(backend=backend)

        await provider.handle_request(envelope("req-1"))

        assert provider.hub.of_type("response") == []
        errors = provider.hub.of_type("error")
        assert len(errors) == 1
        assert errors[0]["request_id"] == "req-1"
        assert errors[0]["message"].startswith("inference failed: ")
        assert "status 500" in errors[0]["message"]
        assert provider.request_count == 0
        assert provider.queue_depth == 0

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_reported(self):
        provider = make_provider(backend=FakeBackend(error=ValueError("bad")))

        await provider.handle_request(envelope("req-1"))

        assert provider.hub.of_type("error")[0]["message"] == "inference failed: bad"

    @pytest.mark.asyncio
    async def test_backend_failure_keeps_connection_open(self):
        provider = make_provider(backend=FakeBackend(error=BackendUnavailable("not reachable")))

        await provider.handle_request(envelope("req-1"))

        assert provider.hub.connected

    @pytest.mark.asyncio
    async def test_http_500_from_real_backend_sends_one_error(self):
        client = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, text="CUDA out of memory"),
        ))
        provider = make_provider(backend=OllamaBackend(model="llama3", client=client))

        await provider.handle_request(envelope("req-500"))

        assert provider.hub.of_type("response") == []
        errors = provider.hub.of_type("error")
        assert len(errors) == 1
        assert errors[0]["request_id"] == "req-500"
        assert "status 500" in errors[0]["message"]
        assert "CUDA out of memory" in errors[0]["message"]
        assert provider.queue_depth == 0
        await client.aclose()


# =============================================================================
# Streaming
# =============================================================================

class TestStreamRequests:

    @pytest.mark.asyncio
    async def test_indices_contiguous_and_final_text_matches(self):
        backend = FakeBackend(fragments=["The", " quick", "", " fox"])
        provider = make_provider(backend=backend)

        await provider.handle_request(envelope("req-s", stream=True))

        tokens = provider.hub.of_type("stream_token")
        partial = [t for t in tokens if not t["done"]]
        final = [t for t in tokens if t["done"]]

        assert [t["index"] for t in partial] == [0, 1, 2]
        assert len(final) == 1
        assert final[0] is tokens[-1]
        assert final[0]["index"] == 3
        assert final[0]["token"] == ""
        assert final[0]["text"] == "".join(t["token"] for t in partial) == "The quick fox"
        assert final[0]["usage"]["total_tokens"] == 8
        assert provider.hub.of_type("error") == []
        assert provider.request_count == 1

    @pytest.mark.asyncio
    async def test_mid_stream_failure_sends_error_after_partials(self):
        backend = FakeBackend(fragments=["a", "b"], error=BackendUnavailable("error reading stream: reset"))
        provider = make_provider(backend=backend)

        await provider.handle_request(envelope("req-s", stream=True))

        frames = provider.hub.frames
        assert [f["type"] for f in frames] == ["stream_token", "stream_token", "error"]
        assert not any(f.get("done") for f in frames)
        assert frames[-1]["message"].startswith("streaming failed: ")

    @pytest.mark.asyncio
    async def test_send_failure_aborts_stream(self):
        hub = FakeHub()
        hub.fail_stream_tokens = True
        provider = make_provider(hub=hub)

        await provider.handle_request(envelope("req-s", stream=True))

        errors = hub.of_type("error")
        assert len(errors) == 1
        assert "connection lost" in errors[0]["message"]
        assert provider.request_count == 0


# =============================================================================
# Concurrency
# =============================================================================

class TestConcurrency:

    @pytest.mark.asyncio
    async def test_queue_depth_returns_to_zero(self):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        provider = make_provider(backend=backend, max_concurrent=5)

        for i in range(5):
            provider.submit(envelope(f"req-{i}"))
        await asyncio.sleep(0.05)

        assert provider.queue_depth == 5
        assert backend.peak_active == 5

        backend.gate.set()
        await provider.wait_idle()

        assert provider.queue_depth == 0
        assert len(provider.hub.of_type("response")) == 5
        assert provider.request_count == 5

    @pytest.mark.asyncio
    async def test_excess_requests_queue_behind_limit(self):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        provider = make_provider(backend=backend, max_concurrent=2)

        for i in range(4):
            provider.submit(envelope(f"req-{i}"))
        await asyncio.sleep(0.05)

        # Waiting requests still count towards the load the gateway sees
        assert provider.queue_depth == 4
        assert backend.active == 2

        backend.gate.set()
        await provider.wait_idle()

        assert backend.peak_active == 2
        assert len(provider.hub.of_type("response")) == 4
        assert provider.queue_depth == 0

    @pytest.mark.asyncio
    async def test_reject_when_busy(self):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        provider = make_provider(backend=backend, max_concurrent=1, reject_when_busy=True)

        provider.submit(envelope("req-1"))
        await asyncio.sleep(0.05)
        await provider.handle_request(envelope("req-2"))

        errors = provider.hub.of_type("error")
        assert errors == [{"type": "error", "request_id": "req-2", "message": "provider at capacity"}]

        backend.gate.set()
        await provider.wait_idle()

        responses = provider.hub.of_type("response")
        assert [r["request_id"] for r in responses] == ["req-1"]
        assert provider.queue_depth == 0


# =============================================================================
# Heartbeats and lifecycle
# =============================================================================

class TestHeartbeat:

    @pytest.mark.asyncio
    async def test_immediate_then_periodic(self):
        provider = Provider(make_config(), FakeBackend(), FakeHub(), "prov0001", heartbeat_interval=0.1)

        run = asyncio.create_task(provider.start())
        await asyncio.sleep(0.35)
        await provider.stop()
        await run

        beats = provider.hub.of_type("heartbeat")
        # t=0, 0.1, 0.2, 0.3
        assert 3 <= len(beats) <= 5
        assert beats[0] == {
            "type": "heartbeat",
            "provider_id": "prov0001",
            "model": "llama3",
            "queue_depth": 0,
            "gpu_util": 0.0,
        }

    @pytest.mark.asyncio
    async def test_heartbeat_stops_with_provider(self):
        provider = Provider(make_config(), FakeBackend(), FakeHub(), "prov0001", heartbeat_interval=0.05)

        run = asyncio.create_task(provider.start())
        await asyncio.sleep(0.02)
        await provider.stop()
        await run
        count = len(provider.hub.of_type("heartbeat"))
        await asyncio.sleep(0.15)

        assert len(provider.hub.of_type("heartbeat")) == count

    @pytest.mark.asyncio
    async def test_slow_sends_do_not_stretch_period(self):
        loop = asyncio.get_running_loop()
        hub = FakeHub()
        sent_at = []

        async def slow_heartbeat(queue_depth, gpu_util=0.0):
            sent_at.append(loop.time())
            await asyncio.sleep(0.05)

        hub.send_heartbeat = slow_heartbeat
        provider = Provider(make_config(), FakeBackend(), hub, "prov0001", heartbeat_interval=0.1)

        run = asyncio.create_task(provider.start())
        await asyncio.sleep(0.45)
        await provider.stop()
        await run

        assert len(sent_at) >= 4
        gaps = [b - a for a, b in zip(sent_at, sent_at[1:])]
        # Send time would otherwise add 0.05s to every gap
        assert all(gap < 0.14 for gap in gaps), gaps
        assert (sent_at[-1] - sent_at[0]) / len(gaps) < 0.12

    @pytest.mark.asyncio
    async def test_heartbeat_reports_queue_depth(self):
        backend = FakeBackend()
        backend.gate = asyncio.Event()
        provider = make_provider(backend=backend, max_concurrent=3)
        for i in range(3):
            provider.submit(envelope(f"req-{i}"))
        await asyncio.sleep(0.05)

        await provider._send_heartbeat()

        assert provider.hub.of_type("heartbeat")[-1]["queue_depth"] == 3
        backend.gate.set()
        await provider.wait_idle()

    @pytest.mark.asyncio
    async def test_failed_heartbeat_is_not_fatal(self):
        hub = FakeHub()
        hub.send_heartbeat = AsyncMock(side_effect=TransportError("send timed out after 10.0s"))
        provider = make_provider(hub=hub)

        await provider._send_heartbeat()

        assert hub.connected


class TestLifecycle:

    @pytest.mark.asyncio
    async def test_create_checks_backend_then_registers(self):
        backend = FakeBackend()
        hub = FakeHub()
        connect = AsyncMock(return_value=hub)

        with patch("cllmhub.provider.HubConnection.connect", connect):
            provider = await Provider.create(make_config(description="fast", max_concurrent=3), backend=backend)

        kwargs = connect.call_args.kwargs
        assert kwargs["backend"] == "ollama"
        assert kwargs["max_concurrent"] == 3
        assert kwargs["description"] == "fast"
        assert kwargs["provider_id"] == provider.provider_id
        assert len(provider.provider_id) == 8

    @pytest.mark.asyncio
    async def test_create_fails_on_unhealthy_backend(self):
        backend = FakeBackend(error=BackendUnavailable("ollama not reachable"))
        connect = AsyncMock()

        with patch("cllmhub.provider.HubConnection.connect", connect):
            with pytest.raises(BackendUnavailable):
                await Provider.create(make_config(), backend=backend)

        connect.assert_not_called()
        assert backend.closed

    @pytest.mark.asyncio
    async def test_create_fails_on_handshake_error(self):
        backend = FakeBackend()

        with patch("cllmhub.provider.HubConnection.connect", AsyncMock(side_effect=HandshakeError("registration failed: nope"))):
            with pytest.raises(HandshakeError):
                await Provider.create(make_config(), backend=backend)

        assert backend.closed

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        provider = make_provider()
        await provider.handle_request(envelope("req-1"))

        status = provider.status().to_dict()

        assert status["provider_id"] == "prov0001"
        assert status["model"] == "llama3"
        assert status["status"] == "online"
        assert status["request_count"] == 1
        assert status["queue_depth"] == 0
        assert isinstance(status["timestamp"], str)

        await provider.stop()
        assert provider.status().status == "offline"
