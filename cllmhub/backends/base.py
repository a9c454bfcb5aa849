"""Common contract for local inference backends.

Every backend variant exposes the same three async operations:

- complete(): one non-streaming generation call
- stream(): token-by-token generation, pushed to an async sink
- health(): reachability (and, where supported, model presence) probe

Transport failures become BackendUnavailable, non-200 answers become
BackendError (with the body), and undecodable answers become
BackendProtocolError, so the dispatcher can relay any of them to the
gateway as a plain error message.
"""

import json
import logging
from abc import ABC, abstractmethod
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

import httpx

from ..config import BackendType
from ..errors import BackendError, BackendProtocolError, BackendUnavailable

logger = logging.getLogger(__name__)

# Generation can take minutes on consumer hardware
BACKEND_TIMEOUT = httpx.Timeout(300.0)


@dataclass(frozen=True)
class InferenceRequest:
    """Sampling inputs for one generation call."""
    prompt: str
    max_tokens: int = 0  # 0 = backend default
    temperature: float = 0.0
    top_p: float = 0.0


@dataclass
class InferenceResult:
    """Completed generation."""
    text: str
    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def usage(self) -> dict:
        """Usage block in gateway wire format."""
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass(frozen=True)
class StreamToken:
    """One streamed unit.

    Non-terminal tokens carry a text fragment. The terminal token has an
    empty fragment and carries the full text and usage instead.
    """
    token: str
    index: int
    done: bool = False
    text: Optional[str] = None
    usage: Optional[dict] = None


TokenSink = Callable[[StreamToken], Awaitable[None]]


class StreamAccumulator:
    """Numbers fragments, forwards them to the sink and builds the result."""

    def __init__(self, on_token: TokenSink):
        self.on_token = on_token
        self.parts: list[str] = []
        self.index = 0

    async def fragment(self, token: str) -> None:
        if not token:
            return
        self.parts.append(token)
        await self.on_token(StreamToken(token=token, index=self.index))
        self.index += 1

    async def finish(self, prompt_tokens: int = 0, completion_tokens: int = 0) -> InferenceResult:
        result = InferenceResult(
            text="".join(self.parts),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
        )
        await self.on_token(StreamToken(
            token="",
            index=self.index,
            done=True,
            text=result.text,
            usage=result.usage(),
        ))
        return result


def sampling_fields(**fields: Any) -> dict:
    """Drop zero-valued sampling fields so the backend applies its own defaults."""
    return {key: value for key, value in fields.items() if value}


class Backend(ABC):
    """Base class for a local inference server."""

    type: BackendType
    default_url: str = ""

    def __init__(
        self,
        url: str = "",
        model: str = "",
        api_key: str = "",
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.url = (url or self.default_url).rstrip("/")
        self.model = model
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=BACKEND_TIMEOUT)

    @property
    def name(self) -> str:
        return self.type.value

    @abstractmethod
    async def complete(self, request: InferenceRequest) -> InferenceResult:
        """Generate the full completion in one call."""

    @abstractmethod
    async def stream(self, request: InferenceRequest, on_token: TokenSink) -> InferenceResult:
        """Generate a completion, pushing tokens to on_token as they arrive.

        An exception raised by on_token aborts the stream and propagates.
        """

    @abstractmethod
    async def health(self) -> None:
        """Raise if the backend is not ready to serve."""

    async def close(self) -> None:
        """Close the HTTP client. Call on shutdown."""
        await self.client.aclose()

    # -------------------------------------------------------------------------
    # HTTP helpers
    # -------------------------------------------------------------------------

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    async def _get(self, url: str) -> httpx.Response:
        try:
            return await self.client.get(url, headers=self._headers())
        except httpx.TransportError as e:
            raise BackendUnavailable(f"{self.name} not reachable: {e}") from e

    async def _post_json(self, url: str, payload: dict) -> dict:
        """POST a JSON body and decode the JSON answer."""
        try:
            response = await self.client.post(url, json=payload, headers=self._headers())
        except httpx.TransportError as e:
            raise BackendUnavailable(f"failed to send request: {e}") from e

        if response.status_code != 200:
            raise BackendError(self.name, response.status_code, response.text)

        try:
            data = response.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise BackendProtocolError(f"failed to decode response: {e}") from e
        if not isinstance(data, dict):
            raise BackendProtocolError("failed to decode response: expected a JSON object")
        return data

    async def _stream_lines(self, url: str, payload: dict) -> AsyncIterator[str]:
        """POST a streaming request and yield non-empty response lines."""
        try:
            async with self.client.stream("POST", url, json=payload, headers=self._headers()) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    raise BackendError(self.name, response.status_code, body)

                async for line in response.aiter_lines():
                    if line:
                        yield line
        except httpx.TransportError as e:
            raise BackendUnavailable(f"error reading stream: {e}") from e

    async def _stream_json(self, url: str, payload: dict, prefix: str = "") -> AsyncIterator[Any]:
        """Yield decoded JSON objects from a streaming response.

        With a prefix (SSE "data: "), other lines are skipped and the
        prefix is stripped. Frames that are not JSON objects are skipped,
        except the "[DONE]" sentinel which is yielded as a string.
        """
        async with aclosing(self._stream_lines(url, payload)) as lines:
            async for line in lines:
                if prefix:
                    if not line.startswith(prefix):
                        continue
                    line = line[len(prefix):]
                if line.strip() == "[DONE]":
                    yield "[DONE]"
                    continue
                try:
                    frame = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug(f"Skipping undecodable {self.name} frame: {line[:100]}")
                    continue
                if isinstance(frame, dict):
                    yield frame
