"""Consumer client for the hub's OpenAI-compatible REST API.

Uses the gateway endpoints:
- POST /v1/chat/completions - Ask a model (optionally streamed as SSE)
- GET  /v1/models           - List published models
- GET  /health              - Gateway health
"""

import json
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

import httpx

from .errors import ConsumerError

logger = logging.getLogger(__name__)

CONSUMER_TIMEOUT = 120.0


@dataclass
class ModelInfo:
    """A model entry from /v1/models."""
    id: str
    object: str = "model"
    created: int = 0
    owned_by: str = ""


class ConsumerClient:
    """Client for the hub's consumer API."""

    def __init__(
        self,
        hub_url: str,
        timeout: float = CONSUMER_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.hub_url = hub_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _chat_payload(model: str, prompt: str, max_tokens: int, temperature: float, stream: bool) -> dict:
        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "temperature": temperature,
            "stream": stream,
        }
        if max_tokens:
            payload["max_tokens"] = max_tokens
        return payload

    async def ask(self, model: str, prompt: str, max_tokens: int = 512, temperature: float = 0.7) -> str:
        """Send one prompt and return the completion text."""
        payload = self._chat_payload(model, prompt, max_tokens, temperature, stream=False)
        try:
            async with self._client() as client:
                response = await client.post(f"{self.hub_url}/v1/chat/completions", json=payload)
        except httpx.RequestError as e:
            raise ConsumerError(f"request failed: {e}") from e

        if response.status_code != 200:
            raise self._api_error(response.status_code, response.text)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ConsumerError(f"failed to parse response: {e}") from e

        choices = data.get("choices") or []
        if not choices:
            raise ConsumerError("no choices in response")
        return choices[0].get("message", {}).get("content", "")

    async def stream(
        self,
        model: str,
        prompt: str,
        on_token: Callable[[str], Awaitable[None] | None],
        max_tokens: int = 512,
        temperature: float = 0.7,
    ) -> None:
        """Send one prompt and call on_token for every streamed fragment.

        on_token may be a plain function or a coroutine function.
        """
        payload = self._chat_payload(model, prompt, max_tokens, temperature, stream=True)
        try:
            async with self._client() as client:
                async with client.stream("POST", f"{self.hub_url}/v1/chat/completions", json=payload) as response:
                    if response.status_code != 200:
                        body = (await response.aread()).decode(errors="replace")
                        raise self._api_error(response.status_code, body)

                    async for line in response.aiter_lines():
                        if not line.startswith("data: "):
                            continue
                        data = line[6:]
                        if data == "[DONE]":
                            break
                        if data.startswith("[ERROR]"):
                            raise ConsumerError(f"stream error: {data[len('[ERROR]'):].strip()}")

                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            continue

                        for choice in chunk.get("choices") or []:
                            content = (choice.get("delta") or {}).get("content")
                            if content:
                                result = on_token(content)
                                if result is not None:
                                    await result
        except httpx.RequestError as e:
            raise ConsumerError(f"request failed: {e}") from e

    async def list_models(self) -> list[ModelInfo]:
        """Fetch the catalog of published models."""
        try:
            async with self._client() as client:
                response = await client.get(f"{self.hub_url}/v1/models")
        except httpx.RequestError as e:
            raise ConsumerError(f"request failed: {e}") from e

        if response.status_code != 200:
            raise self._api_error(response.status_code, response.text)

        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ConsumerError(f"failed to parse response: {e}") from e

        return [
            ModelInfo(
                id=m.get("id", ""),
                object=m.get("object", "model"),
                created=m.get("created", 0),
                owned_by=m.get("owned_by", ""),
            )
            for m in data.get("data") or []
        ]

    async def health(self) -> int:
        """Return the HTTP status of the gateway's /health endpoint."""
        try:
            async with httpx.AsyncClient(timeout=5.0, transport=self._transport) as client:
                response = await client.get(f"{self.hub_url}/health")
        except httpx.RequestError as e:
            raise ConsumerError(f"cannot reach hub: {e}") from e
        return response.status_code

    @staticmethod
    def _api_error(status_code: int, body: str) -> ConsumerError:
        """Prefer the OpenAI-style error.message, fall back to the raw body."""
        try:
            message = json.loads(body)["error"]["message"]
        except (json.JSONDecodeError, KeyError, TypeError):
            message = ""
        return ConsumerError(f"API error ({status_code}): {message or body}")
