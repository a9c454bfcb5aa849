"""Ollama backend (/api/generate, newline-delimited JSON streaming)."""

import logging
from contextlib import aclosing

from ..config import BackendType
from ..errors import BackendError, BackendProtocolError, ModelNotFoundError
from .base import Backend, InferenceRequest, InferenceResult, StreamAccumulator, TokenSink, sampling_fields

logger = logging.getLogger(__name__)


class OllamaBackend(Backend):
    """Ollama server, addressed by model name."""

    type = BackendType.OLLAMA
    default_url = "http://localhost:11434"

    def _payload(self, request: InferenceRequest, stream: bool) -> dict:
        return {
            "model": self.model,
            "prompt": request.prompt,
            "stream": stream,
            "options": sampling_fields(
                num_predict=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
            ),
        }

    async def complete(self, request: InferenceRequest) -> InferenceResult:
        data = await self._post_json(f"{self.url}/api/generate", self._payload(request, stream=False))
        return InferenceResult(
            text=data.get("response", ""),
            prompt_tokens=data.get("prompt_eval_count", 0),
            completion_tokens=data.get("eval_count", 0),
        )

    async def stream(self, request: InferenceRequest, on_token: TokenSink) -> InferenceResult:
        acc = StreamAccumulator(on_token)
        prompt_tokens = completion_tokens = 0

        frames = self._stream_json(f"{self.url}/api/generate", self._payload(request, stream=True))
        async with aclosing(frames):
            async for frame in frames:
                if frame == "[DONE]":
                    continue
                await acc.fragment(frame.get("response", ""))
                if frame.get("done"):
                    prompt_tokens = frame.get("prompt_eval_count", 0)
                    completion_tokens = frame.get("eval_count", 0)
                    break

        return await acc.finish(prompt_tokens, completion_tokens)

    async def health(self) -> None:
        """Check Ollama is up and serves the configured model."""
        response = await self._get(f"{self.url}/api/tags")
        if response.status_code != 200:
            raise BackendError(self.name, response.status_code, response.text)

        try:
            models = response.json().get("models") or []
            available = [m["name"] for m in models]
        except (ValueError, AttributeError, KeyError, TypeError) as e:
            raise BackendProtocolError(f"failed to parse ollama models: {e}") from e

        if any(model_matches(name, self.model) for name in available):
            return

        if not available:
            raise ModelNotFoundError(
                f"model {self.model!r} not found in ollama (no models available), run:\n"
                f"  ollama pull {self.model}",
                model=self.model,
            )

        listing = "\n  ".join(available)
        raise ModelNotFoundError(
            f"model {self.model!r} not found in ollama\n\n"
            f"Available models:\n  {listing}\n\n"
            f"To pull it, run:\n  ollama pull {self.model}",
            model=self.model,
            available=available,
        )


def model_matches(name: str, model: str) -> bool:
    """Match an installed Ollama model name; an untagged model means ":latest"."""
    return name == model or name == f"{model}:latest"
