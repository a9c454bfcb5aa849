"""vLLM backend (OpenAI-compatible /v1/completions)."""

from contextlib import aclosing

from ..config import BackendType
from ..errors import BackendError
from .base import Backend, InferenceRequest, InferenceResult, StreamAccumulator, TokenSink, sampling_fields


class VLLMBackend(Backend):
    """vLLM or any server speaking the OpenAI completions API."""

    type = BackendType.VLLM
    default_url = "http://localhost:8000"

    def _payload(self, request: InferenceRequest, stream: bool) -> dict:
        return {
            "model": self.model,
            "prompt": request.prompt,
            "stream": stream,
            **sampling_fields(
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
            ),
        }

    async def complete(self, request: InferenceRequest) -> InferenceResult:
        data = await self._post_json(f"{self.url}/v1/completions", self._payload(request, stream=False))
        choices = data.get("choices") or []
        usage = data.get("usage") or {}
        return InferenceResult(
            text=choices[0].get("text", "") if choices else "",
            prompt_tokens=usage.get("prompt_tokens", 0),
            completion_tokens=usage.get("completion_tokens", 0),
        )

    async def stream(self, request: InferenceRequest, on_token: TokenSink) -> InferenceResult:
        acc = StreamAccumulator(on_token)
        prompt_tokens = completion_tokens = 0

        frames = self._stream_json(f"{self.url}/v1/completions", self._payload(request, stream=True), prefix="data: ")
        async with aclosing(frames):
            async for frame in frames:
                if frame == "[DONE]":
                    break

                # Some servers send usage on a trailing chunk with no choices
                usage = frame.get("usage") or {}
                if usage:
                    prompt_tokens = usage.get("prompt_tokens", prompt_tokens)
                    completion_tokens = usage.get("completion_tokens", completion_tokens)

                choices = frame.get("choices") or []
                if choices:
                    await acc.fragment(choices[0].get("text", ""))

        return await acc.finish(prompt_tokens, completion_tokens)

    async def health(self) -> None:
        response = await self._get(f"{self.url}/v1/models")
        if response.status_code != 200:
            raise BackendError(self.name, response.status_code, response.text)
