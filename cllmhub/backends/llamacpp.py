"""llama.cpp server backend (native /completion endpoint)."""

from contextlib import aclosing

from ..config import BackendType
from ..errors import BackendError
from .base import Backend, InferenceRequest, InferenceResult, StreamAccumulator, TokenSink, sampling_fields


class LlamaCppBackend(Backend):
    """llama-server. Streams SSE frames with a `stop` flag on the last one."""

    type = BackendType.LLAMACPP
    default_url = "http://localhost:8080"

    def _payload(self, request: InferenceRequest, stream: bool) -> dict:
        return {
            "prompt": request.prompt,
            "stream": stream,
            **sampling_fields(
                n_predict=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
            ),
        }

    async def complete(self, request: InferenceRequest) -> InferenceResult:
        data = await self._post_json(f"{self.url}/completion", self._payload(request, stream=False))
        return InferenceResult(
            text=data.get("content", ""),
            prompt_tokens=data.get("tokens_evaluated", 0),
            completion_tokens=data.get("tokens_predicted", 0),
        )

    async def stream(self, request: InferenceRequest, on_token: TokenSink) -> InferenceResult:
        acc = StreamAccumulator(on_token)
        prompt_tokens = completion_tokens = 0

        frames = self._stream_json(f"{self.url}/completion", self._payload(request, stream=True), prefix="data: ")
        async with aclosing(frames):
            async for frame in frames:
                if frame == "[DONE]":
                    break
                await acc.fragment(frame.get("content", ""))
                if frame.get("stop"):
                    prompt_tokens = frame.get("tokens_evaluated", 0)
                    completion_tokens = frame.get("tokens_predicted", 0)
                    break

        return await acc.finish(prompt_tokens, completion_tokens)

    async def health(self) -> None:
        response = await self._get(f"{self.url}/health")
        if response.status_code != 200:
            raise BackendError(self.name, response.status_code, response.text)
