"""Generic JSON backend for any HTTP endpoint.

Request:  {"prompt": "...", "max_tokens": 512, "temperature": 0.7, "top_p": 0.9}
Response: {"text": "...", "prompt_tokens": 10, "completion_tokens": 100}

There is no streaming protocol; stream() runs complete() and emits the
whole text as a single token.
"""

from ..config import BackendType
from ..errors import BackendError, ConfigurationError
from .base import Backend, InferenceRequest, InferenceResult, StreamAccumulator, TokenSink, sampling_fields


class CustomBackend(Backend):
    """User-supplied endpoint URL, optional bearer API key."""

    type = BackendType.CUSTOM

    def __init__(self, url: str = "", **kwargs):
        if not url:
            raise ConfigurationError("custom backend requires a URL (--backend-url)")
        super().__init__(url=url, **kwargs)

    async def complete(self, request: InferenceRequest) -> InferenceResult:
        payload = {
            "prompt": request.prompt,
            **sampling_fields(
                max_tokens=request.max_tokens,
                temperature=request.temperature,
                top_p=request.top_p,
            ),
        }
        data = await self._post_json(self.url, payload)
        return InferenceResult(
            text=data.get("text", ""),
            prompt_tokens=data.get("prompt_tokens", 0),
            completion_tokens=data.get("completion_tokens", 0),
        )

    async def stream(self, request: InferenceRequest, on_token: TokenSink) -> InferenceResult:
        result = await self.complete(request)
        acc = StreamAccumulator(on_token)
        await acc.fragment(result.text)
        return await acc.finish(result.prompt_tokens, result.completion_tokens)

    async def health(self) -> None:
        response = await self._get(self.url)
        # POST-only endpoints answer GET with 405, which still proves liveness
        if response.status_code >= 500:
            raise BackendError(self.name, response.status_code, response.text)
