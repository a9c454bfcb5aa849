"""Gateway WebSocket protocol.

One JSON object per frame, tagged by "type". Inbound request frames are
validated with pydantic; outbound frames are plain dicts.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .backends import InferenceRequest

# Message types (must match the gateway)
MSG_REGISTER = "register"
MSG_REGISTERED = "registered"
MSG_HEARTBEAT = "heartbeat"
MSG_REQUEST = "request"
MSG_RESPONSE = "response"
MSG_STREAM_TOKEN = "stream_token"
MSG_ERROR = "error"
MSG_PING = "ping"


class InferenceParams(BaseModel):
    """Sampling parameters forwarded by the gateway."""
    max_tokens: int = 0
    temperature: float = 0.0
    top_p: float = 0.0
    stream: bool = False


class RequestEnvelope(BaseModel):
    """An inference request forwarded from the gateway."""
    model_config = ConfigDict(frozen=True)

    request_id: str = Field(min_length=1)
    model: str = ""
    prompt: str = ""
    params: InferenceParams = Field(default_factory=InferenceParams)

    def to_inference_request(self) -> InferenceRequest:
        return InferenceRequest(
            prompt=self.prompt,
            max_tokens=self.params.max_tokens,
            temperature=self.params.temperature,
            top_p=self.params.top_p,
        )


# =============================================================================
# Outbound frames
# =============================================================================

def register_message(
    provider_id: str,
    model: str,
    backend: str,
    max_concurrent: int,
    token: str,
    description: str = "",
) -> dict:
    return {
        "type": MSG_REGISTER,
        "provider_id": provider_id,
        "model": model,
        "backend": backend,
        "price": 0,
        "description": description,
        "max_concurrent": max_concurrent,
        "token": token,
    }


def response_message(request_id: str, text: str, provider_id: str, latency_ms: int, usage: dict) -> dict:
    return {
        "type": MSG_RESPONSE,
        "request_id": request_id,
        "text": text,
        "provider_id": provider_id,
        "latency_ms": latency_ms,
        "usage": usage,
    }


def stream_token_message(
    request_id: str,
    token: str,
    index: int,
    done: bool,
    text: str = "",
    usage: Optional[dict] = None,
) -> dict:
    """Build a stream_token frame. text and usage only go on the terminal token."""
    msg = {
        "type": MSG_STREAM_TOKEN,
        "request_id": request_id,
        "token": token,
        "index": index,
        "done": done,
    }
    if text:
        msg["text"] = text
    if usage is not None:
        msg["usage"] = usage
    return msg


def error_message(request_id: str, message: str) -> dict:
    return {
        "type": MSG_ERROR,
        "request_id": request_id,
        "message": message,
    }


def heartbeat_message(provider_id: str, model: str, queue_depth: int, gpu_util: float = 0.0) -> dict:
    return {
        "type": MSG_HEARTBEAT,
        "provider_id": provider_id,
        "model": model,
        "queue_depth": queue_depth,
        "gpu_util": gpu_util,
    }
