"""Local inference backends.

The variant set is closed: create_backend() picks one from the
configured BackendType.
"""

from typing import Optional

import httpx

from ..config import BackendConfig, BackendType
from ..errors import ConfigurationError
from .base import Backend, InferenceRequest, InferenceResult, StreamToken, TokenSink
from .custom import CustomBackend
from .llamacpp import LlamaCppBackend
from .ollama import OllamaBackend
from .vllm import VLLMBackend

BACKENDS: dict[BackendType, type[Backend]] = {
    BackendType.OLLAMA: OllamaBackend,
    BackendType.LLAMACPP: LlamaCppBackend,
    BackendType.VLLM: VLLMBackend,
    BackendType.CUSTOM: CustomBackend,
}


def create_backend(config: BackendConfig, client: Optional[httpx.AsyncClient] = None) -> Backend:
    """Build the backend selected by config.type."""
    backend_type = BackendType.parse(config.type)
    backend_cls = BACKENDS.get(backend_type)
    if backend_cls is None:
        raise ConfigurationError(f"unknown backend type: {config.type}")
    return backend_cls(url=config.url, model=config.model, api_key=config.api_key, client=client)


__all__ = [
    "Backend",
    "BackendType",
    "InferenceRequest",
    "InferenceResult",
    "StreamToken",
    "TokenSink",
    "create_backend",
]
