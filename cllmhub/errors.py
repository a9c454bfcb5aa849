"""Error types for cLLMHub.

Per-request backend failures are reported to the gateway and never close
the connection. Handshake and transport failures end the session.
"""

from typing import Optional


class CllmhubError(Exception):
    """Base class for all cLLMHub errors."""


class ConfigurationError(CllmhubError):
    """Required setup is missing or invalid."""


# =============================================================================
# Backend errors (per request)
# =============================================================================

class BackendFailure(CllmhubError):
    """Base class for failures talking to the local inference backend."""


class BackendUnavailable(BackendFailure):
    """The backend could not be reached."""


class BackendError(BackendFailure):
    """The backend answered with a non-success HTTP status."""

    def __init__(self, backend: str, status_code: int, body: str = ""):
        self.backend = backend
        self.status_code = status_code
        self.body = body
        super().__init__(f"{backend} error (status {status_code}): {body}")


class BackendProtocolError(BackendFailure):
    """The backend response could not be decoded."""


class ModelNotFoundError(BackendFailure):
    """The configured model is not served by the backend."""

    def __init__(self, message: str, model: str, available: Optional[list[str]] = None):
        self.model = model
        self.available = available or []
        super().__init__(message)


# =============================================================================
# Gateway errors
# =============================================================================

class HandshakeError(CllmhubError):
    """Connecting or registering with the hub failed."""


class TransportError(CllmhubError):
    """The WebSocket to the hub failed."""


class ConsumerError(CllmhubError):
    """A request to the hub's REST API failed."""
