"""Configuration for cLLMHub.

Defaults come from environment variables (optionally via a .env file).
The CLI builds one immutable ProviderConfig from them plus its flags and
hands it to each component.
"""

import os
import platform
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from .errors import ConfigurationError

DEFAULT_HUB_URL = "https://cllmhub.com"


def get_data_dir() -> Path:
    """Get the data directory for cllmhub."""
    if platform.system() == "Windows":
        base = Path(os.environ.get("APPDATA", Path.home() / "AppData" / "Roaming"))
    elif platform.system() == "Darwin":
        base = Path.home() / "Library" / "Application Support"
    else:
        base = Path(os.environ.get("XDG_DATA_HOME", Path.home() / ".local" / "share"))

    data_dir = base / "cllmhub"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


class BackendType(str, Enum):
    """Supported local inference servers."""
    OLLAMA = "ollama"
    LLAMACPP = "llama.cpp"
    VLLM = "vllm"
    CUSTOM = "custom"

    @classmethod
    def parse(cls, value: "str | BackendType") -> "BackendType":
        """Resolve a user-supplied backend name, accepting 'llamacpp' as an alias."""
        if isinstance(value, BackendType):
            return value
        name = (value or "").strip().lower()
        if name == "llamacpp":
            return cls.LLAMACPP
        for member in cls:
            if member.value == name:
                return member
        choices = ", ".join(m.value for m in cls)
        raise ConfigurationError(f"unknown backend type: {value} (choose from {choices})")


@dataclass(frozen=True)
class BackendConfig:
    """Local inference backend settings."""
    type: BackendType = BackendType.OLLAMA
    url: str = ""  # empty = variant default (required for custom)
    model: str = ""
    api_key: str = ""


@dataclass(frozen=True)
class ProviderConfig:
    """Everything needed to publish one model to the hub."""
    model: str
    token: str
    backend: BackendConfig = field(default_factory=BackendConfig)
    hub_url: str = DEFAULT_HUB_URL
    description: str = ""
    max_concurrent: int = 1
    reject_when_busy: bool = False  # answer excess requests with an error instead of queuing
    status_port: Optional[int] = None

    def __post_init__(self):
        if not self.model:
            raise ConfigurationError("model name is required")
        if not self.token:
            raise ConfigurationError("provider token is required")
        if self.max_concurrent < 1:
            # A provider always serves at least one request at a time
            object.__setattr__(self, "max_concurrent", 1)


# =============================================================================
# Environment Variable Configuration
# =============================================================================


@lru_cache(maxsize=1)
def load_config() -> dict:
    """
    Load defaults from environment variables.

    A .env file in the working directory is read first; real environment
    variables take precedence.

    Returns:
        dict with configuration values
    """
    load_dotenv()
    return {
        "HUB_URL": os.getenv("CLLMHUB_HUB_URL", DEFAULT_HUB_URL),
        # Provider token from the LLMHub dashboard
        "TOKEN": os.getenv("CLLMHUB_TOKEN", ""),
        "BACKEND": os.getenv("CLLMHUB_BACKEND", BackendType.OLLAMA.value),
        "BACKEND_URL": os.getenv("CLLMHUB_BACKEND_URL", ""),
        "API_KEY": os.getenv("CLLMHUB_API_KEY", ""),
    }


def get_config_value(key: str, default: Optional[str] = None) -> Optional[str]:
    """Get a single configuration value."""
    config = load_config()
    return config.get(key, default)
