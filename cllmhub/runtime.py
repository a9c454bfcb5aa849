"""Runtime info for a running provider.

`cllmhub publish` writes runtime.json once it is registered with the hub,
so `cllmhub status` can report the local provider.

Location (platform-specific):
  - macOS: ~/Library/Application Support/cllmhub/runtime.json
  - Linux: ~/.local/share/cllmhub/runtime.json
  - Windows: %APPDATA%/cllmhub/runtime.json
"""

import json
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from functools import lru_cache
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Optional

from .config import get_data_dir


@lru_cache(maxsize=1)
def get_version() -> str:
    """Get the installed package version."""
    try:
        return version("cllmhub-cli")
    except PackageNotFoundError:
        return "0.0.0"


def get_runtime_path() -> Path:
    """Get path to runtime.json."""
    return get_data_dir() / "runtime.json"


@dataclass
class RuntimeInfo:
    """Runtime info written after registration.

    Attributes:
        pid: Process ID of the publishing process
        provider_id: Id announced to the hub
        model: Published model name
        backend: Backend type
        hub_url: Hub the provider is registered with
        started_at: ISO timestamp when the provider registered
        version: Version of cllmhub-cli
        status_port: Port of the local status endpoint (if enabled)
    """

    pid: int
    provider_id: str
    model: str
    backend: str
    hub_url: str
    started_at: str
    version: str
    status_port: Optional[int] = None

    def save(self) -> None:
        """Write runtime info to disk."""
        path = get_runtime_path()
        with open(path, "w") as f:
            json.dump(asdict(self), f, indent=2)

    @classmethod
    def load(cls) -> Optional["RuntimeInfo"]:
        """Load runtime info from disk.

        Returns:
            RuntimeInfo if file exists and is valid, None otherwise.
        """
        path = get_runtime_path()
        if not path.exists():
            return None
        try:
            with open(path) as f:
                data = json.load(f)
            return cls(
                pid=data["pid"],
                provider_id=data["provider_id"],
                model=data["model"],
                backend=data["backend"],
                hub_url=data["hub_url"],
                started_at=data["started_at"],
                version=data["version"],
                status_port=data.get("status_port"),
            )
        except (json.JSONDecodeError, KeyError, TypeError):
            return None

    @classmethod
    def clear(cls) -> None:
        """Remove runtime file on shutdown."""
        path = get_runtime_path()
        try:
            path.unlink(missing_ok=True)
        except OSError:
            pass  # Ignore errors during cleanup

    def is_alive(self) -> bool:
        """Check the recorded process still exists."""
        try:
            os.kill(self.pid, 0)  # Signal 0 just checks if process exists
        except OSError:
            return False
        return True


def write_runtime_info(
    provider_id: str,
    model: str,
    backend: str,
    hub_url: str,
    status_port: Optional[int] = None,
) -> RuntimeInfo:
    """Create and save runtime info for this process."""
    info = RuntimeInfo(
        pid=os.getpid(),
        provider_id=provider_id,
        model=model,
        backend=backend,
        hub_url=hub_url,
        started_at=datetime.now(timezone.utc).isoformat(),
        version=get_version(),
        status_port=status_port,
    )
    info.save()
    return info


def get_local_provider() -> Optional[RuntimeInfo]:
    """Return the running local provider, clearing a stale runtime file."""
    info = RuntimeInfo.load()
    if info is None:
        return None
    if not info.is_alive():
        RuntimeInfo.clear()
        return None
    return info
