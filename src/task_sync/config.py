"""
Sync Engine Configuration

Explicit configuration value injected into the sync orchestrator at
construction. Environment variables are read once, by SyncConfig.from_env,
never at sync time.
"""

import os
from dataclasses import dataclass, replace
from typing import Mapping, Optional
from urllib.parse import urlparse

DEFAULT_BATCH_SIZE = 50
DEFAULT_RETRY_LIMIT = 3
DEFAULT_ENDPOINT = "http://localhost:3000/api"
DEFAULT_TIMEOUT_SECONDS = 8.0
DEFAULT_HEALTH_TIMEOUT_SECONDS = 5.0
DEFAULT_DATABASE_PATH = "task_sync.db"


@dataclass(frozen=True)
class SyncConfig:
    """Batch size, retry limit, remote endpoint and per-call timeouts."""

    batch_size: int = DEFAULT_BATCH_SIZE
    retry_limit: int = DEFAULT_RETRY_LIMIT
    endpoint: str = DEFAULT_ENDPOINT
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    health_timeout: float = DEFAULT_HEALTH_TIMEOUT_SECONDS
    database_path: str = DEFAULT_DATABASE_PATH

    def __post_init__(self):
        if not isinstance(self.batch_size, int) or isinstance(self.batch_size, bool) or self.batch_size <= 0:
            raise ValueError(f"batch_size must be a positive integer, got {self.batch_size!r}")
        if not isinstance(self.retry_limit, int) or isinstance(self.retry_limit, bool) or self.retry_limit <= 0:
            raise ValueError(f"retry_limit must be a positive integer, got {self.retry_limit!r}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout!r}")
        if self.health_timeout <= 0:
            raise ValueError(f"health_timeout must be positive, got {self.health_timeout!r}")

        parsed = urlparse(self.endpoint)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError(f"endpoint must be an http(s) URL, got {self.endpoint!r}")
        # Stored without trailing slash so path joins stay predictable
        object.__setattr__(self, "endpoint", self.endpoint.rstrip("/"))

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SyncConfig":
        """
        Build configuration from process environment variables.

        Args:
            environ: Mapping to read instead of os.environ (used by tests)

        Returns:
            Validated SyncConfig

        Raises:
            ValueError: If a variable is present but not parseable or out of range
        """
        env = os.environ if environ is None else environ
        return cls(
            batch_size=_read_int(env, "SYNC_BATCH_SIZE", DEFAULT_BATCH_SIZE),
            retry_limit=_read_int(env, "SYNC_RETRY_ATTEMPTS", DEFAULT_RETRY_LIMIT),
            endpoint=env.get("API_BASE_URL") or DEFAULT_ENDPOINT,
            timeout=_read_float(env, "SYNC_TIMEOUT_SECONDS", DEFAULT_TIMEOUT_SECONDS),
            health_timeout=_read_float(env, "HEALTH_TIMEOUT_SECONDS", DEFAULT_HEALTH_TIMEOUT_SECONDS),
            database_path=env.get("DATABASE_PATH") or DEFAULT_DATABASE_PATH,
        )

    def with_overrides(self, **overrides) -> "SyncConfig":
        """Return a copy with the non-None overrides applied."""
        changes = {key: value for key, value in overrides.items() if value is not None}
        return replace(self, **changes) if changes else self


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}")
