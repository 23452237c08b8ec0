import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


DEFAULT_BASE_URL = "https://v2.archive.subsquid.io/network/ethereum-mainnet"

ENV_PREFIX = "DIVE_"


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_optional_float(value: Optional[str]) -> Optional[float]:
    if value is None or not value.strip():
        return None
    return float(value)


def _env_optional_int(value: Optional[str]) -> Optional[int]:
    if value is None or not value.strip():
        return None
    return int(value)


@dataclass(frozen=True)
class DatasourceConfig:
    """Connection, concurrency, rate and retry settings for one Datasource.

    `rate_per_sec=None` disables rate limiting. `chunk_size`, when set, splits
    a requested range into contiguous chunks that are fetched concurrently.
    """

    base_url: str = DEFAULT_BASE_URL
    max_concurrency: int = 10
    rate_per_sec: Optional[float] = None
    burst: int = 1
    max_retries: int = 5
    backoff_base: float = 0.1
    backoff_max: float = 10.0
    request_timeout: float = 60.0
    resolve_worker: bool = True
    throttle_on_429: bool = False
    chunk_size: Optional[int] = None

    def __post_init__(self) -> None:
        if not self.base_url or not self.base_url.strip():
            raise ValueError("base_url must be a non-empty URL")
        # trailing slashes would double up when joining paths
        object.__setattr__(self, "base_url", self.base_url.strip().rstrip("/"))
        if self.max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        if self.rate_per_sec is not None and self.rate_per_sec <= 0:
            raise ValueError("rate_per_sec must be > 0 (or None to disable)")
        if self.burst < 1:
            raise ValueError("burst must be >= 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.backoff_base < 0 or self.backoff_max < 0:
            raise ValueError("backoff values must be >= 0")
        if self.request_timeout <= 0:
            raise ValueError("request_timeout must be > 0")
        if self.chunk_size is not None and self.chunk_size < 1:
            raise ValueError("chunk_size must be >= 1 (or None to disable)")

    @classmethod
    def from_env(cls, **overrides) -> "DatasourceConfig":
        """Build a config from DIVE_* environment variables (and a .env file)."""
        load_dotenv()
        env = os.environ

        def get(name: str) -> Optional[str]:
            return env.get(ENV_PREFIX + name)

        values = {
            "base_url": get("BASE_URL") or DEFAULT_BASE_URL,
            "max_concurrency": int(get("MAX_CONCURRENCY") or "10"),
            "rate_per_sec": _env_optional_float(get("RATE_PER_SEC")),
            "burst": int(get("BURST") or "1"),
            "max_retries": int(get("MAX_RETRIES") or "5"),
            "backoff_base": float(get("BACKOFF_BASE") or "0.1"),
            "backoff_max": float(get("BACKOFF_MAX") or "10.0"),
            "request_timeout": float(get("REQUEST_TIMEOUT") or "60"),
            "resolve_worker": _env_bool(get("RESOLVE_WORKER") or "1"),
            "throttle_on_429": _env_bool(get("THROTTLE_ON_429") or "0"),
            "chunk_size": _env_optional_int(get("CHUNK_SIZE")),
        }
        values.update(overrides)
        return cls(**values)
