import os
from dataclasses import dataclass, fields, asdict
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import ConfigError

DEFAULT_CONFIG = {
    "endpoint": "",
    "secret": "",
    "api_key": "",
    "callback_base_url": "",
    "timeout_ms": "30000",
    "max_attempts": "3",
    "base_delay_ms": "5000",
    "backoff_cap_ms": "300000",
    "processing_grace_ms": "600000",
    "batch_size": "5",
    "on_duplicate": "reject",
    "tick_interval_seconds": "30",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())
SECRET_KEYS = {"secret", "api_key"}
DUPLICATE_POLICIES = ("reject", "reuse")

ENV_PREFIX = "OPTQUEUE_"
DB_FILE = os.environ.get("OPTQUEUE_DB", "optqueue.db")

_INT_KEYS = {
    "timeout_ms", "max_attempts", "base_delay_ms", "backoff_cap_ms",
    "processing_grace_ms", "batch_size", "tick_interval_seconds",
}


@dataclass(frozen=True)
class Config:
    endpoint: str = ""
    secret: Optional[str] = None
    api_key: Optional[str] = None
    callback_base_url: Optional[str] = None
    timeout_ms: int = 30000
    max_attempts: int = 3
    base_delay_ms: int = 5000
    backoff_cap_ms: int = 300000
    processing_grace_ms: int = 600000
    batch_size: int = 5
    on_duplicate: str = "reject"
    tick_interval_seconds: int = 30

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Config":
        """
        Build a Config from string-ish values (config table, env, CLI).
        Unknown keys and malformed numbers raise ConfigError.
        """
        unknown = set(values) - ALLOWED_CONFIG_KEYS
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        kwargs: Dict[str, Any] = {}
        for key, raw in values.items():
            if key in _INT_KEYS:
                kwargs[key] = _positive_int(key, raw)
            elif key in ("secret", "api_key", "callback_base_url"):
                kwargs[key] = (str(raw).strip() or None) if raw is not None else None
            else:
                kwargs[key] = "" if raw is None else str(raw).strip()

        if kwargs.get("endpoint"):
            _check_url("endpoint", kwargs["endpoint"])
        if kwargs.get("callback_base_url"):
            _check_url("callback_base_url", kwargs["callback_base_url"])
            kwargs["callback_base_url"] = kwargs["callback_base_url"].rstrip("/")

        policy = kwargs.get("on_duplicate", "reject")
        if policy not in DUPLICATE_POLICIES:
            raise ConfigError(
                f"on_duplicate must be one of {', '.join(DUPLICATE_POLICIES)}, got {policy!r}"
            )
        return cls(**kwargs)

    def require_endpoint(self) -> str:
        if not self.endpoint:
            raise ConfigError("endpoint is not configured (optqueue config set endpoint <url>)")
        return self.endpoint

    def redacted(self) -> Dict[str, Any]:
        out = asdict(self)
        for key in SECRET_KEYS:
            if out.get(key):
                out[key] = "***"
        return out


def _check_url(key: str, value: str) -> None:
    try:
        url = httpx.URL(value)
    except httpx.InvalidURL as e:
        raise ConfigError(f"{key} is not a valid URL: {e}")
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigError(f"{key} must be an absolute http(s) URL, got {value!r}")


def _positive_int(key: str, raw: Any) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer, got {raw!r}")
    if value <= 0:
        raise ConfigError(f"{key} must be > 0, got {value}")
    return value


def env_overrides(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    environ = os.environ if environ is None else environ
    out = {}
    for f in fields(Config):
        name = ENV_PREFIX + f.name.upper()
        if name in environ:
            out[f.name] = environ[name]
    return out


def load_config(stored: Mapping[str, str], environ: Optional[Mapping[str, str]] = None) -> Config:
    """Merge defaults, the stored config table and OPTQUEUE_* environment variables."""
    merged: Dict[str, Any] = dict(DEFAULT_CONFIG)
    merged.update({k: v for k, v in stored.items() if k in ALLOWED_CONFIG_KEYS})
    merged.update(env_overrides(environ))
    return Config.from_mapping(merged)
