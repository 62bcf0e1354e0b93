from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from typing import Any

from token_throttle.errors import ConfigurationError
from token_throttle.limiter import Throttle
from token_throttle.store import DEFAULT_MAX_KEYS

_TRUE = {"1", "true", "yes", "on"}


def _float_env(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got {value!r}") from exc


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        out = int(value)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {value!r}") from exc
    if out < 1:
        raise ConfigurationError(f"{name} must be at least 1, got {value!r}")
    return out


def _overrides_env(name: str) -> dict[str, Any]:
    value = os.getenv(name)
    if not value:
        return {}
    try:
        parsed = json.loads(value)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"{name} must be a JSON object") from exc
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"{name} must be a JSON object")
    return parsed


@dataclass(frozen=True)
class ThrottleConfig:
    rate: float
    burst: float | None = None
    window_ms: float = 1000.0
    max_keys: int = DEFAULT_MAX_KEYS
    lock_keys: bool = False
    overrides: dict[str, Any] = field(default_factory=dict)
    log_level: str = "INFO"

    @staticmethod
    def from_env() -> "ThrottleConfig":
        rate = _float_env("THROTTLE_RATE", None)
        if rate is None:
            raise ConfigurationError("THROTTLE_RATE is required")
        return ThrottleConfig(
            rate=rate,
            burst=_float_env("THROTTLE_BURST", None),
            window_ms=_float_env("THROTTLE_WINDOW_MS", 1000.0) or 1000.0,
            max_keys=_int_env("THROTTLE_MAX_KEYS", DEFAULT_MAX_KEYS),
            lock_keys=os.getenv("THROTTLE_LOCK_KEYS", "false").strip().lower() in _TRUE,
            overrides=_overrides_env("THROTTLE_OVERRIDES"),
            log_level=os.getenv("THROTTLE_LOG_LEVEL", "INFO"),
        )

    def build(self, **kwargs: Any) -> Throttle:
        return Throttle(
            rate=self.rate,
            burst=self.burst,
            window=self.window_ms,
            max_keys=self.max_keys,
            lock_keys=self.lock_keys,
            overrides=self.overrides or None,
            **kwargs,
        )
