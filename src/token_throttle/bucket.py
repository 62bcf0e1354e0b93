"""Token bucket that refills lazily from elapsed wall-clock time.

There is no timer: every `consume` first works out how many tokens would have
dripped in since the bucket was last touched, clamps to capacity, then tries to
take what was asked for. Idle buckets cost nothing.
"""

from __future__ import annotations

import math
import time
from typing import Any, Mapping

BucketSnapshot = dict[str, float]


def now_ms() -> float:
    return time.time() * 1000.0


def _coerce(value: Any, default: float) -> float:
    if value is None:
        return default
    try:
        out = float(value)
    except (TypeError, ValueError):
        return default
    if math.isnan(out):
        return default
    return out


class TokenBucket:
    __slots__ = ("capacity", "tokens", "fill_rate", "window", "last_touched")

    def __init__(
        self,
        *,
        capacity: float | str,
        fill_rate: float | str,
        window: float | str,
        tokens: float | str | None = None,
        last_touched: float | str | None = None,
    ) -> None:
        self.capacity = float(capacity)
        self.tokens = _coerce(tokens, self.capacity)
        self.fill_rate = float(fill_rate)
        self.window = float(window)
        if not self.window > 0:
            raise ValueError(f"window must be positive, got {window!r}")
        self.last_touched = _coerce(last_touched, 0.0) or now_ms()

    @classmethod
    def from_snapshot(cls, snapshot: Mapping[str, Any]) -> "TokenBucket":
        """Rebuild a bucket from a stored record.

        Raises KeyError, TypeError or ValueError when the record is missing a
        field or holds something that is not a number. The camelCase names
        `fillRate` and `lastTouched` are read as well as the snake_case ones.
        """
        return cls(
            capacity=snapshot["capacity"],
            fill_rate=snapshot["fill_rate"] if "fill_rate" in snapshot else snapshot["fillRate"],
            window=snapshot["window"],
            tokens=snapshot.get("tokens"),
            last_touched=snapshot.get("last_touched", snapshot.get("lastTouched")),
        )

    def to_snapshot(self) -> BucketSnapshot:
        return {
            "capacity": self.capacity,
            "tokens": self.tokens,
            "fill_rate": self.fill_rate,
            "window": self.window,
            "last_touched": self.last_touched,
        }

    def consume(self, count: float = 1.0, *, now: float | None = None) -> bool:
        """Take `count` tokens if they are all available; otherwise take none."""
        if count <= self.fill(now=now):
            self.tokens -= count
            return True
        return False

    def fill(self, *, now: float | None = None) -> float:
        now = now_ms() if now is None else float(now)
        # Clock went backwards (NTP step, DST on a naive clock): count it as a full window.
        if now < self.last_touched:
            self.last_touched = now - self.window

        if self.tokens < self.capacity:
            delta = (self.fill_rate / self.window) * (now - self.last_touched)
            self.tokens = min(self.capacity, self.tokens + delta)

        self.last_touched = now
        return self.tokens

    def __repr__(self) -> str:
        return (
            f"TokenBucket(capacity={self.capacity}, tokens={self.tokens}, "
            f"fill_rate={self.fill_rate}, window={self.window}, last_touched={self.last_touched})"
        )
