"""Per-key admission control on top of `TokenBucket` and a token table.

Each check is a read-modify-write against the table: fetch the key's snapshot,
refill and consume one token, write the snapshot back. The two table calls are
suspension points, and nothing stops another check for the same key from
reading the same snapshot in between. Under concurrent load for a single key
that can admit more than `burst` requests; pass `lock_keys=True` to serialize
the sequence per key when that matters more than throughput.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, AsyncIterator, Callable, Mapping

from pydantic import ValidationError

from token_throttle.bucket import TokenBucket, now_ms
from token_throttle.errors import ConfigurationError, PersistError, TokenLookupError
from token_throttle.schemas import RateOverride, ThrottleOptions
from token_throttle.store import LRUTokenTable, adapt_table

DEFAULT_WINDOW_MS = 1000.0

logger = logging.getLogger("token_throttle")

ThrottleCallback = Callable[[Exception | None, bool | None], Any]


@dataclass(frozen=True)
class EffectiveLimits:
    rate: float
    burst: float
    window: float

    @property
    def unlimited(self) -> bool:
        return not self.rate or not self.burst


@dataclass(frozen=True)
class ThrottleResult:
    limited: bool
    # Informational only; the decision above is already final.
    error: PersistError | None = None

    @property
    def admitted(self) -> bool:
        return not self.limited


NOT_LIMITED = ThrottleResult(limited=False)


@dataclass
class _LockEntry:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class _KeyLocks:
    def __init__(self) -> None:
        self._entries: dict[str, _LockEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._entries.get(key)
        if entry is None:
            entry = _LockEntry()
            self._entries[key] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._entries.pop(key, None)


class Throttle:
    def __init__(
        self,
        *,
        rate: float | None = None,
        burst: float | None = None,
        window: float | None = None,
        tokens_table: Any | None = None,
        max_keys: int | None = None,
        overrides: Mapping[str, Any] | None = None,
        lock_keys: bool = False,
        clock: Callable[[], float] | None = None,
    ) -> None:
        try:
            options = ThrottleOptions(
                rate=rate,
                burst=burst,
                window=window,
                tokens_table=tokens_table,
                max_keys=max_keys,
                overrides=overrides,
                lock_keys=lock_keys,
                clock=clock,
            )
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid throttle options: {exc}", details=exc.errors()) from exc
        if options.clock is not None and not callable(options.clock):
            raise ConfigurationError("clock must be a callable returning epoch milliseconds")

        self._limits = EffectiveLimits(
            rate=options.rate,
            burst=options.burst or options.rate,
            window=options.window or DEFAULT_WINDOW_MS,
        )
        self._overrides: Mapping[str, RateOverride] = MappingProxyType(dict(options.overrides or {}))

        table = options.tokens_table
        if table is None:
            table = LRUTokenTable(max_keys=options.max_keys)
        self._raw_table = table
        self._table = adapt_table(table)

        self._clock: Callable[[], float] = options.clock or now_ms
        self._locks = _KeyLocks() if options.lock_keys else None
        self._pending: set[asyncio.Task[None]] = set()

    @property
    def rate(self) -> float:
        return self._limits.rate

    @property
    def burst(self) -> float:
        return self._limits.burst

    @property
    def window(self) -> float:
        return self._limits.window

    @property
    def overrides(self) -> Mapping[str, RateOverride]:
        return self._overrides

    @property
    def table(self) -> Any:
        return self._raw_table

    def resolve_limits(self, key: str) -> EffectiveLimits:
        # An override only counts when it names both rate and burst; window rides along if set.
        override = self._overrides.get(key)
        if override is not None and override.rate is not None and override.burst is not None:
            window = override.window if override.window is not None else self.window
            return EffectiveLimits(rate=override.rate, burst=override.burst, window=window)
        return self._limits

    async def check(self, key: str | None) -> ThrottleResult:
        """Decide whether one more unit of work for `key` is admitted.

        Raises `TokenLookupError` when the table cannot be read; the decision is
        then unknown and the caller picks its own fail-open/fail-closed policy.
        A failed write is reported on `ThrottleResult.error` instead.
        """
        if key is None:
            return NOT_LIMITED

        limits = self.resolve_limits(key)
        if limits.unlimited:
            logger.debug("throttle key=%s unlimited", key)
            return NOT_LIMITED

        if self._locks is None:
            return await self._consume(key, limits)
        async with self._locks.hold(key):
            return await self._consume(key, limits)

    def rate_limit(self, key: str | None, callback: ThrottleCallback) -> asyncio.Task[None] | None:
        """Callback flavour of `check`; `callback(error, limited)` runs exactly once.

        On a lookup failure `limited` is None.
        """
        if key is None:
            callback(None, False)
            return None
        task = asyncio.get_running_loop().create_task(self._notify(key, callback))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _notify(self, key: str, callback: ThrottleCallback) -> None:
        try:
            result = await self.check(key)
        except TokenLookupError as exc:
            callback(exc, None)
            return
        callback(result.error, result.limited)

    async def _consume(self, key: str, limits: EffectiveLimits) -> ThrottleResult:
        try:
            snapshot = await self._table.get(key)
        except Exception as exc:
            logger.debug("throttle key=%s lookup failed: %r", key, exc)
            raise TokenLookupError(key, exc) from exc

        now = self._clock()
        if snapshot:
            try:
                bucket = TokenBucket.from_snapshot(snapshot)
            except (KeyError, TypeError, ValueError) as exc:
                logger.warning("throttle key=%s stored bucket is unreadable: %r", key, exc)
                raise TokenLookupError(key, exc) from exc
        else:
            bucket = TokenBucket(
                capacity=limits.burst,
                fill_rate=limits.rate,
                window=limits.window,
                last_touched=now,
            )

        admitted = bucket.consume(1, now=now)

        # Written back even when rejected so the depletion counts next time.
        error: PersistError | None = None
        try:
            await self._table.put(key, bucket.to_snapshot())
        except Exception as exc:
            error = PersistError(key, exc)
            error.__cause__ = exc
            logger.warning("throttle key=%s could not save bucket: %r", key, exc)

        logger.debug("throttle key=%s tokens=%.3f limited=%s", key, bucket.tokens, not admitted)
        return ThrottleResult(limited=not admitted, error=error)


def create_throttle(options: Mapping[str, Any] | None = None, /, **kwargs: Any) -> Throttle:
    merged: dict[str, Any] = {}
    if options is not None:
        if not isinstance(options, Mapping):
            raise ConfigurationError("Throttle options must be a mapping")
        merged.update(options)
    merged.update(kwargs)
    if not merged:
        raise ConfigurationError("Throttle options are required")
    unknown = sorted(set(merged) - set(ThrottleOptions.model_fields))
    if unknown:
        raise ConfigurationError(f"Unknown throttle options: {', '.join(unknown)}")
    return Throttle(**merged)
