from __future__ import annotations

import asyncio
from collections import OrderedDict
from typing import Any, Protocol, Union

from token_throttle.bucket import BucketSnapshot
from token_throttle.errors import ConfigurationError

DEFAULT_MAX_KEYS = 10000


class SyncTokenTable(Protocol):
    """Table whose get/put return directly; declare `is_async = False`.

    Snapshots are plain dicts with the snake_case keys `capacity`, `tokens`,
    `fill_rate`, `window` and `last_touched`. Records written with `fillRate` or
    `lastTouched` are still read back.
    """

    is_async: bool  # False

    def get(self, key: str) -> BucketSnapshot | None: ...

    def put(self, key: str, snapshot: BucketSnapshot) -> Any: ...


class AsyncTokenTable(Protocol):
    """Table whose get/put are coroutines; declare `is_async = True`.

    Same snapshot shape as `SyncTokenTable`.
    """

    is_async: bool  # True

    async def get(self, key: str) -> BucketSnapshot | None: ...

    async def put(self, key: str, snapshot: BucketSnapshot) -> Any: ...


TokenTable = Union[SyncTokenTable, AsyncTokenTable]


class LRUTokenTable:
    """Bounded in-process key -> snapshot map. Not shared across processes."""

    is_async = False

    def __init__(self, max_keys: int | None = None) -> None:
        self._max_keys = max(1, int(max_keys or DEFAULT_MAX_KEYS))
        self._entries: OrderedDict[str, BucketSnapshot] = OrderedDict()

    @property
    def max_keys(self) -> int:
        return self._max_keys

    def get(self, key: str) -> BucketSnapshot | None:
        snapshot = self._entries.get(key)
        if snapshot is None:
            return None
        self._entries.move_to_end(key)
        return snapshot

    def put(self, key: str, snapshot: BucketSnapshot) -> None:
        self._entries[key] = snapshot
        self._entries.move_to_end(key)
        while len(self._entries) > self._max_keys:
            self._entries.popitem(last=False)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: object) -> bool:
        return key in self._entries


class DeferredTokenTable:
    """Presents a synchronous table through the async contract.

    Both operations yield to the event loop before touching the wrapped table, so
    callers never observe inline completion.
    """

    is_async = True

    def __init__(self, table: SyncTokenTable) -> None:
        self._table = table

    @property
    def table(self) -> SyncTokenTable:
        return self._table

    async def get(self, key: str) -> BucketSnapshot | None:
        await asyncio.sleep(0)
        return self._table.get(key)

    async def put(self, key: str, snapshot: BucketSnapshot) -> Any:
        await asyncio.sleep(0)
        return self._table.put(key, snapshot)


def adapt_table(table: Any) -> AsyncTokenTable:
    declared = getattr(table, "is_async", None)
    if not isinstance(declared, bool):
        raise ConfigurationError(
            f"Token table {type(table).__name__} must declare is_async = True or False"
        )
    for name in ("get", "put"):
        if not callable(getattr(table, name, None)):
            raise ConfigurationError(f"Token table {type(table).__name__} is missing a callable {name}()")
    if declared:
        return table
    return DeferredTokenTable(table)
