import asyncio

import pytest

from token_throttle.errors import ConfigurationError, PersistError, TokenLookupError
from token_throttle.limiter import EffectiveLimits, Throttle, create_throttle
from token_throttle.store import LRUTokenTable


async def _run(throttle, clock, offsets, key="test"):
    out = []
    for offset in offsets:
        clock.at(offset)
        result = await throttle.check(key)
        assert result.error is None
        out.append(result.limited)
    return out


@pytest.mark.asyncio
async def test_throttle_limits_then_lifts(clock):
    throttle = Throttle(rate=3, clock=clock)
    assert await _run(throttle, clock, [10, 20, 30, 50, 400]) == [False, False, False, True, False]


@pytest.mark.asyncio
async def test_different_throttle_window(clock):
    throttle = Throttle(rate=1, burst=3, window=100, clock=clock)
    assert await _run(throttle, clock, [10, 20, 30, 50, 150]) == [False, False, False, True, False]


@pytest.mark.asyncio
async def test_override_window(clock):
    throttle = Throttle(
        rate=1,
        burst=3,
        overrides={"test": {"rate": 1, "burst": 3, "window": 100}},
        clock=clock,
    )
    assert await _run(throttle, clock, [10, 20, 30, 50, 150]) == [False, False, False, True, False]


@pytest.mark.asyncio
async def test_zero_override_is_never_limited_and_skips_table(clock, recording_table):
    throttle = Throttle(
        rate=3,
        burst=3,
        overrides={"test": {"rate": 0, "burst": 0}},
        tokens_table=recording_table,
        clock=clock,
    )
    assert await _run(throttle, clock, [0] * 20) == [False] * 20
    assert recording_table.calls == []


@pytest.mark.asyncio
async def test_none_key_is_not_limited_and_skips_table(recording_table):
    throttle = Throttle(rate=1, tokens_table=recording_table)
    for _ in range(5):
        result = await throttle.check(None)
        assert result.limited is False
        assert result.error is None

    seen = []
    assert throttle.rate_limit(None, lambda err, limited: seen.append((err, limited))) is None
    assert seen == [(None, False)]
    assert recording_table.calls == []


@pytest.mark.asyncio
async def test_custom_sync_table(clock, recording_table):
    throttle = Throttle(rate=1, burst=3, window=100, tokens_table=recording_table, clock=clock)
    assert await _run(throttle, clock, [10, 20, 30, 50, 150]) == [False, False, False, True, False]
    assert recording_table.calls == [(op, "test") for _ in range(5) for op in ("get", "put")]


@pytest.mark.asyncio
async def test_rejected_check_still_persists_depletion(clock, recording_table):
    throttle = Throttle(rate=1, burst=1, tokens_table=recording_table, clock=clock)
    assert (await throttle.check("k")).limited is False
    clock.at(100)
    assert (await throttle.check("k")).limited is True
    snapshot = recording_table.data["k"]
    assert snapshot["last_touched"] == clock.now
    assert 0.0 < snapshot["tokens"] < 1.0


@pytest.mark.asyncio
async def test_two_throttles_with_distinct_tables_are_independent(clock):
    throttle1 = Throttle(rate=3, clock=clock)
    throttle2 = Throttle(rate=1, clock=clock)

    assert await _run(throttle2, clock, [0, 10]) == [False, True]
    assert await _run(throttle1, clock, [21, 22, 23, 50]) == [False, False, False, True]


@pytest.mark.asyncio
async def test_shared_table_interferes_between_throttles(clock):
    table = LRUTokenTable()
    first = Throttle(rate=1, tokens_table=table, clock=clock)
    second = Throttle(rate=5, tokens_table=table, clock=clock)

    assert (await first.check("k")).limited is False
    # The stored bucket carries the first throttle's capacity and is already empty.
    assert (await second.check("k")).limited is True


@pytest.mark.asyncio
async def test_callback_form_reports_each_decision(clock):
    throttle = Throttle(rate=1, clock=clock)
    seen = []
    for _ in range(2):
        task = throttle.rate_limit("k", lambda err, limited: seen.append((err, limited)))
        assert task is not None
        await task
    assert seen == [(None, False), (None, True)]


class BrokenTable:
    is_async = True

    def __init__(self, *, fail_get=False, fail_put=False):
        self.fail_get = fail_get
        self.fail_put = fail_put
        self.puts = 0

    async def get(self, key):
        if self.fail_get:
            raise RuntimeError("table unreachable")
        return None

    async def put(self, key, snapshot):
        self.puts += 1
        if self.fail_put:
            raise RuntimeError("write refused")


@pytest.mark.asyncio
async def test_lookup_failure_raises_without_decision():
    table = BrokenTable(fail_get=True)
    throttle = Throttle(rate=1, tokens_table=table)

    with pytest.raises(TokenLookupError) as exc:
        await throttle.check("k")
    assert exc.value.key == "k"
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert table.puts == 0

    seen = []
    await throttle.rate_limit("k", lambda err, limited: seen.append((err, limited)))
    assert len(seen) == 1
    assert isinstance(seen[0][0], TokenLookupError)
    assert seen[0][1] is None


@pytest.mark.asyncio
async def test_persist_failure_keeps_decision(clock):
    table = BrokenTable(fail_put=True)
    throttle = Throttle(rate=1, tokens_table=table, clock=clock)

    result = await throttle.check("k")
    assert result.limited is False
    assert result.admitted is True
    assert isinstance(result.error, PersistError)
    assert isinstance(result.error.__cause__, RuntimeError)

    seen = []
    await throttle.rate_limit("k", lambda err, limited: seen.append((err, limited)))
    assert isinstance(seen[0][0], PersistError)
    assert seen[0][1] is False


@pytest.mark.asyncio
async def test_concurrent_checks_on_one_key_can_over_admit(clock):
    throttle = Throttle(rate=1, burst=2, clock=clock)
    results = await asyncio.gather(*(throttle.check("k") for _ in range(3)))
    # All three read the empty table before any write lands.
    assert [r.limited for r in results] == [False, False, False]


@pytest.mark.asyncio
async def test_lock_keys_serializes_checks_per_key(clock):
    throttle = Throttle(rate=1, burst=2, lock_keys=True, clock=clock)
    results = await asyncio.gather(*(throttle.check("k") for _ in range(3)))
    assert sorted(r.limited for r in results) == [False, False, True]
    assert len(throttle._locks) == 0


def test_defaults():
    throttle = Throttle(rate=3)
    assert throttle.burst == 3
    assert throttle.window == 1000
    assert isinstance(throttle.table, LRUTokenTable)
    assert throttle.table.max_keys == 10000

    assert Throttle(rate=3, burst=0, window=0).resolve_limits("x") == EffectiveLimits(rate=3, burst=3, window=1000)
    assert Throttle(rate=3, max_keys=7).table.max_keys == 7


def test_override_needs_both_rate_and_burst():
    throttle = Throttle(
        rate=3,
        burst=5,
        window=1000,
        overrides={
            "rate-only": {"rate": 0},
            "window-only": {"window": 10},
            "full": {"rate": 1, "burst": 2},
            "full-window": {"rate": 1, "burst": 2, "window": 50},
        },
    )
    assert throttle.resolve_limits("rate-only") == EffectiveLimits(rate=3, burst=5, window=1000)
    assert throttle.resolve_limits("window-only") == EffectiveLimits(rate=3, burst=5, window=1000)
    assert throttle.resolve_limits("full") == EffectiveLimits(rate=1, burst=2, window=1000)
    assert throttle.resolve_limits("full-window") == EffectiveLimits(rate=1, burst=2, window=50)
    assert throttle.resolve_limits("other") == EffectiveLimits(rate=3, burst=5, window=1000)


@pytest.mark.parametrize(
    "options",
    [
        {"burst": 1},
        {"rate": "blue"},
        {"rate": "3"},
        {"rate": True},
        {"rate": -1},
        {"rate": 1, "overrides": {"k": {"rate": "fast"}}},
        {"rate": 1, "overrides": {"k": {"speed": 1}}},
        {"rate": 1, "clock": 5},
    ],
)
def test_bad_options(options):
    with pytest.raises(ConfigurationError):
        Throttle(**options)


def test_bad_table():
    class HashTable:
        def put(self, key):
            pass

        def get(self):
            pass

    with pytest.raises(ConfigurationError):
        Throttle(rate=1, burst=3, window=100, tokens_table=HashTable())


def test_create_throttle():
    throttle = create_throttle({"rate": 2}, window=500)
    assert isinstance(throttle, Throttle)
    assert (throttle.rate, throttle.burst, throttle.window) == (2, 2, 500)

    with pytest.raises(ConfigurationError):
        create_throttle()
    with pytest.raises(ConfigurationError):
        create_throttle(["rate", 1])
    with pytest.raises(ConfigurationError):
        create_throttle({"rate": 1, "tokensTable": None})


class StaticTable:
    is_async = True

    def __init__(self, snapshot):
        self.snapshot = snapshot
        self.puts = 0

    async def get(self, key):
        return self.snapshot

    async def put(self, key, snapshot):
        self.puts += 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "snapshot",
    [
        {"capacity": 3, "tokens": 1, "window": 1000, "last_touched": 1},
        {"capacity": "n/a", "tokens": 1, "fill_rate": 1, "window": 1000, "last_touched": 1},
        {"capacity": 3, "tokens": 1, "fill_rate": 1, "window": 0, "last_touched": 1},
        "not a record",
    ],
)
async def test_unreadable_stored_bucket_is_a_lookup_failure(snapshot):
    table = StaticTable(snapshot)
    throttle = Throttle(rate=1, tokens_table=table)

    with pytest.raises(TokenLookupError):
        await throttle.check("k")

    seen = []
    await throttle.rate_limit("k", lambda err, limited: seen.append((err, limited)))
    assert len(seen) == 1
    assert isinstance(seen[0][0], TokenLookupError)
    assert seen[0][1] is None
    assert table.puts == 0


@pytest.mark.asyncio
async def test_camel_case_stored_bucket_is_read(clock):
    table = StaticTable({"capacity": 3, "tokens": 0, "fillRate": 1, "window": 1000, "lastTouched": clock.now})
    throttle = Throttle(rate=1, tokens_table=table, clock=clock)
    assert (await throttle.check("k")).limited is True


def test_limits_are_read_only():
    throttle = Throttle(rate=3, overrides={"k": {"rate": 1, "burst": 1}})
    for name in ("rate", "burst", "window", "overrides", "table"):
        with pytest.raises(AttributeError):
            setattr(throttle, name, 1)
    with pytest.raises(TypeError):
        throttle.overrides["other"] = None
    assert throttle.resolve_limits("x") == EffectiveLimits(rate=3, burst=3, window=1000)
