import pytest

from token_throttle.bucket import now_ms


class FakeClock:
    def __init__(self, origin_ms: float) -> None:
        self.origin = origin_ms
        self.now = origin_ms

    def __call__(self) -> float:
        return self.now

    def at(self, offset_ms: float) -> float:
        self.now = self.origin + offset_ms
        return self.now


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(now_ms())


class RecordingTable:
    """Synchronous table that records every call."""

    is_async = False

    def __init__(self) -> None:
        self.data: dict[str, dict] = {}
        self.calls: list[tuple[str, str]] = []

    def get(self, key: str):
        self.calls.append(("get", key))
        return self.data.get(key)

    def put(self, key: str, snapshot: dict) -> None:
        self.calls.append(("put", key))
        self.data[key] = snapshot


@pytest.fixture
def recording_table() -> RecordingTable:
    return RecordingTable()
