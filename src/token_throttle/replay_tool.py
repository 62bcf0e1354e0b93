from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass

from token_throttle.bucket import now_ms
from token_throttle.errors import ConfigurationError
from token_throttle.limiter import Throttle


@dataclass(frozen=True)
class ReplayEvent:
    key: str
    at_ms: float


class VirtualClock:
    def __init__(self, origin_ms: float) -> None:
        self._origin = origin_ms
        self.offset_ms = 0.0

    def __call__(self) -> float:
        return self._origin + self.offset_ms


def parse_event(raw: str) -> ReplayEvent:
    key, sep, at = raw.rpartition("@")
    if not sep:
        return ReplayEvent(key=raw, at_ms=0.0)
    if not key:
        raise ValueError(f"missing key in event {raw!r}")
    try:
        return ReplayEvent(key=key, at_ms=float(at))
    except ValueError as exc:
        raise ValueError(f"bad time in event {raw!r}") from exc


def parse_override(raw: str) -> tuple[str, dict[str, float]]:
    # KEY=RATE,BURST[,WINDOW]
    key, sep, spec = raw.partition("=")
    parts = [p.strip() for p in spec.split(",") if p.strip()]
    if not sep or not key or len(parts) not in (2, 3):
        raise ValueError(f"override must look like KEY=RATE,BURST[,WINDOW], got {raw!r}")
    values = dict(zip(("rate", "burst", "window"), (float(p) for p in parts)))
    return key, values


async def replay(throttle: Throttle, clock: VirtualClock, events: list[ReplayEvent]) -> list[tuple[ReplayEvent, bool]]:
    out: list[tuple[ReplayEvent, bool]] = []
    for event in events:
        clock.offset_ms = event.at_ms
        result = await throttle.check(event.key)
        out.append((event, result.limited))
    return out


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="token-throttle", description="Replay keyed checks against a token-bucket throttle.")
    parser.add_argument("--rate", type=float, default=None, help="Tokens per window (env THROTTLE_RATE)")
    parser.add_argument("--burst", type=float, default=None, help="Bucket capacity; defaults to rate")
    parser.add_argument("--window", type=float, default=None, help="Window in milliseconds (default 1000)")
    parser.add_argument("--override", action="append", default=[], help="KEY=RATE,BURST[,WINDOW]; repeatable")
    parser.add_argument("--lock-keys", action="store_true", help="Serialize checks per key")
    parser.add_argument("--json", action="store_true")
    parser.add_argument("--log-level", default=os.getenv("THROTTLE_LOG_LEVEL", "WARNING"))
    parser.add_argument("events", nargs="+", help="KEY@T_MS (or KEY for t=0)")
    args = parser.parse_args(argv)

    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=getattr(logging, str(args.log_level).upper(), logging.WARNING),
    )

    rate = args.rate
    if rate is None and os.getenv("THROTTLE_RATE"):
        try:
            rate = float(os.environ["THROTTLE_RATE"])
        except ValueError:
            print("THROTTLE_RATE must be a number.", file=sys.stderr)
            raise SystemExit(2)

    try:
        events = [parse_event(raw) for raw in args.events]
        overrides = dict(parse_override(raw) for raw in args.override)
    except ValueError as exc:
        print(str(exc), file=sys.stderr)
        raise SystemExit(2)

    clock = VirtualClock(now_ms())
    try:
        throttle = Throttle(
            rate=rate,
            burst=args.burst,
            window=args.window,
            overrides=overrides or None,
            lock_keys=args.lock_keys,
            clock=clock,
        )
    except ConfigurationError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        raise SystemExit(2)

    results = asyncio.run(replay(throttle, clock, events))

    if args.json:
        payload = [{"key": e.key, "atMs": e.at_ms, "limited": limited} for e, limited in results]
        print(json.dumps(payload, indent=2))
        return
    for event, limited in results:
        print(f"{event.at_ms:>10.1f} {event.key} {'limited' if limited else 'allowed'}")


if __name__ == "__main__":
    main()
