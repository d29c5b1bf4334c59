from __future__ import annotations

from datetime import UTC, datetime

MINUTE_MS = 60_000


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


def now_ms() -> int:
    return int(utc_now().timestamp() * 1000)


def floor_to_interval_ms(value_ms: int, interval_ms: int) -> int:
    return (value_ms // interval_ms) * interval_ms


def ms_to_datetime(value_ms: int) -> datetime:
    return datetime.fromtimestamp(value_ms / 1000, tz=UTC)
