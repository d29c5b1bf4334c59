from datetime import UTC, datetime
from decimal import Decimal

import polars as pl

from pool_price_monitor.core.models import ConnectionState, PricePoint
from pool_price_monitor.presentation.frames import (
    SERIES_SCHEMA,
    format_price,
    series_frame,
    status_text,
    summarize_series,
)

T0 = 1_768_471_200_000


def test_series_frame_keeps_placeholder_slots_with_null_price() -> None:
    frame = series_frame(
        [
            PricePoint.observation(T0, Decimal("2500.5")),
            PricePoint.placeholder(T0 + 30_000),
            PricePoint.observation(T0 + 60_000, Decimal("2510")),
        ]
    )

    assert dict(frame.schema) == SERIES_SCHEMA
    assert frame.height == 3
    assert frame["time"][0] == datetime(2026, 1, 15, 10, 0, tzinfo=UTC)
    assert frame["price"].to_list() == [2500.5, None, 2510.0]
    assert frame["is_placeholder"].to_list() == [False, True, False]


def test_empty_series_frame_has_schema() -> None:
    frame = series_frame([])
    assert frame.is_empty()
    assert dict(frame.schema) == SERIES_SCHEMA


def test_summary_ignores_placeholders() -> None:
    summary = summarize_series(
        series_frame(
            [
                PricePoint.observation(T0, Decimal(2000)),
                PricePoint.placeholder(T0 + 30_000),
                PricePoint.observation(T0 + 60_000, Decimal(2500)),
                PricePoint.observation(T0 + 90_000, Decimal(2200)),
            ]
        )
    )

    assert summary.points == 4
    assert summary.observations == 3
    assert summary.first_price == 2000.0
    assert summary.last_price == 2200.0
    assert summary.min_price == 2000.0
    assert summary.max_price == 2500.0
    assert summary.change_pct is not None
    assert abs(summary.change_pct - 10.0) < 1e-9


def test_summary_of_placeholder_only_frame_has_no_prices() -> None:
    frame = pl.DataFrame(
        {"time": [datetime(2026, 1, 15, tzinfo=UTC)], "price": [None], "is_placeholder": [True]},
        schema=SERIES_SCHEMA,
    )
    summary = summarize_series(frame)
    assert summary.points == 1
    assert summary.observations == 0
    assert summary.change_pct is None


def test_status_text_per_connection_state() -> None:
    assert status_text(ConnectionState.disconnected()) == "Disconnected"
    assert status_text(ConnectionState.connecting()) == "Connecting"
    assert status_text(ConnectionState.subscribed("0x1")) == "Connected"
    assert status_text(ConnectionState.degraded("OSError: reset")) == "Reconnecting (OSError: reset)"


def test_format_price_placeholder_and_thousands() -> None:
    assert format_price(None) == "Waiting for swaps..."
    assert format_price(2512.5) == "$2,512.50"
