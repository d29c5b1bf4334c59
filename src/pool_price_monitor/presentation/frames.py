from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

import polars as pl

from pool_price_monitor.core.models import ConnectionState, ConnectionStatus, PricePoint

SERIES_SCHEMA = {
    "time": pl.Datetime("ms", "UTC"),
    "price": pl.Float64,
    "is_placeholder": pl.Boolean,
}


@dataclass(frozen=True, slots=True)
class SeriesSummary:
    points: int
    observations: int
    first_price: float | None
    last_price: float | None
    min_price: float | None
    max_price: float | None

    @property
    def change_pct(self) -> float | None:
        if self.first_price is None or self.last_price is None or self.first_price == 0:
            return None
        return (self.last_price - self.first_price) / self.first_price * 100.0


def series_frame(points: Sequence[PricePoint]) -> pl.DataFrame:
    """Chart-ready frame; placeholder rows keep their slot with a null price."""
    if not points:
        return pl.DataFrame(schema=SERIES_SCHEMA)

    frame = pl.DataFrame(
        {
            "time_ms": [point.time for point in points],
            "price": [float(point.price) if point.price is not None else None for point in points],
            "is_placeholder": [point.is_placeholder for point in points],
        },
        schema={"time_ms": pl.Int64, "price": pl.Float64, "is_placeholder": pl.Boolean},
    )
    return frame.select(
        pl.col("time_ms").cast(pl.Datetime("ms")).dt.replace_time_zone("UTC").alias("time"),
        pl.col("price"),
        pl.col("is_placeholder"),
    )


def summarize_series(frame: pl.DataFrame) -> SeriesSummary:
    observations = frame.filter(~pl.col("is_placeholder")).drop_nulls("price")
    if observations.is_empty():
        return SeriesSummary(
            points=frame.height,
            observations=0,
            first_price=None,
            last_price=None,
            min_price=None,
            max_price=None,
        )

    stats = observations.select(
        pl.col("price").first().alias("first_price"),
        pl.col("price").last().alias("last_price"),
        pl.col("price").min().alias("min_price"),
        pl.col("price").max().alias("max_price"),
    ).row(0, named=True)
    return SeriesSummary(
        points=frame.height,
        observations=observations.height,
        first_price=stats["first_price"],
        last_price=stats["last_price"],
        min_price=stats["min_price"],
        max_price=stats["max_price"],
    )


def status_text(state: ConnectionState) -> str:
    if state.status is ConnectionStatus.SUBSCRIBED:
        return "Connected"
    if state.status is ConnectionStatus.CONNECTING:
        return "Connecting"
    if state.status is ConnectionStatus.DEGRADED:
        return f"Reconnecting ({state.reason})" if state.reason else "Reconnecting"
    return "Disconnected"


def format_price(price: float | None, *, decimals: int = 2) -> str:
    if price is None:
        return "Waiting for swaps..."
    return f"${price:,.{decimals}f}"
