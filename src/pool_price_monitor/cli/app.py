from __future__ import annotations

import json
import time
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any

import typer
from rich.console import Console
from rich.table import Table

from pool_price_monitor.core.config import Settings
from pool_price_monitor.core.errors import InvalidPriceError, SwapDecodeError
from pool_price_monitor.core.logging import configure_logging
from pool_price_monitor.core.time_utils import MINUTE_MS, ms_to_datetime, now_ms
from pool_price_monitor.pipeline.monitor import PoolMonitor
from pool_price_monitor.presentation.frames import SeriesSummary, format_price, series_frame, summarize_series
from pool_price_monitor.pricing.fixed_point import FixedPointPriceConverter
from pool_price_monitor.series.buffer import PriceSeriesBuffer
from pool_price_monitor.sources.history import HistoricalBackfill, SwapHistoryClient
from pool_price_monitor.sources.swap_log import SwapLogDecoder

app = typer.Typer(help="Live Uniswap V3 pool price monitor")
console = Console()


def _parse_sqrt_price(value: str) -> int:
    normalized = value.strip().lower()
    try:
        if normalized.startswith("0x"):
            return int(normalized, 16)
        return int(normalized)
    except ValueError as exc:
        raise typer.BadParameter("sqrtPriceX96 must be a decimal or 0x-prefixed hex integer") from exc


def _load_log_record(path: Path) -> Any:
    payload = json.loads(path.read_text(encoding="utf-8"))
    # accept a bare log, an eth_subscription push, or an eth_getLogs response
    if isinstance(payload, dict) and isinstance(payload.get("params"), dict):
        return payload["params"].get("result")
    if isinstance(payload, dict) and isinstance(payload.get("result"), list) and payload["result"]:
        return payload["result"][0]
    return payload


def _summary_line(summary: SeriesSummary) -> str:
    change = summary.change_pct
    change_text = f"{change:+.3f}%" if change is not None else "n/a"
    return (
        f"points={summary.points}, observations={summary.observations}, "
        f"last={format_price(summary.last_price)}, "
        f"min={format_price(summary.min_price)}, max={format_price(summary.max_price)}, "
        f"change={change_text}"
    )


def _recent_points_table(monitor: PoolMonitor, rows: int) -> Table:
    table = Table(title=monitor.settings.pool_label)
    table.add_column("time (UTC)")
    table.add_column("price", justify="right")
    for point in monitor.snapshot()[-rows:]:
        price = "-" if point.price is None else format_price(float(point.price))
        table.add_row(ms_to_datetime(point.time).strftime("%H:%M:%S"), price)
    return table


@app.command("watch")
def watch(
    refresh_seconds: float = typer.Option(default=5.0, min=0.5, help="Seconds between status prints"),
    rows: int = typer.Option(default=10, min=1, help="Recent points to show per refresh"),
    no_backfill: bool = typer.Option(default=False, help="Skip the historical seed"),
) -> None:
    settings = Settings()
    if no_backfill:
        settings = settings.model_copy(update={"backfill_enabled": False})
    configure_logging(settings.log_level)

    monitor = PoolMonitor(settings)
    monitor.start()
    try:
        while True:
            time.sleep(refresh_seconds)
            summary = summarize_series(series_frame(monitor.snapshot()))
            price = monitor.current_price()
            console.print(
                f"[bold]{monitor.status_text()}[/bold] "
                f"{format_price(float(price)) if price is not None else format_price(None)} | "
                f"{_summary_line(summary)}"
            )
            console.print(_recent_points_table(monitor, rows))
    except KeyboardInterrupt:
        console.print("Stopping monitor")
    finally:
        monitor.close()
        diagnostics = monitor.diagnostics()
        console.print(f"Feed diagnostics: {diagnostics.as_dict()}")


@app.command("backfill")
def backfill(
    minutes: int | None = typer.Option(default=None, min=1, help="Lookback in minutes; defaults to the window"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    converter = FixedPointPriceConverter.from_settings(settings)
    buffer = PriceSeriesBuffer.from_settings(settings)
    client = SwapHistoryClient.from_settings(settings)
    lookback = minutes if minutes is not None else settings.lookback_minutes
    try:
        summary = HistoricalBackfill(client=client, converter=converter, seed=buffer.seed).run(
            now_ms() - lookback * MINUTE_MS
        )
    finally:
        client.close()

    if summary.error is not None:
        console.print(f"[red]Backfill failed:[/red] {summary.error}")
        raise typer.Exit(code=1)

    console.print(
        f"Backfill complete: fetched={summary.fetched}, seeded={summary.seeded}, skipped={summary.skipped}"
    )
    console.print(_summary_line(summarize_series(series_frame(buffer.snapshot()))))


@app.command("decode-log")
def decode_log(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON file holding a raw log record"),
    best_effort: bool = typer.Option(default=False, help="Zero-fill a truncated payload instead of rejecting it"),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)

    decoder = SwapLogDecoder(FixedPointPriceConverter.from_settings(settings), settings.pool_address)
    record = _load_log_record(path)
    try:
        event = decoder.decode_best_effort(record) if best_effort else decoder.decode(record)
    except (SwapDecodeError, InvalidPriceError) as exc:
        console.print(f"[red]{exc.__class__.__name__}:[/red] {exc}")
        raise typer.Exit(code=1) from exc

    console.print_json(data=event.to_dict())


@app.command("price")
def price(
    sqrt_price_x96: str = typer.Argument(..., help="Raw sqrtPriceX96 value"),
    inverse: bool = typer.Option(default=False, help="Treat the argument as a decimal price and print sqrtPriceX96"),
) -> None:
    settings = Settings()
    converter = FixedPointPriceConverter.from_settings(settings)

    try:
        if inverse:
            try:
                value = Decimal(sqrt_price_x96)
            except InvalidOperation as exc:
                raise typer.BadParameter("price must be a decimal number") from exc
            console.print(str(converter.to_sqrt_price_x96(value)))
            return
        console.print(str(converter.to_price(_parse_sqrt_price(sqrt_price_x96))))
    except InvalidPriceError as exc:
        console.print(f"[red]Invalid price:[/red] {exc}")
        raise typer.Exit(code=1) from exc
