from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from decimal import Decimal
from typing import Any

from pool_price_monitor.core.config import Settings
from pool_price_monitor.core.models import ConnectionState, PricePoint
from pool_price_monitor.core.time_utils import MINUTE_MS, now_ms
from pool_price_monitor.presentation.frames import status_text
from pool_price_monitor.pricing.fixed_point import FixedPointPriceConverter
from pool_price_monitor.series.buffer import PriceSeriesBuffer
from pool_price_monitor.sources.history import BackfillSummary, HistoricalBackfill, SwapHistoryClient
from pool_price_monitor.sources.swap_log import SwapLogDecoder
from pool_price_monitor.sources.websocket import FeedDiagnostics, LiveFeedConnector

logger = logging.getLogger(__name__)


class PoolMonitor:
    """Owns every component for one pool and exposes the read API the UI polls."""

    def __init__(
        self,
        settings: Settings,
        *,
        history_client: SwapHistoryClient | None = None,
        connect: Callable[[str], Any] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._settings = settings
        self._clock = clock

        self._converter = FixedPointPriceConverter.from_settings(settings)
        self._decoder = SwapLogDecoder(self._converter, settings.pool_address)
        self._buffer = PriceSeriesBuffer.from_settings(settings, clock=clock)
        self._connector = LiveFeedConnector(
            url=settings.feed_url,
            decoder=self._decoder,
            append=self._buffer.append,
            reconnect_seconds=settings.reconnect_seconds,
            max_reconnect_seconds=settings.max_reconnect_seconds,
            read_timeout_seconds=settings.read_timeout_seconds,
            subscribe_timeout_seconds=settings.subscribe_timeout_seconds,
            connect=connect,
            clock=clock,
        )

        self._history_client: SwapHistoryClient | None = None
        self._backfill: HistoricalBackfill | None = None
        if settings.backfill_enabled:
            self._history_client = history_client or SwapHistoryClient.from_settings(settings)
            self._backfill = HistoricalBackfill(
                client=self._history_client,
                converter=self._converter,
                seed=self._buffer.seed,
            )

        self._backfill_summary: BackfillSummary | None = None
        self._backfill_thread: threading.Thread | None = None
        self._timer_thread: threading.Thread | None = None
        self._stop_event = threading.Event()
        self._started = False

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def buffer(self) -> PriceSeriesBuffer:
        return self._buffer

    @property
    def connector(self) -> LiveFeedConnector:
        return self._connector

    @property
    def converter(self) -> FixedPointPriceConverter:
        return self._converter

    @property
    def backfill_summary(self) -> BackfillSummary | None:
        return self._backfill_summary

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        self._stop_event.clear()

        if self._backfill is not None:
            # the seed merges by time, so the live feed does not wait for it
            self._backfill_thread = threading.Thread(target=self._run_backfill, name="backfill", daemon=True)
            self._backfill_thread.start()

        self._connector.start()
        self._timer_thread = threading.Thread(target=self._timer_loop, name="series-timer", daemon=True)
        self._timer_thread.start()
        logger.info(
            "Pool monitor started",
            extra={"pool": self._settings.pool_address, "feed_url": self._settings.feed_url},
        )

    def stop(self) -> None:
        self._stop_event.set()
        if self._backfill is not None:
            self._backfill.cancel()
        self._connector.stop()

        if self._timer_thread is not None:
            self._timer_thread.join(timeout=5.0)
            self._timer_thread = None
        if self._backfill_thread is not None:
            # cancel() interrupts backoff waits; an in-flight request still runs to its timeout
            self._backfill_thread.join(timeout=self._settings.rest_timeout_seconds + 5.0)
            if self._backfill_thread.is_alive():
                logger.warning("Historical backfill still running after stop")
            else:
                self._backfill_thread = None
        self._started = False
        logger.info("Pool monitor stopped")

    def close(self) -> None:
        self.stop()
        if self._history_client is None:
            return
        if self._backfill_thread is not None:
            logger.warning("Leaving history client open for the unfinished backfill")
            return
        self._history_client.close()

    def run_backfill(self) -> BackfillSummary | None:
        """Fetch history for the configured lookback and seed the buffer synchronously."""
        if self._backfill is None:
            return None
        start_ms = self._clock() - self._settings.lookback_minutes * MINUTE_MS
        self._backfill_summary = self._backfill.run(start_ms)
        return self._backfill_summary

    def _run_backfill(self) -> None:
        try:
            self.run_backfill()
        except Exception:
            logger.exception("Historical backfill crashed; continuing with live data only")

    def _timer_loop(self) -> None:
        while not self._stop_event.wait(self._settings.evict_interval_seconds):
            self.tick()

    def tick(self, now: int | None = None) -> None:
        current = self._clock() if now is None else now
        self._buffer.evict(current)
        self._buffer.fill_gaps(current)

    def current_price(self) -> Decimal | None:
        return self._connector.current_price.get()

    def snapshot(self) -> tuple[PricePoint, ...]:
        return self._buffer.snapshot()

    def connection_state(self) -> ConnectionState:
        return self._connector.connection_state.get()

    def status_text(self) -> str:
        return status_text(self.connection_state())

    def diagnostics(self) -> FeedDiagnostics:
        return self._connector.diagnostics

    def subscribe_price(self, callback: Callable[[Decimal | None], None]) -> Callable[[], None]:
        return self._connector.current_price.subscribe(callback)

    def subscribe_connection_state(self, callback: Callable[[ConnectionState], None]) -> Callable[[], None]:
        return self._connector.connection_state.subscribe(callback)

    def subscribe_series(self, callback: Callable[[tuple[PricePoint, ...]], None]) -> Callable[[], None]:
        return self._buffer.add_listener(callback)
