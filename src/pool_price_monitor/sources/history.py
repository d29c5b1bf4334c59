from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import UTC
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from pool_price_monitor.core.config import Settings
from pool_price_monitor.core.errors import BackfillFetchError, InvalidPriceError
from pool_price_monitor.core.models import PricePoint
from pool_price_monitor.core.time_utils import utc_now
from pool_price_monitor.pricing.fixed_point import FixedPointPriceConverter

SUBGRAPH_PAGE_SIZE = 1000

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class HistoricalSwap:
    timestamp: int
    sqrt_price_x96: int
    swap_id: str | None = None


@dataclass(frozen=True, slots=True)
class BackfillSummary:
    start_ms: int
    fetched: int
    seeded: int
    skipped: int
    error: str | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def _swap_query(pool_address: str, from_sec: int, page_size: int) -> str:
    return (
        "query Subgraphs {\n"
        "  swaps(\n"
        f'    where: {{ pool: "{pool_address.lower()}", timestamp_gte: {from_sec} }}\n'
        "    orderBy: timestamp\n"
        "    orderDirection: asc\n"
        f"    first: {page_size}\n"
        "  ) {\n"
        "    id\n"
        "    timestamp\n"
        "    sqrtPriceX96\n"
        "  }\n"
        "}\n"
    )


def _is_retryable_status(status_code: int) -> bool:
    # indexer gateways answer 429 when the key is throttled and 5xx while reindexing
    return status_code == 429 or status_code >= 500


def _retry_after_seconds(header: str | None) -> float | None:
    """Seconds to wait from a Retry-After header in delta-seconds or HTTP-date form."""
    if header is None:
        return None
    value = header.strip()
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=UTC)
    return max(0.0, (retry_at - utc_now()).total_seconds())


def _parse_swap_rows(rows: Any) -> list[HistoricalSwap]:
    if not isinstance(rows, list):
        raise BackfillFetchError(f"swaps must be a list, got {type(rows).__name__}")

    swaps: list[HistoricalSwap] = []
    for row in rows:
        if not isinstance(row, dict):
            logger.debug("Skipping non-object swap row")
            continue
        try:
            timestamp = int(row["timestamp"])
            sqrt_price_x96 = int(str(row["sqrtPriceX96"]))
        except (KeyError, TypeError, ValueError):
            logger.debug("Skipping swap row with missing fields", extra={"row": row})
            continue
        swap_id = row.get("id")
        swaps.append(
            HistoricalSwap(
                timestamp=timestamp,
                sqrt_price_x96=sqrt_price_x96,
                swap_id=str(swap_id) if swap_id is not None else None,
            )
        )
    return swaps


class SwapHistoryClient:
    """Fetch finalized swaps from the history proxy or straight from the subgraph."""

    def __init__(
        self,
        *,
        pool_address: str,
        base_url: str,
        mode: str = "proxy",
        subgraph_url: str | None = None,
        api_key: str | None = None,
        timeout_seconds: int = 20,
        retries: int = 3,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if mode not in {"proxy", "subgraph"}:
            raise ValueError(f"unknown history mode {mode!r}")
        if mode == "subgraph" and not subgraph_url:
            raise ValueError("subgraph mode needs a subgraph_url")

        headers = {"Accept": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"

        self._pool_address = pool_address
        self._mode = mode
        self._subgraph_url = subgraph_url
        self._client = httpx.Client(
            base_url=base_url.rstrip("/"),
            timeout=timeout_seconds,
            headers=headers,
            transport=transport,
        )
        self._retries = max(1, retries)
        self._min_retry_delay_seconds = 1.0
        self._max_backoff_seconds = 30.0
        self._cancelled = threading.Event()

    @classmethod
    def from_settings(cls, settings: Settings, *, transport: httpx.BaseTransport | None = None) -> SwapHistoryClient:
        api_key = settings.history_api_key.get_secret_value() if settings.history_api_key is not None else None
        return cls(
            pool_address=settings.pool_address,
            base_url=settings.history_base_url,
            mode=settings.history_mode,
            subgraph_url=settings.subgraph_url,
            api_key=api_key,
            timeout_seconds=settings.rest_timeout_seconds,
            retries=settings.rest_max_retries,
            transport=transport,
        )

    def close(self) -> None:
        self._client.close()

    def cancel(self) -> None:
        """Abort the current fetch at its next attempt, page or backoff wait."""
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def fetch_swaps(self, from_sec: int) -> list[HistoricalSwap]:
        if self._mode == "subgraph":
            return self.fetch_swaps_from_subgraph(from_sec)
        return self.fetch_swaps_via_proxy(from_sec)

    def fetch_swaps_via_proxy(self, from_sec: int) -> list[HistoricalSwap]:
        payload = self._request("GET", "/api/swaps", params={"fromSec": from_sec})
        if not isinstance(payload, dict):
            raise BackfillFetchError("history proxy returned a non-object body")
        if "error" in payload:
            raise BackfillFetchError(f"history proxy error: {payload.get('error')} {payload.get('details', '')}".strip())
        return _parse_swap_rows(payload.get("swaps", []))

    def fetch_swaps_from_subgraph(self, from_sec: int) -> list[HistoricalSwap]:
        subgraph_url = self._subgraph_url
        if subgraph_url is None:
            raise ValueError("subgraph fetch needs a subgraph_url")

        swaps: list[HistoricalSwap] = []
        seen_ids: set[str] = set()
        cursor = from_sec

        while True:
            self._raise_if_cancelled(subgraph_url)
            payload = self._request(
                "POST",
                subgraph_url,
                json={
                    "query": _swap_query(self._pool_address, cursor, SUBGRAPH_PAGE_SIZE),
                    "operationName": "Subgraphs",
                    "variables": {},
                },
            )
            if not isinstance(payload, dict):
                raise BackfillFetchError("subgraph returned a non-object body")
            if payload.get("errors"):
                raise BackfillFetchError(f"subgraph errors: {payload['errors']}")

            data = payload.get("data") or {}
            raw_rows = data.get("swaps", []) if isinstance(data, dict) else []
            page = _parse_swap_rows(raw_rows)

            fresh = [swap for swap in page if swap.swap_id is None or swap.swap_id not in seen_ids]
            seen_ids.update(swap.swap_id for swap in fresh if swap.swap_id is not None)
            swaps.extend(fresh)

            # timestamp_gte re-reads the boundary second, so a page of only
            # already-seen rows means the cursor cannot advance
            if len(raw_rows) < SUBGRAPH_PAGE_SIZE or not fresh:
                break
            cursor = max(swap.timestamp for swap in page)

        return swaps

    def _request(self, method: str, url: str, **kwargs: Any) -> Any:
        last_transport_error: httpx.TransportError | None = None

        for attempt in range(1, self._retries + 1):
            self._raise_if_cancelled(url)
            try:
                response = self._client.request(method, url, **kwargs)
            except httpx.TransportError as exc:
                last_transport_error = exc
                if attempt >= self._retries:
                    break
                self._wait_before_retry(attempt=attempt, url=url, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                try:
                    return response.json()
                except ValueError as exc:
                    raise BackfillFetchError(f"{url} returned a non-JSON body") from exc

            if _is_retryable_status(response.status_code) and attempt < self._retries:
                self._wait_before_retry(
                    attempt=attempt,
                    url=url,
                    reason=f"HTTP {response.status_code}",
                    retry_after_seconds=_retry_after_seconds(response.headers.get("Retry-After")),
                )
                continue

            raise BackfillFetchError(f"{url} returned HTTP {response.status_code}: {response.text[:200]}")

        if last_transport_error is not None:
            raise BackfillFetchError(f"{url} unreachable: {last_transport_error}") from last_transport_error
        raise BackfillFetchError(f"{url} exhausted retries without a concrete error")

    def _raise_if_cancelled(self, url: str) -> None:
        if self._cancelled.is_set():
            raise BackfillFetchError(f"{url} fetch cancelled")

    def _wait_before_retry(
        self,
        *,
        attempt: int,
        url: str,
        reason: str,
        retry_after_seconds: float | None = None,
    ) -> None:
        """Back off before the next attempt; ``cancel()`` cuts the wait short."""
        if retry_after_seconds is None:
            backoff = self._min_retry_delay_seconds * 2 ** (attempt - 1)
            retry_after_seconds = min(self._max_backoff_seconds, backoff)
        delay = retry_after_seconds + random.uniform(0.0, 0.3)  # noqa: S311

        logger.warning(
            "Retrying swap history request",
            extra={
                "url": url,
                "attempt": attempt,
                "max_attempts": self._retries,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        if self._cancelled.wait(delay):
            raise BackfillFetchError(f"{url} fetch cancelled")


class HistoricalBackfill:
    """One-shot seed of the price series from already-finalized swaps.

    Uses the same converter as the live path. Any fetch failure is logged and
    reported in the summary; the caller keeps going with whatever the buffer
    already holds.
    """

    def __init__(
        self,
        *,
        client: SwapHistoryClient,
        converter: FixedPointPriceConverter,
        seed: Callable[[Iterable[PricePoint]], int],
    ) -> None:
        self._client = client
        self._converter = converter
        self._seed = seed
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()
        self._client.cancel()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def to_points(self, swaps: Iterable[HistoricalSwap]) -> tuple[list[PricePoint], int]:
        points: list[PricePoint] = []
        skipped = 0
        for swap in swaps:
            try:
                price = self._converter.to_price(swap.sqrt_price_x96)
            except InvalidPriceError:
                skipped += 1
                continue
            points.append(PricePoint.observation(swap.timestamp * 1000, price, key=swap.swap_id))
        points.sort(key=lambda point: point.time)
        return points, skipped

    def run(self, start_ms: int) -> BackfillSummary:
        from_sec = start_ms // 1000
        try:
            swaps = self._client.fetch_swaps(from_sec)
        except BackfillFetchError as exc:
            if self._cancelled.is_set():
                logger.info("Historical backfill cancelled during fetch", extra={"reason": str(exc)})
                return BackfillSummary(start_ms=start_ms, fetched=0, seeded=0, skipped=0, cancelled=True)
            logger.warning("Historical backfill failed; continuing with live data only", extra={"reason": str(exc)})
            return BackfillSummary(start_ms=start_ms, fetched=0, seeded=0, skipped=0, error=str(exc))

        points, skipped = self.to_points(swaps)
        if self._cancelled.is_set():
            logger.info("Historical backfill cancelled before seeding", extra={"fetched": len(swaps)})
            return BackfillSummary(start_ms=start_ms, fetched=len(swaps), seeded=0, skipped=skipped, cancelled=True)

        seeded = self._seed(points)
        logger.info(
            "Historical backfill seeded series",
            extra={"fetched": len(swaps), "seeded": seeded, "skipped": skipped, "from_sec": from_sec},
        )
        return BackfillSummary(start_ms=start_ms, fetched=len(swaps), seeded=seeded, skipped=skipped)
