from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import asdict, dataclass
from decimal import Decimal
from typing import Any

import websockets

from pool_price_monitor.core.errors import (
    FeedTransportError,
    InvalidPriceError,
    MalformedPayloadError,
    NotASwapEventError,
)
from pool_price_monitor.core.models import ConnectionState, PricePoint, SwapEvent
from pool_price_monitor.core.observable import Observable
from pool_price_monitor.core.time_utils import now_ms
from pool_price_monitor.sources.swap_log import SWAP_TOPIC, SwapLogDecoder

SUBSCRIBE_REQUEST_ID = 1
SUBSCRIPTION_METHOD = "eth_subscription"

logger = logging.getLogger(__name__)


def build_subscribe_request(pool_address: str, request_id: int = SUBSCRIBE_REQUEST_ID) -> str:
    return json.dumps(
        {
            "jsonrpc": "2.0",
            "id": request_id,
            "method": "eth_subscribe",
            "params": ["logs", {"address": pool_address, "topics": [SWAP_TOPIC]}],
        },
        separators=(",", ":"),
    )


@dataclass(slots=True)
class FeedDiagnostics:
    messages_received: int = 0
    non_json_messages: int = 0
    ignored_messages: int = 0
    swaps_decoded: int = 0
    not_swap_events: int = 0
    malformed_payloads: int = 0
    invalid_prices: int = 0
    connections: int = 0
    disconnects: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class FeedMessageProcessor:
    """Route inbound JSON-RPC envelopes and turn subscription pushes into swaps."""

    def __init__(
        self,
        decoder: SwapLogDecoder,
        on_swap: Callable[[SwapEvent, int], None],
        diagnostics: FeedDiagnostics | None = None,
    ) -> None:
        self._decoder = decoder
        self._on_swap = on_swap
        self._diagnostics = diagnostics or FeedDiagnostics()
        self._lock = threading.Lock()

    @property
    def diagnostics(self) -> FeedDiagnostics:
        with self._lock:
            return FeedDiagnostics(**self._diagnostics.as_dict())

    def count(self, counter: str) -> None:
        with self._lock:
            setattr(self._diagnostics, counter, getattr(self._diagnostics, counter) + 1)

    def process_raw(self, raw: str | bytes, arrival_time_ms: int, subscription_id: str | None = None) -> SwapEvent | None:
        self.count("messages_received")
        text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
        try:
            message = json.loads(text)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self.count("non_json_messages")
            logger.debug("Dropping non-JSON feed payload")
            return None
        return self.process_message(message, arrival_time_ms, subscription_id=subscription_id)

    def process_message(
        self,
        message: Any,
        arrival_time_ms: int,
        *,
        subscription_id: str | None = None,
    ) -> SwapEvent | None:
        if not isinstance(message, dict) or message.get("method") != SUBSCRIPTION_METHOD:
            self.count("ignored_messages")
            return None

        params = message.get("params")
        if not isinstance(params, dict):
            self.count("ignored_messages")
            return None
        if subscription_id is not None and params.get("subscription") not in {None, subscription_id}:
            self.count("ignored_messages")
            return None

        try:
            event = self._decoder.decode(params.get("result"))
        except NotASwapEventError as exc:
            self.count("not_swap_events")
            logger.debug("Dropping non-swap log", extra={"reason": str(exc)})
            return None
        except MalformedPayloadError as exc:
            self.count("malformed_payloads")
            logger.warning("Dropping malformed swap log", extra={"reason": str(exc)})
            return None
        except InvalidPriceError as exc:
            self.count("invalid_prices")
            logger.warning("Dropping swap without a derivable price", extra={"reason": str(exc)})
            return None

        self.count("swaps_decoded")
        self._on_swap(event, arrival_time_ms)
        return event


class LiveFeedConnector:
    """Single ``eth_subscribe`` log subscription for one pool, with reconnect.

    A daemon thread runs the asyncio session loop. State moves
    Disconnected -> Connecting -> Subscribed, drops to Degraded on any
    transport failure, and goes back to Connecting after the backoff delay.
    ``stop()`` is terminal: it cancels the pending backoff, closes the
    session and leaves the state Disconnected.
    """

    def __init__(
        self,
        *,
        url: str,
        decoder: SwapLogDecoder,
        append: Callable[[PricePoint], Any],
        reconnect_seconds: float = 2.0,
        max_reconnect_seconds: float = 30.0,
        read_timeout_seconds: float = 1.0,
        subscribe_timeout_seconds: float = 10.0,
        connect: Callable[[str], Any] | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._url = url
        self._decoder = decoder
        self._append = append
        self._reconnect_seconds = reconnect_seconds
        self._max_reconnect_seconds = max(max_reconnect_seconds, reconnect_seconds)
        self._read_timeout_seconds = read_timeout_seconds
        self._subscribe_timeout_seconds = subscribe_timeout_seconds
        self._connect = connect or self._default_connect
        self._clock = clock

        self._subscribe_request = build_subscribe_request(decoder.pool_address)
        self._processor = FeedMessageProcessor(decoder, self._handle_swap)
        self._state: Observable[ConnectionState] = Observable(ConnectionState.disconnected(), name="connection_state")
        self._current_price: Observable[Decimal | None] = Observable(None, name="current_price")
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._was_subscribed = False

    @staticmethod
    def _default_connect(url: str) -> Any:
        return websockets.connect(
            url,
            ping_interval=20,
            ping_timeout=20,
            close_timeout=5,
            max_size=2**22,
        )

    @property
    def subscribe_request(self) -> str:
        return self._subscribe_request

    @property
    def connection_state(self) -> Observable[ConnectionState]:
        return self._state

    @property
    def current_price(self) -> Observable[Decimal | None]:
        return self._current_price

    @property
    def diagnostics(self) -> FeedDiagnostics:
        return self._processor.diagnostics

    @property
    def processor(self) -> FeedMessageProcessor:
        return self._processor

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run_loop, name="live-feed", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._set_state(ConnectionState.disconnected())

    def _run_loop(self) -> None:
        delay = self._reconnect_seconds
        with asyncio.Runner() as runner:
            while not self._stop_event.is_set():
                self._set_state(ConnectionState.connecting())
                try:
                    runner.run(self.run_session())
                except Exception as exc:
                    if self._stop_event.is_set():
                        break
                    self._processor.count("disconnects")
                    reason = f"{exc.__class__.__name__}: {exc}" if str(exc) else exc.__class__.__name__
                    logger.warning("Live feed degraded", extra={"url": self._url, "reason": reason})
                    self._set_state(ConnectionState.degraded(reason))
                if self._stop_event.is_set():
                    break

                if self._was_subscribed:
                    delay = self._reconnect_seconds

                logger.info("Scheduling live feed reconnect", extra={"sleep_seconds": round(delay, 3)})
                if self._stop_event.wait(delay):
                    break
                delay = min(self._max_reconnect_seconds, delay * 2)

    async def run_session(self) -> None:
        """One connect-subscribe-read cycle. Returns only when stopped."""
        self._was_subscribed = False
        async with self._connect(self._url) as connection:
            self._processor.count("connections")
            await connection.send(self._subscribe_request)
            subscription_id = await self._await_subscription(connection)
            self._was_subscribed = True
            self._set_state(ConnectionState.subscribed(subscription_id))
            logger.info("Subscribed to pool swap logs", extra={"subscription_id": subscription_id})

            while not self._stop_event.is_set():
                try:
                    raw = await asyncio.wait_for(connection.recv(), timeout=self._read_timeout_seconds)
                except TimeoutError:
                    continue
                self._processor.process_raw(raw, self._clock(), subscription_id=subscription_id)

    async def _await_subscription(self, connection: Any) -> str:
        deadline = time.monotonic() + self._subscribe_timeout_seconds
        while not self._stop_event.is_set():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise FeedTransportError("timed out waiting for subscription acknowledgment")
            try:
                raw = await asyncio.wait_for(connection.recv(), timeout=min(remaining, self._read_timeout_seconds))
            except TimeoutError:
                continue

            text = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            try:
                message = json.loads(text)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict) or message.get("id") != SUBSCRIBE_REQUEST_ID:
                # pushes cannot arrive before the ack for a fresh subscription
                continue
            if "error" in message:
                raise FeedTransportError(f"subscription rejected: {message['error']}")
            result = message.get("result")
            if not isinstance(result, str) or not result:
                raise FeedTransportError(f"subscription acknowledgment without an id: {message!r}")
            return result
        raise FeedTransportError("stopped before subscription was acknowledged")

    def _handle_swap(self, event: SwapEvent, arrival_time_ms: int) -> None:
        self._current_price.set(event.price)
        self._append(PricePoint.observation(arrival_time_ms, event.price, key=event.dedup_key))

    def _set_state(self, state: ConnectionState) -> None:
        previous = self._state.get()
        if previous == state:
            return
        logger.info(
            "Live feed state change",
            extra={"from_status": previous.status.value, "to_status": state.status.value, "reason": state.reason},
        )
        self._state.set(state)
