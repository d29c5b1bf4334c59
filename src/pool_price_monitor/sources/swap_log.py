from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pool_price_monitor.core.errors import MalformedPayloadError, NotASwapEventError
from pool_price_monitor.core.models import SwapEvent
from pool_price_monitor.pricing.fixed_point import FixedPointPriceConverter

# keccak256("Swap(address,address,int256,int256,uint160,uint128,int24)")
SWAP_TOPIC = "0xc42079f94a6350d7e6235f29174924f928cc2ac818eb64fed8004e115fbcca67"
SWAP_EVENT_SIGNATURE = "Swap(address,address,int256,int256,uint160,uint128,int24)"

WORD_BYTES = 32
SWAP_TOPIC_COUNT = 3
SWAP_DATA_WORDS = 5
SWAP_DATA_BYTES = SWAP_DATA_WORDS * WORD_BYTES

_UINT160_MAX = 2**160 - 1
_UINT128_MAX = 2**128 - 1
_INT24_MIN = -(2**23)
_INT24_MAX = 2**23 - 1

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SwapLogFields:
    """Typed Swap log fields before price derivation."""

    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int
    block_number: int | None = None
    transaction_hash: str | None = None
    log_index: int | None = None


def _hex_to_bytes(value: Any, *, field_name: str) -> bytes:
    if not isinstance(value, str):
        raise MalformedPayloadError(f"{field_name} must be a hex string, got {type(value).__name__}")
    text = value[2:] if value[:2].lower() == "0x" else value
    if len(text) % 2 != 0:
        raise MalformedPayloadError(f"{field_name} has an odd number of hex digits")
    try:
        return bytes.fromhex(text)
    except ValueError as exc:
        raise MalformedPayloadError(f"{field_name} is not valid hex") from exc


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        normalized = value.strip()
        if normalized == "":
            return None
        try:
            return int(normalized, 16) if normalized[:2].lower() == "0x" else int(normalized)
        except ValueError:
            return None
    return None


def _read_word(payload: bytes, index: int, *, signed: bool) -> int:
    word = payload[index * WORD_BYTES : (index + 1) * WORD_BYTES]
    if not word:
        return 0
    return int.from_bytes(word, "big", signed=signed)


def _topic_address(topic: bytes) -> str:
    return "0x" + topic[-20:].hex()


class SwapLogDecoder:
    """Validate and decode raw ``eth_subscribe`` / ``eth_getLogs`` records for one pool."""

    def __init__(self, converter: FixedPointPriceConverter, pool_address: str | None = None) -> None:
        self._converter = converter
        address = pool_address if pool_address is not None else converter.metadata.address
        self._pool_address = address.lower()

    @property
    def pool_address(self) -> str:
        return self._pool_address

    def decode(self, log: Any) -> SwapEvent:
        """Decode a log into a priced SwapEvent.

        Raises NotASwapEventError, MalformedPayloadError or InvalidPriceError;
        callers drop the record and continue.
        """
        return self._price(self.parse(log))

    def parse(self, log: Any) -> SwapLogFields:
        record, topics = self._validate_envelope(log)
        payload = _hex_to_bytes(record.get("data", "0x"), field_name="data")
        if len(payload) != SWAP_DATA_BYTES:
            raise MalformedPayloadError(
                f"Swap payload must be {SWAP_DATA_BYTES} bytes, got {len(payload)}"
            )
        return self._fields(record, topics, payload)

    def decode_best_effort(self, log: Any) -> SwapEvent:
        """Lenient decode for partial records from loose feeds.

        Origin, topic count and signature are still enforced. A payload that
        is shorter than five words but word aligned is accepted and the
        missing trailing words read as zero; anything longer or unaligned is
        still a MalformedPayloadError. The live connector never uses this path.
        """
        record, topics = self._validate_envelope(log)
        payload = _hex_to_bytes(record.get("data", "0x"), field_name="data")
        if len(payload) > SWAP_DATA_BYTES or len(payload) % WORD_BYTES != 0:
            raise MalformedPayloadError(
                f"Swap payload must be at most {SWAP_DATA_BYTES} word-aligned bytes, got {len(payload)}"
            )
        if len(payload) < SWAP_DATA_BYTES:
            logger.warning(
                "Decoding truncated Swap payload with zero-filled words",
                extra={"payload_bytes": len(payload), "transaction_hash": record.get("transactionHash")},
            )
        return self._price(self._fields(record, topics, payload))

    def _validate_envelope(self, log: Any) -> tuple[Mapping[str, Any], list[bytes]]:
        if not isinstance(log, Mapping):
            raise NotASwapEventError(f"log record must be an object, got {type(log).__name__}")

        address = log.get("address")
        if not isinstance(address, str) or address.lower() != self._pool_address:
            raise NotASwapEventError(f"log emitted by {address!r}, expected {self._pool_address}")

        if log.get("removed") is True:
            raise NotASwapEventError("log was removed by a chain reorganisation")

        raw_topics = log.get("topics")
        if not isinstance(raw_topics, list) or len(raw_topics) != SWAP_TOPIC_COUNT:
            count = len(raw_topics) if isinstance(raw_topics, list) else None
            raise NotASwapEventError(f"Swap logs carry {SWAP_TOPIC_COUNT} topics, got {count}")

        signature = raw_topics[0]
        if not isinstance(signature, str) or signature.lower() != SWAP_TOPIC:
            raise NotASwapEventError("topic[0] is not the Swap event signature")

        topics = [_hex_to_bytes(topic, field_name=f"topics[{index}]") for index, topic in enumerate(raw_topics)]
        for index, topic in enumerate(topics[1:], start=1):
            if len(topic) != WORD_BYTES:
                raise MalformedPayloadError(f"topics[{index}] must be {WORD_BYTES} bytes, got {len(topic)}")
        return log, topics

    @staticmethod
    def _fields(record: Mapping[str, Any], topics: list[bytes], payload: bytes) -> SwapLogFields:
        sqrt_price_x96 = _read_word(payload, 2, signed=False)
        liquidity = _read_word(payload, 3, signed=False)
        tick = _read_word(payload, 4, signed=True)

        if sqrt_price_x96 > _UINT160_MAX:
            raise MalformedPayloadError("sqrtPriceX96 does not fit in uint160")
        if liquidity > _UINT128_MAX:
            raise MalformedPayloadError("liquidity does not fit in uint128")
        if not _INT24_MIN <= tick <= _INT24_MAX:
            raise MalformedPayloadError(f"tick {tick} does not fit in int24")

        transaction_hash = record.get("transactionHash")
        return SwapLogFields(
            sender=_topic_address(topics[1]),
            recipient=_topic_address(topics[2]),
            amount0=_read_word(payload, 0, signed=True),
            amount1=_read_word(payload, 1, signed=True),
            sqrt_price_x96=sqrt_price_x96,
            liquidity=liquidity,
            tick=tick,
            block_number=_optional_int(record.get("blockNumber")),
            transaction_hash=transaction_hash.lower() if isinstance(transaction_hash, str) else None,
            log_index=_optional_int(record.get("logIndex")),
        )

    def _price(self, fields: SwapLogFields) -> SwapEvent:
        price = self._converter.to_price(fields.sqrt_price_x96)
        return SwapEvent(
            sender=fields.sender,
            recipient=fields.recipient,
            amount0=fields.amount0,
            amount1=fields.amount1,
            sqrt_price_x96=fields.sqrt_price_x96,
            liquidity=fields.liquidity,
            tick=fields.tick,
            price=price,
            block_number=fields.block_number,
            transaction_hash=fields.transaction_hash,
            log_index=fields.log_index,
        )
