from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import StrEnum
from typing import Any


@dataclass(frozen=True, slots=True)
class PoolMetadata:
    """Static pool facts: token ordering, decimals and which side quotes the price.

    With ``quote_in_token0=True`` prices are expressed in token0 units per one
    token1 (USDC per ETH for the USDC/WETH pool, where token0 is USDC).
    """

    address: str
    token0_decimals: int = 6
    token1_decimals: int = 18
    quote_in_token0: bool = True

    @property
    def normalized_address(self) -> str:
        return self.address.lower()


@dataclass(frozen=True, slots=True)
class SwapEvent:
    sender: str
    recipient: str
    amount0: int
    amount1: int
    sqrt_price_x96: int
    liquidity: int
    tick: int
    price: Decimal
    block_number: int | None = None
    transaction_hash: str | None = None
    log_index: int | None = None

    @property
    def dedup_key(self) -> str | None:
        if self.transaction_hash is None or self.log_index is None:
            return None
        return f"{self.transaction_hash}:{self.log_index}"

    def to_dict(self) -> dict[str, Any]:
        # wide integers travel as strings so JSON consumers keep full precision
        return {
            "sender": self.sender,
            "recipient": self.recipient,
            "amount0": str(self.amount0),
            "amount1": str(self.amount1),
            "sqrtPriceX96": str(self.sqrt_price_x96),
            "liquidity": str(self.liquidity),
            "tick": self.tick,
            "price": str(self.price),
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "logIndex": self.log_index,
        }


class PointKind(StrEnum):
    OBSERVATION = "observation"
    PLACEHOLDER = "placeholder"


@dataclass(frozen=True, slots=True)
class PricePoint:
    """One entry of the price series.

    Placeholders mark an empty cadence slot; they carry no price at all so no
    consumer can read them as a real zero.
    """

    time: int
    price: Decimal | None
    kind: PointKind = PointKind.OBSERVATION
    key: str | None = None

    def __post_init__(self) -> None:
        if self.kind is PointKind.OBSERVATION:
            if self.price is None or self.price <= 0:
                raise ValueError(f"observation price must be > 0, got {self.price!r}")
        elif self.price is not None:
            raise ValueError("placeholder points must not carry a price")

    @classmethod
    def observation(cls, time: int, price: Decimal, key: str | None = None) -> PricePoint:
        return cls(time=time, price=price, kind=PointKind.OBSERVATION, key=key)

    @classmethod
    def placeholder(cls, time: int) -> PricePoint:
        return cls(time=time, price=None, kind=PointKind.PLACEHOLDER)

    @property
    def is_placeholder(self) -> bool:
        return self.kind is PointKind.PLACEHOLDER


class ConnectionStatus(StrEnum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    SUBSCRIBED = "subscribed"
    DEGRADED = "degraded"


@dataclass(frozen=True, slots=True)
class ConnectionState:
    status: ConnectionStatus
    reason: str | None = None
    subscription_id: str | None = None

    @classmethod
    def disconnected(cls) -> ConnectionState:
        return cls(status=ConnectionStatus.DISCONNECTED)

    @classmethod
    def connecting(cls) -> ConnectionState:
        return cls(status=ConnectionStatus.CONNECTING)

    @classmethod
    def subscribed(cls, subscription_id: str) -> ConnectionState:
        return cls(status=ConnectionStatus.SUBSCRIBED, subscription_id=subscription_id)

    @classmethod
    def degraded(cls, reason: str) -> ConnectionState:
        return cls(status=ConnectionStatus.DEGRADED, reason=reason)
