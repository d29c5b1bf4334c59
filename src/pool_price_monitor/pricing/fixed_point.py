from __future__ import annotations

from decimal import Decimal, localcontext
from math import isqrt

from pool_price_monitor.core.config import Settings
from pool_price_monitor.core.errors import InvalidPriceError
from pool_price_monitor.core.models import PoolMetadata

Q96 = 2**96
Q192 = 2**192
MAX_UINT160 = 2**160 - 1


class FixedPointPriceConverter:
    """Convert a Q64.96 sqrt price into a decimal price for one pool.

    The pool stores ``sqrtPriceX96 = sqrt(token1_raw / token0_raw) * 2**96``.
    All arithmetic stays in Python integers until the final quotient has been
    scaled by at least ``10**precision``; only then is a ``Decimal`` built, so
    no fixed-width float ever sees the 320-bit square. The scale grows with
    the magnitude gap between numerator and denominator, so the result always
    keeps at least ``precision`` significant digits and never rounds to zero.
    """

    def __init__(self, metadata: PoolMetadata, *, precision: int = 18) -> None:
        self._metadata = metadata
        self._precision = precision

        decimal_shift = metadata.token1_decimals - metadata.token0_decimals
        if not metadata.quote_in_token0:
            decimal_shift = -decimal_shift
        self._decimal_shift = decimal_shift

    @classmethod
    def from_settings(cls, settings: Settings) -> FixedPointPriceConverter:
        return cls(
            PoolMetadata(
                address=settings.pool_address,
                token0_decimals=settings.token0_decimals,
                token1_decimals=settings.token1_decimals,
                quote_in_token0=settings.quote_in_token0,
            ),
            precision=settings.price_precision,
        )

    @property
    def metadata(self) -> PoolMetadata:
        return self._metadata

    @property
    def precision(self) -> int:
        return self._precision

    def _ratio_terms(self, squared: int) -> tuple[int, int]:
        if self._metadata.quote_in_token0:
            numerator, denominator = Q192, squared
        else:
            numerator, denominator = squared, Q192

        if self._decimal_shift >= 0:
            numerator *= 10**self._decimal_shift
        else:
            denominator *= 10 ** (-self._decimal_shift)
        return numerator, denominator

    def to_price(self, sqrt_price_x96: int) -> Decimal:
        if sqrt_price_x96 <= 0:
            raise InvalidPriceError(f"sqrtPriceX96 must be positive, got {sqrt_price_x96}")
        if sqrt_price_x96 > MAX_UINT160:
            raise InvalidPriceError("sqrtPriceX96 exceeds uint160")

        numerator, denominator = self._ratio_terms(sqrt_price_x96 * sqrt_price_x96)
        exponent = self._precision + max(0, len(str(denominator)) - len(str(numerator)))
        scaled = (numerator * 10**exponent) // denominator
        # the string constructor is exact; arithmetic would round to the context precision
        return Decimal(f"{scaled}E-{exponent}")

    def to_sqrt_price_x96(self, price: Decimal | int | str) -> int:
        """Inverse of :meth:`to_price`, rounded down to the nearest integer."""
        value = Decimal(price)
        if value <= 0:
            raise InvalidPriceError(f"price must be positive, got {price}")

        with localcontext() as ctx:
            ctx.prec = 120
            if self._metadata.quote_in_token0:
                squared = Decimal(Q192) * (Decimal(10) ** self._decimal_shift) / value
            else:
                squared = value * Decimal(Q192) / (Decimal(10) ** self._decimal_shift)
            sqrt_price = isqrt(int(squared))

        if sqrt_price <= 0 or sqrt_price > MAX_UINT160:
            raise InvalidPriceError(f"price {price} has no uint160 sqrt price representation")
        return sqrt_price
