from __future__ import annotations


class PoolMonitorError(Exception):
    """Base class for recoverable pool monitor failures."""


class InvalidPriceError(PoolMonitorError, ValueError):
    """Raised when a sqrt price cannot produce a positive decimal price."""


class SwapDecodeError(PoolMonitorError, ValueError):
    """Raised when a raw log record cannot be turned into a swap event."""


class NotASwapEventError(SwapDecodeError):
    """The log did not come from the pool or is not a Swap event."""


class MalformedPayloadError(SwapDecodeError):
    """The log claims to be a Swap event but its payload is not well formed."""


class FeedTransportError(PoolMonitorError, ConnectionError):
    """The live feed transport failed or the subscription was rejected."""


class BackfillFetchError(PoolMonitorError):
    """The historical indexer could not be reached or returned an error payload."""
