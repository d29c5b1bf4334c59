from __future__ import annotations

import bisect
import logging
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from pool_price_monitor.core.config import Settings
from pool_price_monitor.core.models import PricePoint
from pool_price_monitor.core.time_utils import MINUTE_MS, floor_to_interval_ms, now_ms

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class SeriesBounds:
    """Either a wall-clock window or a maximum point count, never both."""

    window_ms: int | None = None
    max_points: int | None = None

    def __post_init__(self) -> None:
        if (self.window_ms is None) == (self.max_points is None):
            raise ValueError("SeriesBounds needs exactly one of window_ms or max_points")
        if self.window_ms is not None and self.window_ms <= 0:
            raise ValueError("window_ms must be positive")
        if self.max_points is not None and self.max_points <= 0:
            raise ValueError("max_points must be positive")

    @classmethod
    def window(cls, window_ms: int) -> SeriesBounds:
        return cls(window_ms=window_ms)

    @classmethod
    def count(cls, max_points: int) -> SeriesBounds:
        return cls(max_points=max_points)


class PriceSeriesBuffer:
    """Ordered, deduplicated, bounded store of price points.

    Points stay sorted by ``time``; a point with the same time as existing
    ones lands after them. A point whose ``key`` is already stored is
    dropped.

    Without ``cadence_ms`` every observation is its own point. With
    ``cadence_ms`` observations are floored to their cadence slot and a later
    observation in an occupied slot replaces that slot's point, so the series
    holds at most one point per slot. Empty slots can be filled with
    placeholders through :meth:`fill_gaps`.

    All mutation and reads go through one lock; :meth:`snapshot` returns an
    immutable tuple.
    """

    def __init__(
        self,
        bounds: SeriesBounds,
        *,
        cadence_ms: int | None = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        if cadence_ms is not None and cadence_ms <= 0:
            raise ValueError("cadence_ms must be positive")
        if cadence_ms is not None and bounds.window_ms is not None and cadence_ms >= bounds.window_ms:
            # a slot start would already be outside the window when its first swap lands
            raise ValueError("cadence_ms must be shorter than window_ms")
        self._bounds = bounds
        self._cadence_ms = cadence_ms
        self._clock = clock
        self._points: list[PricePoint] = []
        self._times: list[int] = []
        self._keys: set[str] = set()
        # cadence mode keeps every key a slot has absorbed until the slot is evicted
        self._slot_keys: dict[int, set[str]] = {}
        self._listeners: list[Callable[[tuple[PricePoint, ...]], None]] = []
        self._lock = threading.RLock()

    @classmethod
    def from_settings(cls, settings: Settings, *, clock: Callable[[], int] = now_ms) -> PriceSeriesBuffer:
        if settings.window_minutes is not None:
            bounds = SeriesBounds.window(settings.window_minutes * MINUTE_MS)
        elif settings.max_points is not None:
            bounds = SeriesBounds.count(settings.max_points)
        else:
            raise ValueError("settings carry neither window_minutes nor max_points")
        cadence_ms = settings.cadence_seconds * 1000 if settings.cadence_seconds is not None else None
        return cls(bounds, cadence_ms=cadence_ms, clock=clock)

    @property
    def bounds(self) -> SeriesBounds:
        return self._bounds

    @property
    def cadence_ms(self) -> int | None:
        return self._cadence_ms

    def __len__(self) -> int:
        with self._lock:
            return len(self._points)

    def add_listener(self, callback: Callable[[tuple[PricePoint, ...]], None]) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(callback)

        def remove() -> None:
            with self._lock:
                if callback in self._listeners:
                    self._listeners.remove(callback)

        return remove

    def append(self, point: PricePoint) -> bool:
        """Insert one point and apply the bound. Returns False if it was a duplicate."""
        with self._lock:
            changed = self._insert(point)
            if changed:
                self._evict_locked(self._clock())
            snapshot = tuple(self._points) if changed else None
        if snapshot is not None:
            self._notify(snapshot)
        return changed

    def seed(self, points: Iterable[PricePoint]) -> int:
        """Merge historical points by time; existing points are never replaced wholesale.

        In cadence mode the batch is first reduced to its latest point per
        slot, the same point a live replay of those swaps would leave. Slots
        that already held a real point before the call keep it.
        """
        ordered = sorted(points, key=lambda item: item.time)
        with self._lock:
            if self._cadence_ms is None:
                added = sum(1 for point in ordered if self._insert(point, overwrite_slot=False))
            else:
                added = sum(
                    1
                    for point, absorbed in self._coalesce_slots(ordered, self._cadence_ms)
                    if self._insert(point, overwrite_slot=False, absorbed_keys=absorbed)
                )
            if added:
                self._evict_locked(self._clock())
            snapshot = tuple(self._points) if added else None
        if snapshot is not None:
            self._notify(snapshot)
        return added

    def evict(self, now: int | None = None) -> int:
        with self._lock:
            removed = self._evict_locked(self._clock() if now is None else now)
            snapshot = tuple(self._points) if removed else None
        if snapshot is not None:
            self._notify(snapshot)
        return removed

    def fill_gaps(self, now: int | None = None) -> int:
        """Insert placeholders for empty cadence slots up to ``now``'s slot.

        Placeholders carry no price. Slots before the first point are never
        filled: there is nothing to show a gap against yet.
        """
        if self._cadence_ms is None:
            return 0
        with self._lock:
            now_value = self._clock() if now is None else now
            added = self._fill_locked(floor_to_interval_ms(now_value, self._cadence_ms) + self._cadence_ms)
            if added:
                self._evict_locked(now_value)
            snapshot = tuple(self._points) if added else None
        if snapshot is not None:
            self._notify(snapshot)
        return added

    def snapshot(self) -> tuple[PricePoint, ...]:
        with self._lock:
            return tuple(self._points)

    def latest(self, *, include_placeholders: bool = False) -> PricePoint | None:
        with self._lock:
            for point in reversed(self._points):
                if include_placeholders or not point.is_placeholder:
                    return point
        return None

    def clear(self) -> None:
        with self._lock:
            self._points.clear()
            self._times.clear()
            self._keys.clear()
            self._slot_keys.clear()
        self._notify(())

    def _coalesce_slots(
        self,
        ordered: list[PricePoint],
        cadence_ms: int,
    ) -> list[tuple[PricePoint, frozenset[str]]]:
        """Latest point per slot of a time-ordered batch, with every key the slot absorbed."""
        by_slot: dict[int, tuple[PricePoint, set[str]]] = {}
        for point in ordered:
            if point.key is not None and point.key in self._keys:
                continue
            slot_time = floor_to_interval_ms(point.time, cadence_ms)
            absorbed = by_slot[slot_time][1] if slot_time in by_slot else set()
            if point.key is not None:
                absorbed.add(point.key)
            by_slot[slot_time] = (point, absorbed)
        return [(point, frozenset(absorbed)) for point, absorbed in by_slot.values()]

    def _insert(
        self,
        point: PricePoint,
        *,
        overwrite_slot: bool = True,
        absorbed_keys: frozenset[str] = frozenset(),
    ) -> bool:
        if point.key is not None and point.key in self._keys:
            return False

        cadence_ms = self._cadence_ms
        if cadence_ms is None:
            index = bisect.bisect_right(self._times, point.time)
            self._points.insert(index, point)
            self._times.insert(index, point.time)
            if point.key is not None:
                self._keys.add(point.key)
            return True

        slot_time = floor_to_interval_ms(point.time, cadence_ms)
        point = PricePoint(time=slot_time, price=point.price, kind=point.kind, key=point.key)
        if overwrite_slot:
            self._fill_locked(slot_time)
        index = bisect.bisect_left(self._times, slot_time)
        if index < len(self._times) and self._times[index] == slot_time:
            existing = self._points[index]
            # a real observation always wins over a placeholder; between two
            # observations the live path keeps the latest, backfill keeps what is there
            if not existing.is_placeholder and not overwrite_slot:
                return False
            if point.is_placeholder and not existing.is_placeholder:
                return False
            self._points[index] = point
        else:
            self._points.insert(index, point)
            self._times.insert(index, slot_time)

        # replaced swaps stay known so a redelivery cannot roll the slot back
        slot_keys = self._slot_keys.setdefault(slot_time, set())
        slot_keys.update(absorbed_keys)
        if point.key is not None:
            slot_keys.add(point.key)
        self._keys.update(slot_keys)
        return True

    def _fill_locked(self, stop_slot: int) -> int:
        """Append placeholders after the last point for every slot before ``stop_slot``."""
        cadence_ms = self._cadence_ms
        if cadence_ms is None or not self._points:
            return 0
        slot = self._points[-1].time + cadence_ms
        added = 0
        while slot < stop_slot:
            self._points.append(PricePoint.placeholder(slot))
            self._times.append(slot)
            slot += cadence_ms
            added += 1
        return added

    def _evict_locked(self, now: int) -> int:
        window_ms = self._bounds.window_ms
        max_points = self._bounds.max_points
        if window_ms is not None:
            drop = bisect.bisect_left(self._times, now - window_ms)
        elif max_points is not None:
            drop = max(0, len(self._points) - max_points)
        else:
            drop = 0

        if drop <= 0:
            return 0
        for point in self._points[:drop]:
            if self._cadence_ms is not None:
                self._keys.difference_update(self._slot_keys.pop(point.time, set()))
            elif point.key is not None:
                self._keys.discard(point.key)
        del self._points[:drop]
        del self._times[:drop]
        return drop

    def _notify(self, snapshot: tuple[PricePoint, ...]) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for callback in listeners:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("Series listener failed")
