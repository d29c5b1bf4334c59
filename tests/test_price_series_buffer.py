from __future__ import annotations

from decimal import Decimal

import pytest

from pool_price_monitor.core.models import PointKind, PricePoint
from pool_price_monitor.series.buffer import PriceSeriesBuffer, SeriesBounds

WINDOW_MS = 10 * 60 * 1000
T0 = 1_768_471_200_000  # 2026-01-15T10:00:00Z


class _Clock:
    def __init__(self, now: int) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now


def _obs(time: int, price: str = "2500", key: str | None = None) -> PricePoint:
    return PricePoint.observation(time, Decimal(price), key=key)


def test_bounds_require_exactly_one_policy() -> None:
    with pytest.raises(ValueError):
        SeriesBounds()
    with pytest.raises(ValueError):
        SeriesBounds(window_ms=1000, max_points=10)


def test_price_point_rejects_zero_observation_and_priced_placeholder() -> None:
    with pytest.raises(ValueError):
        PricePoint.observation(T0, Decimal(0))
    with pytest.raises(ValueError):
        PricePoint(time=T0, price=Decimal(1), kind=PointKind.PLACEHOLDER)


def test_append_keeps_time_order_for_out_of_order_and_equal_times() -> None:
    clock = _Clock(T0 + 60_000)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), clock=clock)

    for offset, price in [(30_000, "1"), (10_000, "2"), (30_000, "3"), (20_000, "4"), (10_000, "5")]:
        buffer.append(_obs(T0 + offset, price))

    snapshot = buffer.snapshot()
    times = [point.time for point in snapshot]
    assert times == sorted(times)
    # equal times keep arrival order
    assert [str(point.price) for point in snapshot] == ["2", "5", "4", "1", "3"]


def test_append_drops_duplicate_keys() -> None:
    buffer = PriceSeriesBuffer(SeriesBounds.count(10), clock=_Clock(T0))

    assert buffer.append(_obs(T0, key="0xaa:1")) is True
    assert buffer.append(_obs(T0 + 1, key="0xaa:1")) is False
    assert buffer.append(_obs(T0 + 2, key="0xaa:2")) is True
    assert len(buffer) == 2


def test_window_eviction_drops_every_expired_observation() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), clock=clock)
    for offset in range(0, 5 * 60_000, 30_000):
        buffer.append(_obs(T0 + offset))

    newest = T0 + 4 * 60_000 + 30_000
    removed = buffer.evict(newest + WINDOW_MS + 1)

    assert removed == 10
    assert [point for point in buffer.snapshot() if not point.is_placeholder] == []


def test_window_eviction_keeps_points_inside_window() -> None:
    clock = _Clock(T0 + WINDOW_MS + 60_000)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), clock=clock)

    buffer.append(_obs(T0, "1"))
    buffer.append(_obs(T0 + 2 * 60_000, "2"))

    assert [str(point.price) for point in buffer.snapshot()] == ["2"]


def test_count_bound_evicts_oldest_after_n_plus_one_appends() -> None:
    buffer = PriceSeriesBuffer(SeriesBounds.count(3), clock=_Clock(T0))
    for index in range(4):
        buffer.append(_obs(T0 + index * 1000, str(index + 1)))

    snapshot = buffer.snapshot()
    assert len(snapshot) == 3
    assert [str(point.price) for point in snapshot] == ["2", "3", "4"]


def test_snapshot_is_an_immutable_copy() -> None:
    buffer = PriceSeriesBuffer(SeriesBounds.count(5), clock=_Clock(T0))
    buffer.append(_obs(T0))
    snapshot = buffer.snapshot()

    buffer.append(_obs(T0 + 1))

    assert isinstance(snapshot, tuple)
    assert len(snapshot) == 1
    assert len(buffer.snapshot()) == 2


def test_seed_merges_by_time_without_replacing_live_points() -> None:
    clock = _Clock(T0 + 5 * 60_000)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), clock=clock)
    buffer.append(_obs(T0 + 4 * 60_000, "2600", key="live"))

    added = buffer.seed([_obs(T0 + 60_000, "2550", key="h2"), _obs(T0, "2500", key="h1")])

    assert added == 2
    assert [str(point.price) for point in buffer.snapshot()] == ["2500", "2550", "2600"]


def test_cadence_mode_updates_slot_in_place() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)

    buffer.append(_obs(T0 + 1_000, "2500"))
    buffer.append(_obs(T0 + 29_000, "2510"))

    snapshot = buffer.snapshot()
    assert len(snapshot) == 1
    assert snapshot[0].time == T0
    assert snapshot[0].price == Decimal("2510")


def test_cadence_mode_fills_gaps_with_priceless_placeholders() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0, "2500"))

    clock.now = T0 + 95_000
    added = buffer.fill_gaps()

    snapshot = buffer.snapshot()
    assert added == 3
    assert [point.time for point in snapshot] == [T0, T0 + 30_000, T0 + 60_000, T0 + 90_000]
    assert all(point.price is None for point in snapshot[1:])
    assert all(point.is_placeholder for point in snapshot[1:])


def test_observation_replaces_placeholder_slot() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0, "2500"))
    clock.now = T0 + 65_000
    buffer.fill_gaps()

    buffer.append(_obs(T0 + 61_000, "2520"))

    snapshot = buffer.snapshot()
    assert [point.kind for point in snapshot] == [PointKind.OBSERVATION, PointKind.PLACEHOLDER, PointKind.OBSERVATION]
    assert snapshot[-1].price == Decimal("2520")


def test_late_observation_after_gap_fills_skipped_slots() -> None:
    clock = _Clock(T0 + 120_000)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0, "2500"))
    buffer.append(_obs(T0 + 100_000, "2490"))

    kinds = [point.kind for point in buffer.snapshot()]
    assert kinds == [
        PointKind.OBSERVATION,
        PointKind.PLACEHOLDER,
        PointKind.PLACEHOLDER,
        PointKind.OBSERVATION,
    ]


def test_seed_never_overwrites_live_cadence_slot() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0 + 5_000, "2600"))

    assert buffer.seed([_obs(T0 + 1_000, "2500")]) == 0
    assert buffer.snapshot()[0].price == Decimal("2600")


def test_fill_gaps_is_noop_without_cadence() -> None:
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), clock=_Clock(T0))
    buffer.append(_obs(T0))
    assert buffer.fill_gaps(T0 + 5 * 60_000) == 0


def test_latest_skips_placeholders_by_default() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0, "2500"))
    buffer.fill_gaps(T0 + 30_000)

    latest = buffer.latest()
    assert latest is not None
    assert latest.price == Decimal("2500")
    placeholder = buffer.latest(include_placeholders=True)
    assert placeholder is not None
    assert placeholder.is_placeholder


def test_listeners_receive_snapshots_after_mutation() -> None:
    buffer = PriceSeriesBuffer(SeriesBounds.count(5), clock=_Clock(T0))
    seen: list[int] = []
    remove = buffer.add_listener(lambda snapshot: seen.append(len(snapshot)))

    buffer.append(_obs(T0))
    buffer.append(_obs(T0 + 1))
    remove()
    buffer.append(_obs(T0 + 2))

    assert seen == [1, 2]


def test_cadence_must_be_shorter_than_window() -> None:
    with pytest.raises(ValueError):
        PriceSeriesBuffer(SeriesBounds.window(60_000), cadence_ms=120_000, clock=_Clock(T0))
    with pytest.raises(ValueError):
        PriceSeriesBuffer(SeriesBounds.window(60_000), cadence_ms=60_000, clock=_Clock(T0))
    # a count bound has no window to outgrow
    PriceSeriesBuffer(SeriesBounds.count(5), cadence_ms=120_000, clock=_Clock(T0))


def test_seed_and_live_agree_on_latest_swap_per_slot() -> None:
    swaps = [_obs(T0 + 1_000, "100", key="0xa:0"), _obs(T0 + 2_000, "200", key="0xb:0")]

    seeded = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=_Clock(T0))
    assert seeded.seed(reversed(swaps)) == 1

    live = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=_Clock(T0))
    for swap in swaps:
        live.append(swap)

    assert [str(point.price) for point in seeded.snapshot()] == ["200"]
    assert [str(point.price) for point in live.snapshot()] == ["200"]
    # the swap the slot absorbed still counts as seen
    assert seeded.append(_obs(T0 + 1_000, "100", key="0xa:0")) is False


def test_redelivered_replaced_swap_does_not_roll_slot_back() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)

    buffer.append(_obs(T0 + 1_000, "100", key="0xa:0"))
    buffer.append(_obs(T0 + 2_000, "200", key="0xb:0"))

    assert buffer.append(_obs(T0 + 1_000, "100", key="0xa:0")) is False
    assert [str(point.price) for point in buffer.snapshot()] == ["200"]


def test_slot_keys_are_released_when_the_slot_is_evicted() -> None:
    clock = _Clock(T0)
    buffer = PriceSeriesBuffer(SeriesBounds.window(WINDOW_MS), cadence_ms=30_000, clock=clock)
    buffer.append(_obs(T0 + 1_000, "100", key="0xa:0"))
    buffer.append(_obs(T0 + 2_000, "200", key="0xb:0"))

    clock.now = T0 + WINDOW_MS + 30_000
    assert buffer.evict() == 1

    assert buffer.append(_obs(clock.now, "300", key="0xa:0")) is True
