"""Unit tests for the in-memory and store-pipeline aggregation backends."""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

import pytest

from datastore.mock_history import MockHistoryCollection
from models.records import AggregationMethod, AggregationPeriod, AggregationPlan, RawPoint
from services.aggregator import ComputedAggregator, PipelineAggregator
from services.errors import InvalidPlan
from services.planner import build_plan


def _point(recv_time: datetime, value, attr_name: str = "temperature") -> RawPoint:
    """Helper to build deterministic raw points."""

    return RawPoint(recv_time=recv_time, attr_name=attr_name, attr_value=value)


def _collection(points) -> MockHistoryCollection:
    collection = MockHistoryCollection(name="sth_test_room1_Room")
    collection.insert_many(points)
    return collection


def _mixed_points() -> list[RawPoint]:
    start = datetime(2024, 1, 30, 22, 10, tzinfo=timezone.utc)
    points = []
    for index in range(40):
        recv_time = start + timedelta(minutes=37 * index)
        value = (index * 7) % 11 - 3.5
        points.append(_point(recv_time, value if index % 5 else str(value)))
    points.append(_point(start + timedelta(hours=3), "offline"))
    points.append(_point(start + timedelta(hours=4), 99.0, attr_name="humidity"))
    # Out of order insertion exercises first-seen timestamps.
    points.append(_point(start - timedelta(days=40), 1.5))
    return points


def test_hourly_average_scenario() -> None:
    points = [
        _point(datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc), 10),
        _point(datetime(2024, 1, 1, 10, 50, tzinfo=timezone.utc), 20),
    ]
    plan = build_plan("avg", "hour", None, "temperature")

    buckets = ComputedAggregator().reduce(plan, points)

    assert len(buckets) == 1
    assert buckets[0].key == "2024-01-01T10"
    assert buckets[0].value == 15
    assert buckets[0].first_timestamp == datetime(2024, 1, 1, 10, 5, tzinfo=timezone.utc)


def test_unbucketed_min_caps_input_before_reduction() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    points = [_point(base + timedelta(minutes=index), value) for index, value in enumerate([5, 3, 9, 1])]
    plan = build_plan("min", "none", 3, "temperature")

    buckets = ComputedAggregator().reduce(plan, points)

    assert [bucket.key for bucket in buckets] == ["temperature"]
    assert buckets[0].value == 3


def test_cap_is_ignored_for_bucketed_plans() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    points = [_point(base + timedelta(days=index), index) for index in range(5)]
    plan = build_plan("max", "day", 2, "temperature")

    buckets = ComputedAggregator().reduce(plan, points)

    assert [bucket.key for bucket in buckets] == [
        "2024-01-01",
        "2024-01-02",
        "2024-01-03",
        "2024-01-04",
        "2024-01-05",
    ]


def test_buckets_are_sorted_by_key() -> None:
    points = [
        _point(datetime(2024, 3, 2, tzinfo=timezone.utc), 1),
        _point(datetime(2024, 1, 9, tzinfo=timezone.utc), 2),
        _point(datetime(2024, 2, 4, tzinfo=timezone.utc), 3),
    ]
    plan = build_plan("max", "month", None, "temperature")

    buckets = ComputedAggregator().reduce(plan, points)

    assert [bucket.key for bucket in buckets] == ["2024-01", "2024-02", "2024-03"]


def test_non_numeric_values_are_skipped() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    points = [_point(base, "12.5"), _point(base, "broken"), _point(base, None), _point(base, 7.5)]
    plan = build_plan("avg", "none", None, "temperature")

    buckets = ComputedAggregator().reduce(plan, points)

    assert buckets[0].value == 10.0


def test_all_non_numeric_values_produce_no_bucket() -> None:
    base = datetime(2024, 1, 1, tzinfo=timezone.utc)
    plan = build_plan("avg", "hour", None, "temperature")

    assert ComputedAggregator().reduce(plan, [_point(base, "n/a")]) == []
    assert PipelineAggregator().aggregate(plan, _collection([_point(base, "n/a")])) == []


@pytest.mark.parametrize("aggregator", [ComputedAggregator(), PipelineAggregator()])
def test_negative_cap_fails_before_touching_the_store(aggregator) -> None:
    plan = AggregationPlan(
        method=AggregationMethod.avg,
        period=AggregationPeriod.none,
        attribute="temperature",
        cap=-1,
    )

    class ExplodingCollection:
        name = "exploding"

        def find(self, *args, **kwargs):  # pragma: no cover - must not be reached
            raise AssertionError("store accessed")

        def aggregate(self, *args, **kwargs):  # pragma: no cover - must not be reached
            raise AssertionError("store accessed")

    with pytest.raises(InvalidPlan):
        aggregator.aggregate(plan, ExplodingCollection())


@pytest.mark.parametrize("method", ["min", "max", "avg"])
@pytest.mark.parametrize(
    ("period", "cap"),
    [("hour", None), ("day", None), ("month", 4), ("none", None), ("none", 7), ("none", 0)],
)
def test_backends_produce_equal_buckets(method: str, period: str, cap) -> None:
    collection = _collection(_mixed_points())
    plan = build_plan(
        method,
        period,
        cap,
        "temperature",
        time_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
        time_to=datetime(2024, 2, 28, tzinfo=timezone.utc),
    )

    computed = ComputedAggregator().aggregate(plan, collection)
    pipelined = PipelineAggregator().aggregate(plan, collection)

    assert [bucket.key for bucket in computed] == [bucket.key for bucket in pipelined]
    assert [bucket.first_timestamp for bucket in computed] == [
        bucket.first_timestamp for bucket in pipelined
    ]
    for left, right in zip(computed, pipelined):
        assert math.isclose(left.value, right.value, rel_tol=1e-9)


def test_time_range_excludes_out_of_range_points() -> None:
    collection = _collection(_mixed_points())
    plan = build_plan(
        "max",
        "month",
        None,
        "temperature",
        time_from=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )

    buckets = PipelineAggregator().aggregate(plan, collection)

    assert "2023-12" not in [bucket.key for bucket in buckets]
