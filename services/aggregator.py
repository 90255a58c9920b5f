"""Time-bucket aggregation backends for historical readings."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from models.records import AggregationMethod, AggregationPlan, Bucket, RawPoint, to_double
from services.planner import build_pipeline, bucket_key, validate_plan

logger = logging.getLogger(__name__)


@dataclass
class _BucketState:
    """Running statistics for one bucket key."""

    first_timestamp: datetime
    count: int = 0
    total: float = 0.0
    min_value: Optional[float] = None
    max_value: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        if self.min_value is None or value < self.min_value:
            self.min_value = value
        if self.max_value is None or value > self.max_value:
            self.max_value = value

    def result(self, method: AggregationMethod) -> float:
        if method is AggregationMethod.min:
            return self.min_value  # type: ignore[return-value]
        if method is AggregationMethod.max:
            return self.max_value  # type: ignore[return-value]
        return self.total / self.count


class ComputedAggregator:
    """Reduces raw points into buckets in process memory."""

    def aggregate(self, plan: AggregationPlan, collection) -> List[Bucket]:
        validate_plan(plan)
        points = collection.find(plan.attribute, plan.time_from, plan.time_to)
        return self.reduce(plan, points)

    def reduce(self, plan: AggregationPlan, points: Iterable[RawPoint]) -> List[Bucket]:
        """Bucket an already filtered point sequence.

        Points whose value is not numeric are skipped, as the store pipeline
        drops them after ``$toDouble``.
        """
        validate_plan(plan)
        selected = list(points)
        if not plan.bucketed and plan.cap is not None:
            selected = selected[: plan.cap]

        states: Dict[str, _BucketState] = {}
        skipped = 0
        for point in selected:
            value = to_double(point.attr_value)
            if value is None:
                skipped += 1
                continue
            key = bucket_key(plan, point.recv_time)
            state = states.get(key)
            if state is None:
                state = states[key] = _BucketState(first_timestamp=point.recv_time)
            state.add(value)

        if skipped:
            logger.info(
                "Skipped %s non-numeric values while aggregating",
                skipped,
                extra={"attr_name": plan.attribute, "reason": "non-numeric value"},
            )

        return [
            Bucket(key=key, first_timestamp=states[key].first_timestamp, value=states[key].result(plan.method))
            for key in sorted(states)
        ]


class PipelineAggregator:
    """Delegates filtering and grouping to the store's native aggregation."""

    def aggregate(self, plan: AggregationPlan, collection) -> List[Bucket]:
        pipeline = build_pipeline(plan)
        logger.debug(
            "Running %s-stage aggregation pipeline",
            len(pipeline),
            extra={"attr_name": plan.attribute, "collection": getattr(collection, "name", None)},
        )
        documents = collection.aggregate(pipeline)
        return [
            Bucket(key=document["_id"], first_timestamp=document["firstDate"], value=document["attrValue"])
            for document in documents
        ]
