"""Aggregation plan construction shared by both aggregation backends."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from models.records import (
    AggregationMethod,
    AggregationPeriod,
    AggregationPlan,
    iso_timestamp,
)
from services.errors import InvalidPlan

# Length of the ISO-8601 prefix kept for each bucketing granularity.
KEY_LENGTHS: Dict[AggregationPeriod, int] = {
    AggregationPeriod.hour: 13,
    AggregationPeriod.day: 10,
    AggregationPeriod.month: 7,
}


def _normalize_period(period: AggregationPeriod | str | None) -> AggregationPeriod:
    if period is None:
        return AggregationPeriod.none
    try:
        return AggregationPeriod(period)
    except ValueError:
        return AggregationPeriod.none


def build_plan(
    method: AggregationMethod | str,
    period: AggregationPeriod | str | None,
    cap: Optional[int],
    attribute: str,
    time_from: Optional[datetime] = None,
    time_to: Optional[datetime] = None,
) -> AggregationPlan:
    """Build an immutable aggregation plan.

    Unknown or missing periods fall back to ``none``. A negative cap is only
    rejected for unbucketed plans since the cap is ignored otherwise.
    """
    try:
        resolved_method = AggregationMethod(method)
    except ValueError as exc:
        raise InvalidPlan(f"Unsupported aggregation method {method!r}.") from exc

    resolved_period = _normalize_period(period)
    plan = AggregationPlan(
        method=resolved_method,
        period=resolved_period,
        attribute=attribute,
        cap=cap,
        time_from=time_from,
        time_to=time_to,
    )
    validate_plan(plan)
    return plan


def validate_plan(plan: AggregationPlan) -> None:
    if not plan.bucketed and plan.cap is not None and plan.cap < 0:
        raise InvalidPlan("The cap must be non-negative when no aggregation period is used.")


def bucket_key(plan: AggregationPlan, recv_time: datetime) -> str:
    if not plan.bucketed:
        return plan.attribute
    return iso_timestamp(recv_time)[: KEY_LENGTHS[plan.period]]


def build_pipeline(plan: AggregationPlan) -> List[Dict[str, Any]]:
    """Render the plan as native aggregation stages for the history store."""
    validate_plan(plan)

    conditions: List[Dict[str, Any]] = [{"attrName": plan.attribute}]
    if plan.time_from is not None:
        conditions.append({"recvTime": {"$gte": plan.time_from}})
    if plan.time_to is not None:
        conditions.append({"recvTime": {"$lte": plan.time_to}})

    group_key: Any
    if plan.bucketed:
        group_key = {"$substr": ["$recvTime", 0, KEY_LENGTHS[plan.period]]}
    else:
        group_key = "$attrName"

    pipeline: List[Dict[str, Any]] = [{"$match": {"$and": conditions}}]
    if not plan.bucketed and plan.cap is not None:
        pipeline.append({"$limit": plan.cap})
    pipeline.extend(
        [
            {
                "$project": {
                    "recvTime": 1,
                    "attrName": 1,
                    "groupKey": group_key,
                    "value": {"$toDouble": "$attrValue"},
                }
            },
            {"$match": {"value": {"$ne": None}}},
            {
                "$group": {
                    "_id": "$groupKey",
                    "firstDate": {"$first": "$recvTime"},
                    "attrValue": {f"${plan.method.value}": "$value"},
                }
            },
            {"$sort": {"_id": 1}},
        ]
    )
    return pipeline
