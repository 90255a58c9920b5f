"""Domain models shared across services."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class AggregationMethod(str, Enum):
    """Statistics that can be computed over a bucket."""

    min = "min"
    max = "max"
    avg = "avg"


class AggregationPeriod(str, Enum):
    """Bucketing granularity; ``none`` groups every point under the attribute name."""

    hour = "hour"
    day = "day"
    month = "month"
    none = "none"


def iso_timestamp(value: datetime) -> str:
    """Render a timestamp as ISO-8601 UTC with millisecond precision."""

    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_timestamp(value: str) -> datetime:
    candidate = value.strip()
    if not candidate:
        raise ValueError("Timestamp is empty.")

    if candidate.endswith("Z"):
        candidate = candidate[:-1] + "+00:00"

    try:
        parsed = datetime.fromisoformat(candidate)
    except ValueError as exc:
        raise ValueError(f"Invalid timestamp format: {value!r}") from exc

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)

    return parsed.astimezone(timezone.utc)


def to_double(value: Any) -> Optional[float]:
    """Coerce a stored attribute value to float, or ``None`` when it is not numeric."""

    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        result = float(value)
    elif isinstance(value, str):
        try:
            result = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    if math.isnan(result) or math.isinf(result):
        return None
    return result


@dataclass(frozen=True, slots=True)
class RawPoint:
    """A single stored reading of one entity attribute."""

    recv_time: datetime
    attr_name: str
    attr_value: Any
    attr_type: str = "Number"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recvTime": iso_timestamp(self.recv_time),
            "attrType": self.attr_type,
            "attrValue": self.attr_value,
        }


@dataclass(frozen=True, slots=True)
class Bucket:
    """One aggregation group, keyed by truncated timestamp or attribute name."""

    key: str
    first_timestamp: datetime
    value: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "_id": self.key,
            "firstDate": iso_timestamp(self.first_timestamp),
            "attrValue": self.value,
        }


@dataclass(frozen=True, slots=True)
class AggregationPlan:
    method: AggregationMethod
    period: AggregationPeriod
    attribute: str
    cap: Optional[int] = None
    time_from: Optional[datetime] = None
    time_to: Optional[datetime] = None

    @property
    def bucketed(self) -> bool:
        return self.period is not AggregationPeriod.none


@dataclass(frozen=True, slots=True)
class RetrievalTarget:
    """One cell of the fan-out grid."""

    entity_id: str
    entity_type: str
    attr_name: str


@dataclass(frozen=True, slots=True)
class Tenant:
    """Service and service path scoping every collection lookup."""

    service: str
    service_path: str
