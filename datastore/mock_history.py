from __future__ import annotations
import json
import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from models.records import (
    AggregationMethod,
    AggregationPlan,
    Bucket,
    RawPoint,
    RetrievalTarget,
    iso_timestamp,
    parse_timestamp,
    to_double,
)
from services.errors import CollectionNotFound
from services.planner import bucket_key
from settings import get_settings

logger = logging.getLogger(__name__)

Document = Dict[str, Any]


@dataclass(frozen=True, slots=True)
class RollupEntry:
    """Precomputed statistics for one resolution slot, maintained by ingestion."""

    attr_name: str
    resolution: str
    origin: datetime
    samples: int
    sum: float
    min: float
    max: float


def _in_range(value: datetime, time_from: Optional[datetime], time_to: Optional[datetime]) -> bool:
    if time_from is not None and value < time_from:
        return False
    if time_to is not None and value > time_to:
        return False
    return True


def _matches(document: Document, condition: Dict[str, Any]) -> bool:
    for field, expected in condition.items():
        if field == "$and":
            if not all(_matches(document, clause) for clause in expected):
                return False
            continue
        actual = document.get(field)
        if isinstance(expected, dict):
            for operator, operand in expected.items():
                if operator == "$gte" and not (actual is not None and actual >= operand):
                    return False
                if operator == "$lte" and not (actual is not None and actual <= operand):
                    return False
                if operator == "$ne" and actual == operand:
                    return False
        elif actual != expected:
            return False
    return True


def _evaluate(document: Document, expression: Any) -> Any:
    if isinstance(expression, str) and expression.startswith("$"):
        return document.get(expression[1:])
    if isinstance(expression, dict):
        if "$substr" in expression:
            source, start, length = expression["$substr"]
            value = _evaluate(document, source)
            text = iso_timestamp(value) if isinstance(value, datetime) else str(value)
            return text[start : start + length]
        if "$toDouble" in expression:
            return to_double(_evaluate(document, expression["$toDouble"]))
    return expression


def _project(document: Document, spec: Dict[str, Any]) -> Document:
    projected: Document = {}
    for field, expression in spec.items():
        if expression == 1:
            projected[field] = document.get(field)
        else:
            projected[field] = _evaluate(document, expression)
    return projected


def _group(documents: Iterable[Document], spec: Dict[str, Any]) -> List[Document]:
    groups: Dict[Any, Dict[str, List[Any]]] = {}
    accumulators = {field: value for field, value in spec.items() if field != "_id"}
    for document in documents:
        key = _evaluate(document, spec["_id"])
        collected = groups.setdefault(key, {field: [] for field in accumulators})
        for field, accumulator in accumulators.items():
            ((_, expression),) = accumulator.items()
            collected[field].append(_evaluate(document, expression))

    results: List[Document] = []
    for key, collected in groups.items():
        grouped: Document = {"_id": key}
        for field, accumulator in accumulators.items():
            ((operator, _),) = accumulator.items()
            values = collected[field]
            if operator == "$first":
                grouped[field] = values[0]
                continue
            numbers = [value for value in values if value is not None]
            if not numbers:
                grouped[field] = None
            elif operator == "$min":
                grouped[field] = min(numbers)
            elif operator == "$max":
                grouped[field] = max(numbers)
            elif operator == "$avg":
                grouped[field] = sum(numbers) / len(numbers)
            else:
                raise ValueError(f"Unsupported accumulator {operator!r}.")
        results.append(grouped)
    return results


class MockHistoryCollection:
    """In-memory stand-in for one entity's raw history collection."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._points: List[RawPoint] = []
        self._lock = Lock()

    def insert(self, point: RawPoint) -> None:
        with self._lock:
            self._points.append(point)

    def insert_many(self, points: Iterable[RawPoint]) -> None:
        with self._lock:
            self._points.extend(points)

    def find(
        self,
        attr_name: str,
        time_from: Optional[datetime] = None,
        time_to: Optional[datetime] = None,
    ) -> List[RawPoint]:
        """Return matching points in natural (insertion) order."""
        with self._lock:
            snapshot = list(self._points)
        return [
            point
            for point in snapshot
            if point.attr_name == attr_name and _in_range(point.recv_time, time_from, time_to)
        ]

    def raw_query(
        self,
        attr_name: str,
        time_from: Optional[datetime] = None,
        time_to: Optional[datetime] = None,
        last_n: Optional[int] = None,
        h_limit: Optional[int] = None,
        h_offset: Optional[int] = None,
    ) -> Tuple[Iterator[Document], int]:
        """Return a lazy stream of point documents and the unpaged match count.

        A limit of zero means no limit.
        """
        matching = sorted(self.find(attr_name, time_from, time_to), key=lambda point: point.recv_time)
        total_count = len(matching)
        if last_n:
            matching = matching[-last_n:]
        else:
            offset = h_offset or 0
            matching = matching[offset : offset + h_limit] if h_limit else matching[offset:]
        return (point.to_dict() for point in matching), total_count

    def aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Document]:
        with self._lock:
            documents: List[Document] = [
                {
                    "recvTime": point.recv_time,
                    "attrName": point.attr_name,
                    "attrType": point.attr_type,
                    "attrValue": point.attr_value,
                }
                for point in self._points
            ]

        for stage in pipeline:
            ((operator, spec),) = stage.items()
            if operator == "$match":
                documents = [document for document in documents if _matches(document, spec)]
            elif operator == "$limit":
                documents = documents[:spec]
            elif operator == "$project":
                documents = [_project(document, spec) for document in documents]
            elif operator == "$group":
                documents = _group(documents, spec)
            elif operator == "$sort":
                for field, direction in reversed(list(spec.items())):
                    documents.sort(key=lambda document: document[field], reverse=direction < 0)
            else:
                raise ValueError(f"Unsupported pipeline stage {operator!r}.")
        return documents


class MockRollupCollection:
    """In-memory stand-in for a precomputed aggregate collection."""

    _REDUCERS: Dict[AggregationMethod, Callable[[RollupEntry], float]] = {
        AggregationMethod.min: lambda entry: entry.min,
        AggregationMethod.max: lambda entry: entry.max,
        AggregationMethod.avg: lambda entry: entry.sum / entry.samples,
    }

    def __init__(self, name: str) -> None:
        self.name = name
        self._entries: List[RollupEntry] = []
        self._lock = Lock()

    def insert(self, entry: RollupEntry) -> None:
        with self._lock:
            self._entries.append(entry)

    def query(self, plan: AggregationPlan, filter_out_empty: bool = True) -> List[Bucket]:
        with self._lock:
            entries = [
                entry
                for entry in self._entries
                if entry.attr_name == plan.attribute
                and entry.resolution == plan.period.value
                and _in_range(entry.origin, plan.time_from, plan.time_to)
            ]
        if filter_out_empty:
            entries = [entry for entry in entries if entry.samples > 0]
        reducer = self._REDUCERS[plan.method]
        buckets = [
            Bucket(
                key=bucket_key(plan, entry.origin),
                first_timestamp=entry.origin,
                value=reducer(entry) if entry.samples else 0.0,
            )
            for entry in entries
        ]
        return sorted(buckets, key=lambda bucket: bucket.key)


class MockHistoryStore:
    """Tenant-aware registry of raw and rollup collections."""

    def __init__(self, persistence_path: Optional[Path] = None) -> None:
        self._collections: Dict[str, MockHistoryCollection] = {}
        self._rollups: Dict[str, MockRollupCollection] = {}
        self.persistence_path = persistence_path
        self._lock = Lock()
        if persistence_path:
            self._load_from_disk()

    @staticmethod
    def collection_name(service: str, service_path: str, entity_id: str, entity_type: str) -> str:
        return f"sth_{service}{service_path}_{entity_id}_{entity_type}"

    def create_collection(
        self, service: str, service_path: str, entity_id: str, entity_type: str
    ) -> MockHistoryCollection:
        name = self.collection_name(service, service_path, entity_id, entity_type)
        with self._lock:
            return self._collections.setdefault(name, MockHistoryCollection(name))

    def create_rollup_collection(
        self, service: str, service_path: str, entity_id: str, entity_type: str
    ) -> MockRollupCollection:
        name = self.collection_name(service, service_path, entity_id, entity_type) + ".aggr"
        with self._lock:
            return self._rollups.setdefault(name, MockRollupCollection(name))

    def resolve_collection(
        self,
        service: str,
        service_path: str,
        entity_id: str,
        entity_type: str,
        attr_name: Optional[str] = None,
        aggregated: bool = False,
    ) -> MockHistoryCollection | MockRollupCollection:
        """Look up an existing collection; never creates one."""
        name = self.collection_name(service, service_path, entity_id, entity_type)
        if aggregated:
            name += ".aggr"
        with self._lock:
            registry = self._rollups if aggregated else self._collections
            collection = registry.get(name)
        if collection is None:
            raise CollectionNotFound(name)
        return collection

    def raw_query(
        self,
        collection: MockHistoryCollection,
        target: RetrievalTarget,
        time_from: Optional[datetime] = None,
        time_to: Optional[datetime] = None,
        last_n: Optional[int] = None,
        h_limit: Optional[int] = None,
        h_offset: Optional[int] = None,
    ) -> Tuple[Iterable[Document], int]:
        return collection.raw_query(
            target.attr_name,
            time_from=time_from,
            time_to=time_to,
            last_n=last_n,
            h_limit=h_limit,
            h_offset=h_offset,
        )

    def aggregated_query(self, collection: MockRollupCollection, plan: AggregationPlan) -> List[Bucket]:
        return collection.query(plan)

    def _load_from_disk(self) -> None:
        if not self.persistence_path or not self.persistence_path.exists():
            return

        try:
            raw = self.persistence_path.read_text() or "{}"
            data = json.loads(raw)
        except (OSError, json.JSONDecodeError):
            logger.warning(
                "Ignoring unreadable history seed file %s",
                self.persistence_path,
                extra={"reason": "unreadable seed"},
            )
            data = {}

        for entry in data.get("collections", []):
            collection = self.create_collection(
                entry["service"], entry["servicePath"], entry["entityId"], entry["entityType"]
            )
            collection.insert_many(
                RawPoint(
                    recv_time=parse_timestamp(point["recvTime"]),
                    attr_name=point["attrName"],
                    attr_value=point["attrValue"],
                    attr_type=point.get("attrType", "Number"),
                )
                for point in entry.get("points", [])
            )
        for entry in data.get("rollups", []):
            rollup = self.create_rollup_collection(
                entry["service"], entry["servicePath"], entry["entityId"], entry["entityType"]
            )
            for item in entry.get("entries", []):
                rollup.insert(
                    RollupEntry(
                        attr_name=item["attrName"],
                        resolution=item["resolution"],
                        origin=parse_timestamp(item["origin"]),
                        samples=int(item["samples"]),
                        sum=float(item["sum"]),
                        min=float(item["min"]),
                        max=float(item["max"]),
                    )
                )


@lru_cache
def build_default_store(path: Optional[str] = None) -> MockHistoryStore:
    settings = get_settings()
    data_path = settings.data_path if path is None else path
    persistence = Path(data_path) if data_path else None
    return MockHistoryStore(persistence_path=persistence)
