"""Classification and validation of inbound history queries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from app.schemas import HistoryQuery
from services.errors import ACCEPTED_QUERY_KEYS, InvalidQuery


class QueryMode(str, Enum):
    raw = "raw"
    on_demand = "on_demand"
    precomputed = "precomputed"


class AggregatorBackend(str, Enum):
    computed = "computed"
    pipeline = "pipeline"


@dataclass(frozen=True)
class QueryClassification:
    mode: QueryMode
    multi_target: bool
    entity_ids: List[str]
    attr_names: List[str]
    backend: Optional[AggregatorBackend] = None
    export_csv: bool = False


def split_targets(value: str) -> List[str]:
    """Split a comma-separated identifier list, dropping blanks and duplicates."""
    seen: dict[str, None] = {}
    for part in value.split(","):
        candidate = part.strip()
        if candidate:
            seen.setdefault(candidate, None)
    return list(seen) or [value]


class RequestPlanner:
    """Decides how a query is served before any I/O happens."""

    def __init__(self, max_page_size: int) -> None:
        self.max_page_size = max_page_size

    def classify(self, entity_id: str, attr_name: str, query: HistoryQuery) -> QueryClassification:
        entity_ids = split_targets(entity_id)
        attr_names = split_targets(attr_name)
        fans_out = len(entity_ids) > 1 or len(attr_names) > 1

        if self._is_raw(query):
            self._validate_paging(query)
            if fans_out:
                # Exports and aggregation requests are never fanned out.
                self._reject_fan_out(self._single_only_keys(query))
            return QueryClassification(
                mode=QueryMode.raw,
                multi_target=fans_out,
                entity_ids=entity_ids,
                attr_names=attr_names,
                export_csv=query.wants_csv,
            )

        has_limit = query.h_limit is not None
        has_period = query.aggr_period is not None
        if query.aggr_method is not None and has_limit != has_period:
            return QueryClassification(
                mode=QueryMode.on_demand,
                multi_target=fans_out,
                entity_ids=entity_ids,
                attr_names=attr_names,
                backend=AggregatorBackend.pipeline if has_period else AggregatorBackend.computed,
            )

        if query.aggr_method is not None and has_period:
            if fans_out:
                self._reject_fan_out(["aggrMethod", "aggrPeriod", "hLimit"])
            return QueryClassification(
                mode=QueryMode.precomputed,
                multi_target=False,
                entity_ids=entity_ids,
                attr_names=attr_names,
            )

        raise InvalidQuery(
            "A combination of the following query params is required: lastN, hLimit and hOffset, "
            "filetype, or aggrMethod and aggrPeriod, or aggrMethod and hLimit",
            keys=ACCEPTED_QUERY_KEYS,
        )

    @staticmethod
    def _single_only_keys(query: HistoryQuery) -> List[str]:
        keys: List[str] = []
        if query.wants_csv:
            keys.append("filetype")
        if query.aggr_method is not None:
            keys.append("aggrMethod")
        if query.aggr_period is not None:
            keys.append("aggrPeriod")
        return keys

    @staticmethod
    def _reject_fan_out(keys: List[str]) -> None:
        if keys:
            raise InvalidQuery(
                "Comma-separated entity ids or attribute names cannot be combined with "
                + ", ".join(keys),
                keys=keys,
            )

    @staticmethod
    def _is_raw(query: HistoryQuery) -> bool:
        return (
            query.last_n is not None
            or (query.h_limit is not None and query.h_offset is not None)
            or query.wants_csv
        )

    def _validate_paging(self, query: HistoryQuery) -> None:
        offending: List[str] = []
        if query.last_n is not None and query.last_n > self.max_page_size:
            offending.append("lastN")
        if query.h_limit is not None and query.h_limit > self.max_page_size:
            offending.append("hLimit")
        if query.h_limit is not None and query.last_n is not None and query.h_limit > query.last_n:
            offending.extend(key for key in ("lastN", "hLimit") if key not in offending)
        if offending:
            raise InvalidQuery("hLimit <= lastN <= config.maxPageSize", keys=offending)
