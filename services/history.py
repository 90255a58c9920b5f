"""Query orchestration for historical raw and aggregated data."""

from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from functools import lru_cache
from typing import Any, Dict, Iterable, List, Optional, Tuple

from app.schemas import HistoryQuery, Representation
from datastore.mock_history import MockHistoryStore, build_default_store
from models.records import AggregationPlan, RetrievalTarget, Tenant
from services.aggregator import ComputedAggregator, PipelineAggregator
from services.errors import CollectionNotFound, InvalidPlan, RetrievalFailure
from services.export import ExportFile, export_filename, render_csv
from services.fanout import (
    FanOutCoordinator,
    FanOutRequest,
    QueryResult,
    Record,
    SubQuery,
    render_attribute,
    render_payload,
)
from services.planner import build_plan
from services.request_planner import (
    AggregatorBackend,
    QueryClassification,
    QueryMode,
    RequestPlanner,
)
from settings import get_settings

logger = logging.getLogger(__name__)


class HistoryService:
    """Classifies queries and dispatches them to single or fan-out execution."""

    def __init__(
        self,
        store: MockHistoryStore,
        planner: RequestPlanner,
        computed: ComputedAggregator,
        pipeline: PipelineAggregator,
        workers: int = 4,
    ) -> None:
        self.store = store
        self.planner = planner
        self.aggregators = {
            AggregatorBackend.computed: computed,
            AggregatorBackend.pipeline: pipeline,
        }
        self.executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="sth-query")
        self.coordinator = FanOutCoordinator(store, self.executor)

    def submit(
        self,
        tenant: Tenant,
        entity_type: str,
        entity_id: str,
        attr_name: str,
        query: HistoryQuery,
        correlator: Optional[str] = None,
    ) -> Future[QueryResult]:
        """Validate the query and start serving it.

        ``InvalidQuery`` and ``InvalidPlan`` are raised here, before any I/O.
        Backend problems surface through the returned future.
        """
        classification = self.planner.classify(entity_id, attr_name, query)
        plans = self._build_plans(classification, query)
        logger.info(
            "Serving history query",
            extra={
                "correlator": correlator,
                "mode": classification.mode.value,
                "backend": classification.backend.value if classification.backend else None,
                "entity_id": entity_id,
                "attr_name": attr_name,
            },
        )

        if classification.multi_target:
            request = FanOutRequest(
                tenant=tenant,
                entity_type=entity_type,
                entity_ids=classification.entity_ids,
                attr_names=classification.attr_names,
                representation=query.representation,
                count=query.count,
                correlator=correlator,
            )
            return self.coordinator.run(request, self._build_sub_query(classification, query, plans))

        target = RetrievalTarget(
            entity_id=classification.entity_ids[0],
            entity_type=entity_type,
            attr_name=classification.attr_names[0],
        )
        return self.executor.submit(
            self._run_single, tenant, target, classification, query, plans, correlator
        )

    def query(
        self,
        tenant: Tenant,
        entity_type: str,
        entity_id: str,
        attr_name: str,
        query: HistoryQuery,
        correlator: Optional[str] = None,
    ) -> QueryResult:
        """Blocking variant of :meth:`submit`."""
        return self.submit(tenant, entity_type, entity_id, attr_name, query, correlator).result()

    def shutdown(self) -> None:
        """Clean up executor resources during application shutdown."""
        self.executor.shutdown(wait=False, cancel_futures=True)

    def _build_plans(
        self, classification: QueryClassification, query: HistoryQuery
    ) -> Dict[str, AggregationPlan]:
        if classification.mode is QueryMode.raw:
            return {}
        # Precomputed rollups are already bucketed, so the cap is not part of their plan.
        cap = query.h_limit if classification.mode is QueryMode.on_demand else None
        return {
            attr_name: build_plan(
                query.aggr_method,  # type: ignore[arg-type]
                query.aggr_period,
                cap,
                attr_name,
                query.date_from,
                query.date_to,
            )
            for attr_name in classification.attr_names
        }

    def _build_sub_query(
        self,
        classification: QueryClassification,
        query: HistoryQuery,
        plans: Dict[str, AggregationPlan],
    ) -> SubQuery:
        if classification.mode is QueryMode.raw:

            def raw_sub_query(collection: Any, target: RetrievalTarget) -> Tuple[Iterable[Record], int]:
                return self.store.raw_query(
                    collection,
                    target,
                    time_from=query.date_from,
                    time_to=query.date_to,
                    last_n=query.last_n,
                    h_limit=query.h_limit,
                    h_offset=query.h_offset,
                )

            return raw_sub_query

        aggregator = self.aggregators[classification.backend]  # type: ignore[index]

        def aggregated_sub_query(collection: Any, target: RetrievalTarget) -> Tuple[Iterable[Record], int]:
            buckets = aggregator.aggregate(plans[target.attr_name], collection)
            return [bucket.to_dict() for bucket in buckets], len(buckets)

        return aggregated_sub_query

    def _run_single(
        self,
        tenant: Tenant,
        target: RetrievalTarget,
        classification: QueryClassification,
        query: HistoryQuery,
        plans: Dict[str, AggregationPlan],
        correlator: Optional[str],
    ) -> QueryResult:
        aggregated = classification.mode is QueryMode.precomputed
        try:
            collection = self.store.resolve_collection(
                tenant.service,
                tenant.service_path,
                target.entity_id,
                target.entity_type,
                target.attr_name,
                aggregated=aggregated,
            )
        except CollectionNotFound as exc:
            logger.warning(
                "Collection may not exist, answering with no points",
                extra={"correlator": correlator, "collection": exc.collection},
            )
            return self._single_result(target, classification, query, [], 0)

        try:
            if classification.mode is QueryMode.raw:
                records, total_count = self.store.raw_query(
                    collection,
                    target,
                    time_from=query.date_from,
                    time_to=query.date_to,
                    last_n=query.last_n,
                    h_limit=query.h_limit,
                    h_offset=query.h_offset,
                )
                materialized = list(records)
            else:
                plan = plans[target.attr_name]
                if aggregated:
                    buckets = self.store.aggregated_query(collection, plan)
                else:
                    buckets = self.aggregators[classification.backend].aggregate(plan, collection)  # type: ignore[index]
                materialized = [bucket.to_dict() for bucket in buckets]
                total_count = len(materialized)
        except (InvalidPlan, RetrievalFailure):
            raise
        except Exception as exc:
            logger.error(
                "Error when getting data from collection",
                extra={"correlator": correlator, "collection": collection.name, "reason": str(exc)},
            )
            raise RetrievalFailure(
                f"Retrieval failed for {target.entity_id}/{target.attr_name}: {exc}",
                entity_id=target.entity_id,
                attr_name=target.attr_name,
            ) from exc

        logger.debug(
            "Responding with %s docs",
            len(materialized),
            extra={"correlator": correlator, "collection": collection.name, "row_count": len(materialized)},
        )
        return self._single_result(target, classification, query, materialized, total_count)

    @staticmethod
    def _single_result(
        target: RetrievalTarget,
        classification: QueryClassification,
        query: HistoryQuery,
        records: List[Record],
        total_count: int,
    ) -> QueryResult:
        count = total_count if query.count else None
        if classification.export_csv:
            export = ExportFile(
                filename=export_filename(target.entity_id, target.entity_type, target.attr_name),
                content=render_csv(target.attr_name, records),
            )
            return QueryResult(payload={}, total_count=count, export=export)

        representation: Representation = query.representation
        attribute = render_attribute(target.attr_name, records, representation)
        payload = render_payload(target.entity_type, [(target.entity_id, [attribute])], representation)
        return QueryResult(payload=payload, total_count=count)


@lru_cache
def build_default_history_service(
    workers: Optional[int] = None,
) -> HistoryService:
    """Factory that wires the history service with the default mock store."""
    settings = get_settings()
    return HistoryService(
        store=build_default_store(),
        planner=RequestPlanner(max_page_size=settings.max_page_size),
        computed=ComputedAggregator(),
        pipeline=PipelineAggregator(),
        workers=workers or settings.query_workers,
    )
