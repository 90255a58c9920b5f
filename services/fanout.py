"""Fan-out/fan-in orchestration of multi-target history queries."""

from __future__ import annotations

import logging
from concurrent.futures import Executor, Future
from dataclasses import dataclass
from functools import partial
from threading import Lock
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from app.schemas import Representation
from models.records import RetrievalTarget, Tenant
from services.envelopes import (
    canonical_attribute,
    lightweight_attribute,
    render_canonical_envelope,
    render_lightweight_envelope,
    render_lightweight_payload,
    render_multi_envelope,
)
from services.errors import CollectionNotFound, RetrievalFailure
from services.export import ExportFile

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
# A sub-query receives the resolved collection and its grid cell, and returns
# the records (materialized or lazy) together with their record count.
SubQuery = Callable[[Any, RetrievalTarget], Tuple[Iterable[Record], int]]


@dataclass(frozen=True)
class QueryResult:
    """The single emission of a history query."""

    payload: Dict[str, Any]
    total_count: Optional[int] = None
    export: Optional[ExportFile] = None


@dataclass(frozen=True)
class FanOutRequest:
    tenant: Tenant
    entity_type: str
    entity_ids: List[str]
    attr_names: List[str]
    representation: Representation = Representation.canonical
    count: bool = False
    correlator: Optional[str] = None


def render_attribute(attr_name: str, records: List[Record], representation: Representation) -> Record:
    if representation is Representation.lightweight:
        return lightweight_attribute(attr_name, records)
    return canonical_attribute(attr_name, records)


def render_payload(
    entity_type: str,
    attributes_by_entity: List[Tuple[str, List[Record]]],
    representation: Representation,
) -> Dict[str, Any]:
    if representation is Representation.lightweight:
        return render_lightweight_payload(
            [
                render_lightweight_envelope(entity_id, entity_type, attributes)
                for entity_id, attributes in attributes_by_entity
            ]
        )
    return render_multi_envelope(
        [
            render_canonical_envelope(entity_id, entity_type, attributes)
            for entity_id, attributes in attributes_by_entity
        ]
    )


class ResultMerger:
    """Accumulates per-entity attribute payloads and the running record count."""

    def __init__(self, request: FanOutRequest) -> None:
        self.request = request
        self.total_count = 0
        self._attributes: Dict[str, Dict[str, Record]] = {
            entity_id: {} for entity_id in request.entity_ids
        }

    def add(self, target: RetrievalTarget, records: List[Record], count: int) -> None:
        self._attributes[target.entity_id][target.attr_name] = render_attribute(
            target.attr_name, records, self.request.representation
        )
        if self.request.count:
            self.total_count += count

    def add_empty(self, entity_id: str, attr_name: str) -> None:
        self._attributes[entity_id][attr_name] = render_attribute(
            attr_name, [], self.request.representation
        )

    def render(self) -> QueryResult:
        # Request order, so completion order never changes the payload.
        ordered = [
            (
                entity_id,
                [
                    self._attributes[entity_id][attr_name]
                    for attr_name in self.request.attr_names
                    if attr_name in self._attributes[entity_id]
                ],
            )
            for entity_id in self.request.entity_ids
        ]
        payload = render_payload(self.request.entity_type, ordered, self.request.representation)
        return QueryResult(
            payload=payload,
            total_count=self.total_count if self.request.count else None,
        )


class FanOutSession:
    """Shared state of one multi-target request.

    Every mutation happens under ``_lock``; ``_emitted`` is checked and set
    under the same lock so exactly one completion or failure emits.
    """

    def __init__(self, request: FanOutRequest) -> None:
        self.request = request
        self.pending = len(request.entity_ids) * len(request.attr_names)
        self.merger = ResultMerger(request)
        self.future: Future[QueryResult] = Future()
        self.collections: Dict[str, Any] = {}
        self._emitted = False
        self._lock = Lock()

    def record_collection(self, entity_id: str, collection: Any) -> None:
        with self._lock:
            self.collections[entity_id] = collection

    def record_missing(self, entity_id: str) -> None:
        with self._lock:
            self.collections[entity_id] = None
            for attr_name in self.request.attr_names:
                self.merger.add_empty(entity_id, attr_name)
            self.pending -= len(self.request.attr_names)
            result = self._take_result()
        self._emit(result)

    def record_result(self, target: RetrievalTarget, records: List[Record], count: int) -> None:
        with self._lock:
            if records:
                self.merger.add(target, records, count)
            else:
                self.merger.add_empty(target.entity_id, target.attr_name)
            self.pending -= 1
            result = self._take_result()
        self._emit(result)

    def record_failure(self, failure: RetrievalFailure, completed: int = 1) -> None:
        with self._lock:
            self.pending -= completed
            first = not self._emitted
            self._emitted = True
        if first:
            self.future.set_exception(failure)
        else:
            logger.debug(
                "Dropping failure after the response was already emitted",
                extra={
                    "correlator": self.request.correlator,
                    "entity_id": failure.entity_id,
                    "attr_name": failure.attr_name,
                },
            )

    def _take_result(self) -> Optional[QueryResult]:
        if self._emitted or self.pending > 0:
            return None
        self._emitted = True
        return self.merger.render()

    def _emit(self, result: Optional[QueryResult]) -> None:
        if result is None:
            return
        logger.info(
            "Emitting merged response",
            extra={"correlator": self.request.correlator, "total_count": result.total_count},
        )
        self.future.set_result(result)


class FanOutCoordinator:
    """Issues one sub-query per (entity, attribute) pair and merges the completions."""

    def __init__(self, store: Any, executor: Executor) -> None:
        self.store = store
        self.executor = executor

    def run(self, request: FanOutRequest, sub_query: SubQuery) -> Future[QueryResult]:
        session = FanOutSession(request)
        logger.info(
            "Fanning out %s sub-queries",
            session.pending,
            extra={"correlator": request.correlator, "mode": "multi"},
        )
        for entity_id in request.entity_ids:
            try:
                future = self.executor.submit(
                    self.store.resolve_collection,
                    request.tenant.service,
                    request.tenant.service_path,
                    entity_id,
                    request.entity_type,
                )
            except RuntimeError as exc:
                session.record_failure(
                    RetrievalFailure(str(exc), entity_id=entity_id),
                    completed=len(request.attr_names),
                )
                continue
            future.add_done_callback(partial(self._on_resolved, session, entity_id, sub_query))
        return session.future

    def _on_resolved(
        self,
        session: FanOutSession,
        entity_id: str,
        sub_query: SubQuery,
        future: Future[Any],
    ) -> None:
        request = session.request
        try:
            collection = future.result()
        except CollectionNotFound as exc:
            logger.warning(
                "Collection may not exist, answering with no points",
                extra={
                    "correlator": request.correlator,
                    "entity_id": entity_id,
                    "collection": exc.collection,
                },
            )
            session.record_missing(entity_id)
            return
        except Exception as exc:
            logger.error(
                "Error when resolving the collection",
                extra={"correlator": request.correlator, "entity_id": entity_id, "reason": str(exc)},
            )
            session.record_failure(
                RetrievalFailure(f"Collection lookup failed: {exc}", entity_id=entity_id),
                completed=len(request.attr_names),
            )
            return

        session.record_collection(entity_id, collection)
        for attr_name in request.attr_names:
            target = RetrievalTarget(entity_id=entity_id, entity_type=request.entity_type, attr_name=attr_name)
            try:
                sub_future = self.executor.submit(sub_query, collection, target)
            except RuntimeError as exc:
                session.record_failure(RetrievalFailure(str(exc), entity_id=entity_id, attr_name=attr_name))
                continue
            sub_future.add_done_callback(partial(self._on_completed, session, target))

    def _on_completed(
        self,
        session: FanOutSession,
        target: RetrievalTarget,
        future: Future[Tuple[Iterable[Record], int]],
    ) -> None:
        request = session.request
        try:
            records, count = future.result()
            materialized = list(records)
        except Exception as exc:
            logger.error(
                "Error when retrieving data from collection",
                extra={
                    "correlator": request.correlator,
                    "entity_id": target.entity_id,
                    "attr_name": target.attr_name,
                    "collection": getattr(session.collections.get(target.entity_id), "name", None),
                    "reason": str(exc),
                },
            )
            session.record_failure(
                RetrievalFailure(
                    f"Retrieval failed for {target.entity_id}/{target.attr_name}: {exc}",
                    entity_id=target.entity_id,
                    attr_name=target.attr_name,
                )
            )
            return

        if not materialized:
            logger.debug(
                "No data available",
                extra={
                    "correlator": request.correlator,
                    "entity_id": target.entity_id,
                    "attr_name": target.attr_name,
                },
            )
        else:
            logger.debug(
                "Retrieved %s docs",
                len(materialized),
                extra={
                    "correlator": request.correlator,
                    "entity_id": target.entity_id,
                    "attr_name": target.attr_name,
                    "row_count": len(materialized),
                },
            )
        session.record_result(target, materialized, count)
