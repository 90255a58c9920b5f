"""Exception types raised by the query services."""

from __future__ import annotations

from typing import Iterable, Sequence

ACCEPTED_QUERY_KEYS: Sequence[str] = (
    "lastN",
    "hLimit",
    "hOffset",
    "filetype",
    "aggrMethod",
    "aggrPeriod",
    "count",
)


class InvalidQuery(ValueError):
    """Rejected parameter combination, detected before any I/O."""

    def __init__(self, message: str, keys: Iterable[str] = ACCEPTED_QUERY_KEYS) -> None:
        super().__init__(message)
        self.message = message
        self.keys = list(keys)


class InvalidPlan(ValueError):
    """Aggregation plan with an unusable cap/period combination."""


class CollectionNotFound(KeyError):
    """No collection stores data for the requested entity."""

    def __init__(self, collection: str) -> None:
        super().__init__(f"Collection {collection!r} not found.")
        self.collection = collection


class RetrievalFailure(RuntimeError):
    """A backend call failed while serving a sub-query."""

    def __init__(self, message: str, entity_id: str | None = None, attr_name: str | None = None) -> None:
        super().__init__(message)
        self.entity_id = entity_id
        self.attr_name = attr_name
