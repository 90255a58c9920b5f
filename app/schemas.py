"""Pydantic schemas for the HTTP API layer."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models.records import AggregationMethod, AggregationPeriod


class Representation(str, Enum):
    """Output encodings for attribute payloads."""

    canonical = "canonical"
    lightweight = "lightweight"


class HistoryQuery(BaseModel):
    """Query-string parameters accepted by the history endpoint."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    last_n: Optional[int] = Field(default=None, alias="lastN", ge=0)
    h_limit: Optional[int] = Field(default=None, alias="hLimit", ge=0)
    h_offset: Optional[int] = Field(default=None, alias="hOffset", ge=0)
    filetype: Optional[str] = None
    aggr_method: Optional[AggregationMethod] = Field(default=None, alias="aggrMethod")
    aggr_period: Optional[AggregationPeriod] = Field(default=None, alias="aggrPeriod")
    date_from: Optional[datetime] = Field(default=None, alias="dateFrom")
    date_to: Optional[datetime] = Field(default=None, alias="dateTo")
    count: bool = False
    nongsi: bool = Field(default=False, description="Use the light-weight columnar representation.")

    @field_validator("date_from", "date_to")
    @classmethod
    def _assume_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        if value is None:
            return None
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    @property
    def representation(self) -> Representation:
        return Representation.lightweight if self.nongsi else Representation.canonical

    @property
    def wants_csv(self) -> bool:
        return bool(self.filetype) and self.filetype.lower() == "csv"  # type: ignore[union-attr]


class ValidationDetail(BaseModel):
    source: str = "query"
    keys: List[str] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """Error body returned for rejected or failed queries."""

    detail: str
    validation: Optional[ValidationDetail] = None
