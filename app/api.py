"""HTTP route definitions for the service."""

from __future__ import annotations

import asyncio
from typing import Dict, Optional
from urllib.parse import quote
from uuid import uuid4

from fastapi import APIRouter, Depends, Header, Query, status
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from app.schemas import ErrorResponse, HistoryQuery, ValidationDetail
from models.records import Tenant
from services.errors import InvalidPlan, InvalidQuery, RetrievalFailure
from services.history import HistoryService, build_default_history_service
from settings import get_settings

CORRELATOR_HEADER = "Fiware-Correlator"
TOTAL_COUNT_HEADER = "Fiware-Total-Count"

router = APIRouter()


def get_history_service() -> HistoryService:
    return build_default_history_service()


def get_tenant(
    fiware_service: Optional[str] = Header(None, alias="Fiware-Service"),
    fiware_service_path: Optional[str] = Header(None, alias="Fiware-ServicePath"),
) -> Tenant:
    settings = get_settings()
    return Tenant(
        service=fiware_service or settings.default_service,
        service_path=fiware_service_path or settings.default_service_path,
    )


def get_history_params(
    last_n: Optional[str] = Query(None, alias="lastN"),
    h_limit: Optional[str] = Query(None, alias="hLimit"),
    h_offset: Optional[str] = Query(None, alias="hOffset"),
    filetype: Optional[str] = Query(None),
    aggr_method: Optional[str] = Query(None, alias="aggrMethod"),
    aggr_period: Optional[str] = Query(None, alias="aggrPeriod"),
    date_from: Optional[str] = Query(None, alias="dateFrom"),
    date_to: Optional[str] = Query(None, alias="dateTo"),
    count: Optional[str] = Query(None),
    nongsi: Optional[str] = Query(None),
) -> Dict[str, str]:
    # Parsed and validated by HistoryQuery.
    params = {
        "lastN": last_n,
        "hLimit": h_limit,
        "hOffset": h_offset,
        "filetype": filetype,
        "aggrMethod": aggr_method,
        "aggrPeriod": aggr_period,
        "dateFrom": date_from,
        "dateTo": date_to,
        "count": count,
        "nongsi": nongsi,
    }
    return {key: value for key, value in params.items() if value is not None}


def parse_history_query(params: Dict[str, str]) -> HistoryQuery:
    try:
        return HistoryQuery.model_validate(params)
    except ValidationError as exc:
        keys = []
        for error in exc.errors():
            key = str(error["loc"][0]) if error["loc"] else None
            if key and key not in keys:
                keys.append(key)
        raise InvalidQuery(f"Invalid value for query params: {', '.join(keys)}", keys=keys) from exc


@router.get(
    "/STH/v1/contextEntities/type/{entity_type}/id/{entity_id}/attributes/{attr_name}",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}},
    summary="Fetch raw or aggregated history for one or more entities and attributes.",
)
async def get_history(
    entity_type: str,
    entity_id: str,
    attr_name: str,
    params: Dict[str, str] = Depends(get_history_params),
    tenant: Tenant = Depends(get_tenant),
    correlator: Optional[str] = Header(None, alias=CORRELATOR_HEADER),
    service: HistoryService = Depends(get_history_service),
) -> Response:
    correlator = correlator or str(uuid4())
    headers = {CORRELATOR_HEADER: correlator}
    try:
        query = parse_history_query(params)
        future = service.submit(tenant, entity_type, entity_id, attr_name, query, correlator=correlator)
        result = await asyncio.wrap_future(future)
    except InvalidQuery as exc:
        body = ErrorResponse(detail=exc.message, validation=ValidationDetail(keys=exc.keys))
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content=body.model_dump(),
            headers=headers,
        )
    except (InvalidPlan, RetrievalFailure) as exc:
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse(detail=str(exc)).model_dump(exclude_none=True),
            headers=headers,
        )

    if result.total_count is not None:
        headers[TOTAL_COUNT_HEADER] = str(result.total_count)

    if result.export is not None:
        headers["Content-Disposition"] = f"attachment; filename*=utf-8''{quote(result.export.filename)}"
        return Response(content=result.export.content, media_type="text/csv", headers=headers)

    return JSONResponse(content=result.payload, headers=headers)


@router.get(
    "/health",
    summary="Health check endpoint.",
    status_code=status.HTTP_200_OK,
)
async def healthcheck() -> dict[str, str]:
    return {"status": "ok"}


@router.get(
    "/",
    summary="Root endpoint mirrors health information.",
    status_code=status.HTTP_200_OK,
)
async def root() -> dict[str, str]:
    return {"status": "ok", "detail": "See /health for service status."}
