from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
import typer

from cli.config import CLIConfig


@dataclass(frozen=True)
class HistoryResponse:
    payload: Dict[str, Any]
    total_count: Optional[int] = None
    correlator: Optional[str] = None


class ApiClient:
    """Minimal HTTP client for the history service."""

    def __init__(self, config: CLIConfig) -> None:
        self._config = config
        headers: Dict[str, str] = {}
        if config.service:
            headers["Fiware-Service"] = config.service
        if config.service_path:
            headers["Fiware-ServicePath"] = config.service_path
        self._client = httpx.Client(base_url=config.base_url, timeout=config.timeout, headers=headers)

    def close(self) -> None:
        self._client.close()

    def get_history(
        self,
        entity_type: str,
        entity_id: str,
        attr_name: str,
        params: Dict[str, Any],
    ) -> HistoryResponse:
        path = f"/STH/v1/contextEntities/type/{entity_type}/id/{entity_id}/attributes/{attr_name}"
        query = {key: value for key, value in params.items() if value is not None}
        try:
            response = self._client.get(path, params=query)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            self._handle_http_error(exc)
        total = response.headers.get("Fiware-Total-Count")
        return HistoryResponse(
            payload=response.json(),
            total_count=int(total) if total is not None else None,
            correlator=response.headers.get("Fiware-Correlator"),
        )

    @staticmethod
    def _handle_http_error(exc: httpx.HTTPStatusError) -> None:
        detail: str | None = None
        try:
            data = exc.response.json()
            detail = data.get("detail")
        except Exception:  # noqa: BLE001 - best effort parsing
            detail = exc.response.text.strip()
        message = (
            f"Request failed with status {exc.response.status_code}: {detail or 'no detail provided.'}"
        )
        typer.secho(message, fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)
