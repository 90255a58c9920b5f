from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Optional

import typer

from cli.client import ApiClient
from cli.config import CLIConfig, load_config
from cli.render import render_history


@dataclass
class CLIState:
    config: CLIConfig
    client: ApiClient


app = typer.Typer(
    help="Utilities for querying the short time historic service.",
    context_settings={"help_option_names": ["-h", "--help"]},
)


def _get_state(ctx: typer.Context) -> CLIState:
    state = ctx.obj
    if not isinstance(state, CLIState):
        raise typer.Exit(code=1, message="CLI state is uninitialized.")
    return state


@app.callback()
def main(
    ctx: typer.Context,
    base_url: Optional[str] = typer.Option(
        None,
        "--base-url",
        "-b",
        help="History API base URL (defaults to API_BASE_URL env or http://localhost:8000).",
    ),
    service: Optional[str] = typer.Option(
        None,
        "--service",
        help="Tenant service sent as the Fiware-Service header.",
    ),
    service_path: Optional[str] = typer.Option(
        None,
        "--service-path",
        help="Tenant service path sent as the Fiware-ServicePath header.",
    ),
    timeout: Optional[float] = typer.Option(
        None,
        "--timeout",
        help="Maximum seconds to wait for a response.",
    ),
) -> None:
    """Entry point for the CLI."""
    config = load_config(
        base_url=base_url,
        service=service,
        service_path=service_path,
        timeout=timeout,
    )
    client = ApiClient(config)
    ctx.obj = CLIState(config=config, client=client)
    ctx.call_on_close(client.close)


@app.command("query")
def query_command(
    ctx: typer.Context,
    entity_type: str = typer.Argument(..., help="Type of the entities."),
    entity_id: str = typer.Argument(..., help="Entity identifier, or a comma-separated list."),
    attr_name: str = typer.Argument(..., help="Attribute name, or a comma-separated list."),
    last_n: Optional[int] = typer.Option(None, "--last-n", help="Return the newest N points."),
    h_limit: Optional[int] = typer.Option(None, "--h-limit", help="Page size, or the aggregation cap."),
    h_offset: Optional[int] = typer.Option(None, "--h-offset", help="Page offset."),
    aggr_method: Optional[str] = typer.Option(None, "--aggr-method", help="min, max or avg."),
    aggr_period: Optional[str] = typer.Option(None, "--aggr-period", help="hour, day, month or none."),
    date_from: Optional[str] = typer.Option(None, "--date-from", help="ISO-8601 lower bound."),
    date_to: Optional[str] = typer.Option(None, "--date-to", help="ISO-8601 upper bound."),
    count: bool = typer.Option(False, "--count/--no-count", help="Report the total record count."),
    lightweight: bool = typer.Option(
        False,
        "--lightweight/--canonical",
        help="Request the columnar light-weight representation.",
    ),
    raw_json: bool = typer.Option(False, "--json", help="Print the raw JSON payload."),
) -> None:
    """Fetch raw or aggregated history for one or more entities and attributes."""
    state = _get_state(ctx)
    params = {
        "lastN": last_n,
        "hLimit": h_limit,
        "hOffset": h_offset,
        "aggrMethod": aggr_method,
        "aggrPeriod": aggr_period,
        "dateFrom": date_from,
        "dateTo": date_to,
        "count": "true" if count else None,
        "nongsi": "true" if lightweight else None,
    }
    response = state.client.get_history(entity_type, entity_id, attr_name, params)
    if raw_json:
        typer.echo(json.dumps(response.payload, indent=2, sort_keys=True))
        return
    render_history(response.payload, total_count=response.total_count)
