from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

import typer


def echo_heading(text: str) -> None:
    typer.secho(text, bold=True)


def echo_key_values(pairs: Iterable[tuple[str, Any]]) -> None:
    for key, value in pairs:
        typer.echo(f"{key}: {value}")


def _entities(payload: Dict[str, Any]) -> List[tuple[str, str, List[Dict[str, Any]]]]:
    if "results" in payload:
        return [
            (item.get("entityId"), item.get("entityType"), item.get("attributes") or [])
            for item in payload["results"]
        ]
    entities = []
    for response in payload.get("contextResponses") or []:
        element = response.get("contextElement") or {}
        entities.append((element.get("id"), element.get("type"), element.get("attributes") or []))
    return entities


def _render_attribute(attribute: Dict[str, Any]) -> None:
    values = attribute.get("values") or []
    typer.echo(f"  {attribute.get('name')} ({len(values)} values)")
    fields = attribute.get("fields")
    for value in values:
        if fields is not None:
            typer.echo("    - " + ", ".join(f"{field}={item}" for field, item in zip(fields, value)))
        else:
            typer.echo("    - " + ", ".join(f"{key}={item}" for key, item in value.items()))


def render_history(payload: Dict[str, Any], total_count: Optional[int] = None) -> None:
    echo_heading("History")
    if total_count is not None:
        echo_key_values([("total_count", total_count)])

    entities = _entities(payload)
    if not entities:
        typer.echo("No entities returned.")
        return

    for entity_id, entity_type, attributes in entities:
        typer.echo()
        echo_heading(f"{entity_id} [{entity_type}]")
        if not attributes:
            typer.echo("  No attributes available.")
        for attribute in attributes:
            _render_attribute(attribute)
