"""Response envelope builders for the canonical and light-weight encodings."""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

Envelope = Dict[str, Any]


def canonical_attribute(attr_name: str, values: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {"name": attr_name, "values": list(values)}


def lightweight_attribute(attr_name: str, values: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    """Columnar form: field names taken from the first record, one row per record."""
    if not values:
        return {"name": attr_name, "fields": [], "values": []}
    fields = list(values[0].keys())
    rows = [[record.get(field) for field in fields] for record in values]
    return {"name": attr_name, "fields": fields, "values": rows}


def render_canonical_envelope(
    entity_id: str, entity_type: str, attributes: List[Dict[str, Any]]
) -> Envelope:
    return {
        "contextElement": {
            "attributes": attributes,
            "id": entity_id,
            "isPattern": False,
            "type": entity_type,
        },
        "statusCode": {"code": "200", "reasonPhrase": "OK"},
    }


def render_lightweight_envelope(
    entity_id: str, entity_type: str, attributes: List[Dict[str, Any]]
) -> Envelope:
    return {"entityId": entity_id, "entityType": entity_type, "attributes": attributes}


def render_multi_envelope(context_elements: List[Envelope]) -> Envelope:
    return {"contextResponses": context_elements}


def render_lightweight_payload(results: List[Envelope]) -> Envelope:
    return {"results": results}
