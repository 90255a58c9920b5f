"""CSV export of raw history points."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Sequence

EXPORT_FIELDS: Sequence[str] = ("attrName", "recvTime", "attrType", "attrValue")


@dataclass(frozen=True)
class ExportFile:
    filename: str
    content: str


def export_filename(entity_id: str, entity_type: str, attr_name: str) -> str:
    return f"{entity_id}-{entity_type}-{attr_name}.csv"


def render_csv(attr_name: str, records: Iterable[Dict[str, Any]]) -> str:
    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(EXPORT_FIELDS), extrasaction="ignore")
    writer.writeheader()
    for record in records:
        writer.writerow({"attrName": attr_name, **record})
    return buffer.getvalue()
