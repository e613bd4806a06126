import csv
import io
import json
from typing import Any, Sequence

from tokenrelay.models import Source, Usage, UsageInput, UsageRecord

CSV_COLUMNS: "list[str]" = [
    "id",
    "request_id",
    "model",
    "input_tokens",
    "output_tokens",
    "cache_read_tokens",
    "cache_write_tokens",
    "cost_usd",
    "source",
    "endpoint",
    "created_at",
]


def to_json(records: "Sequence[UsageRecord]") -> "str":
    return json.dumps([r.to_dict() for r in records], indent=2)


def to_csv(records: "Sequence[UsageRecord]") -> "str":
    """
    renders records as CSV with a header row. Costs keep their
    exact decimal representation.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_COLUMNS)
    for r in records:
        writer.writerow(
            [
                r.id,
                r.request_id,
                r.model,
                r.input_tokens,
                r.output_tokens,
                r.cache_read_tokens,
                r.cache_write_tokens,
                format(r.cost_usd, "f"),
                r.source,
                r.endpoint,
                r.created_at,
            ]
        )
    return buffer.getvalue()


def from_export(rows: "Sequence[dict[str, Any]]") -> "list[UsageInput]":
    """
    turns rows of a JSON export back into ledger inputs. Costs and
    timestamps in the rows are ignored, the ledger derives them again.
    """
    items: "list[UsageInput]" = []
    for row in rows:
        model = row.get("model")
        if not isinstance(model, str) or not model:
            raise ValueError("every imported row needs a model")
        items.append(
            UsageInput(
                model=model,
                usage=Usage(
                    input_tokens=int(row.get("input_tokens") or 0),
                    output_tokens=int(row.get("output_tokens") or 0),
                    cache_read_tokens=int(row.get("cache_read_tokens") or 0),
                    cache_write_tokens=int(row.get("cache_write_tokens") or 0),
                ),
                source=Source.IMPORTED,
                endpoint=str(row.get("endpoint") or "/v1/messages"),
                request_id=str(row["request_id"]) if row.get("request_id") else None,
            )
        )
    return items
