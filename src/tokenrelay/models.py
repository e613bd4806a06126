from dataclasses import asdict, dataclass
from decimal import Decimal
from enum import Enum


class Source(str, Enum):
    """
    Source tells where a usage record came from.
    """

    RELAY = "relay"
    MANUAL = "manual"
    IMPORTED = "imported"
    SIMULATED = "simulated"


@dataclass(frozen=True, slots=True)
class Usage:
    """
    Usage is the normalized token usage of a single call,
    independent of whether it was read from a buffered body
    or folded from a stream of events.
    """

    input_tokens: "int" = 0
    output_tokens: "int" = 0
    cache_read_tokens: "int" = 0
    cache_write_tokens: "int" = 0

    @property
    def is_empty(self) -> "bool":
        return self.input_tokens == 0 and self.output_tokens == 0


@dataclass(frozen=True, slots=True)
class UsageInput:
    """
    UsageInput is what callers hand to the ledger. Cost and
    creation time are never part of it, the ledger derives them.
    """

    model: "str"
    usage: "Usage" = Usage()
    source: "Source" = Source.RELAY
    endpoint: "str" = "/v1/messages"
    # idempotency key; generated by the ledger when missing
    request_id: "str | None" = None


@dataclass(frozen=True, slots=True)
class UsageRecord:
    """
    UsageRecord represents one accounted call as stored
    in the ledger.
    """

    id: "int"
    request_id: "str"
    model: "str"
    input_tokens: "int"
    output_tokens: "int"
    cache_read_tokens: "int"
    cache_write_tokens: "int"
    cost_usd: "Decimal"
    source: "str"
    endpoint: "str"
    # ISO-8601 UTC timestamp assigned at persistence time
    created_at: "str"

    def to_dict(self) -> "dict[str, object]":
        data = asdict(self)
        data["cost_usd"] = float(self.cost_usd)
        return data


@dataclass(frozen=True, slots=True)
class DailyAggregate:
    """
    DailyAggregate is the running rollup of all usage
    records created on one calendar date (UTC).
    """

    date: "str"
    total_cost_usd: "Decimal"
    total_requests: "int"
    total_input_tokens: "int"
    total_output_tokens: "int"
    updated_at: "str"

    def to_dict(self) -> "dict[str, object]":
        data = asdict(self)
        data["total_cost_usd"] = float(self.total_cost_usd)
        return data


@dataclass(frozen=True, slots=True)
class Totals:
    """
    Totals is the all-time rollup over every stored record.
    """

    total_cost_usd: "Decimal" = Decimal(0)
    total_input_tokens: "int" = 0
    total_output_tokens: "int" = 0
    total_requests: "int" = 0

    def to_dict(self) -> "dict[str, object]":
        data = asdict(self)
        data["total_cost_usd"] = float(self.total_cost_usd)
        return data
