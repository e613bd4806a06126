from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

from tokenrelay.models import UsageRecord


class RelayMetrics:
    """
    applies relay outcomes and logged usage to Prometheus
    counters.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self.registry: "CollectorRegistry" = registry
        self._requests: "Counter" = Counter(
            "tokenrelay_requests_total",
            "Total relayed calls by model and terminal state",
            ["model", "outcome"],
            registry=registry,
        )
        self._tokens: "Counter" = Counter(
            "tokenrelay_tokens_total",
            "Total tokens recorded from relayed calls",
            ["model", "direction"],
            registry=registry,
        )
        self._cost: "Counter" = Counter(
            "tokenrelay_cost_usd_total",
            "Total cost in USD recorded from relayed calls",
            ["model"],
            registry=registry,
        )
        self._ledger_errors: "Counter" = Counter(
            "tokenrelay_ledger_errors_total",
            "Total number of failed ledger writes",
            registry=registry,
        )
        self._upstream_duration: "Histogram" = Histogram(
            "tokenrelay_upstream_duration_seconds",
            "Time until the upstream provider answered with headers",
            ["stream"],
            registry=registry,
        )

    def inc_outcome(self, model: "str", outcome: "str") -> "None":
        self._requests.labels(model=model, outcome=outcome).inc()

    def update_usage(self, record: "UsageRecord") -> "None":
        """
        updates token and cost counters from a stored record.
        """
        model = record.model
        self._tokens.labels(model=model, direction="input").inc(record.input_tokens)
        self._tokens.labels(model=model, direction="output").inc(record.output_tokens)
        self._tokens.labels(model=model, direction="cache_read").inc(
            record.cache_read_tokens
        )
        self._tokens.labels(model=model, direction="cache_write").inc(
            record.cache_write_tokens
        )
        self._cost.labels(model=model).inc(float(record.cost_usd))

    def inc_ledger_error(self) -> "None":
        self._ledger_errors.inc()

    def observe_upstream_duration(
        self, stream: "bool", duration_seconds: "float"
    ) -> "None":
        self._upstream_duration.labels(stream=str(stream).lower()).observe(
            duration_seconds
        )
