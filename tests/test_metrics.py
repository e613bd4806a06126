from decimal import Decimal

from prometheus_client import CollectorRegistry

from tokenrelay.metrics import RelayMetrics
from tokenrelay.models import UsageRecord


def make_record() -> "UsageRecord":
    return UsageRecord(
        id=1,
        request_id="req-1",
        model="claude-haiku-4-5",
        input_tokens=100,
        output_tokens=50,
        cache_read_tokens=7,
        cache_write_tokens=3,
        cost_usd=Decimal("0.00028"),
        source="relay",
        endpoint="/v1/messages",
        created_at="2026-03-14T12:00:00.000000+00:00",
    )


class TestRelayMetrics:
    def test_metric_families_are_registered(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        RelayMetrics(registry=registry)
        # prometheus_client strips _total suffix from Counter family names
        metric_names = [m.name for m in registry.collect()]
        assert "tokenrelay_requests" in metric_names
        assert "tokenrelay_tokens" in metric_names
        assert "tokenrelay_cost_usd" in metric_names
        assert "tokenrelay_ledger_errors" in metric_names
        assert "tokenrelay_upstream_duration_seconds" in metric_names

    def test_update_usage_increments_counters(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        metrics = RelayMetrics(registry=registry)
        metrics.update_usage(make_record())

        def tokens(direction: "str") -> "float | None":
            return registry.get_sample_value(
                "tokenrelay_tokens_total",
                {"model": "claude-haiku-4-5", "direction": direction},
            )

        assert tokens("input") == 100.0
        assert tokens("output") == 50.0
        assert tokens("cache_read") == 7.0
        assert tokens("cache_write") == 3.0
        assert registry.get_sample_value(
            "tokenrelay_cost_usd_total", {"model": "claude-haiku-4-5"}
        ) == 0.00028

    def test_outcomes_and_errors(
        self,
        registry: "CollectorRegistry",
    ) -> "None":
        metrics = RelayMetrics(registry=registry)
        metrics.inc_outcome("claude-haiku-4-5", "logged")
        metrics.inc_outcome("claude-haiku-4-5", "logged")
        metrics.inc_ledger_error()
        metrics.observe_upstream_duration(True, 0.25)

        assert registry.get_sample_value(
            "tokenrelay_requests_total",
            {"model": "claude-haiku-4-5", "outcome": "logged"},
        ) == 2.0
        assert registry.get_sample_value("tokenrelay_ledger_errors_total") == 1.0
        assert registry.get_sample_value(
            "tokenrelay_upstream_duration_seconds_count", {"stream": "true"}
        ) == 1.0
