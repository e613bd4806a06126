import csv
import io
import json
from typing import Callable

import httpx
import pytest

from tokenrelay.app import create_app
from tokenrelay.config import Config
from tokenrelay.ledger import Ledger
from tokenrelay.metrics import RelayMetrics
from tokenrelay.provider.anthropic import AnthropicUsageClient
from tokenrelay.relay import Relay

Handler = Callable[[httpx.Request], httpx.Response]

SSE_STREAM = (
    b'event: message_start\ndata: {"type": "message_start", "message": '
    b'{"model": "claude-haiku-4-5", "usage": {"input_tokens": 8, "output_tokens": 1}}}\n\n'
    b'event: message_delta\ndata: {"type": "message_delta", "usage": {"output_tokens": 30}}\n\n'
    b'event: message_stop\ndata: {"type": "message_stop"}\n\n'
)


def default_upstream(request: "httpx.Request") -> "httpx.Response":
    payload = json.loads(request.content)
    if payload.get("stream"):
        return httpx.Response(
            200, headers={"content-type": "text/event-stream"}, content=SSE_STREAM
        )
    return httpx.Response(
        200,
        json={
            "model": payload["model"],
            "usage": {"input_tokens": 11, "output_tokens": 22},
        },
    )


class Harness:
    """
    app wired to a mocked upstream, driven in-process.
    """

    def __init__(
        self,
        config: "Config",
        ledger: "Ledger",
        metrics: "RelayMetrics",
        upstream: "Handler" = default_upstream,
    ) -> "None":
        transport = httpx.MockTransport(upstream)
        self.relay = Relay(
            config, ledger, metrics, client=httpx.AsyncClient(transport=transport)
        )
        self.usage_client = AnthropicUsageClient(
            config, client=httpx.AsyncClient(transport=transport)
        )
        self.app = create_app(config, ledger, self.relay, self.usage_client, metrics)
        self.client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self.app),
            base_url="http://testserver",
        )

    async def close(self) -> "None":
        await self.client.aclose()
        await self.relay.aclose()
        await self.usage_client.close()


class TestProxyRoute:
    @pytest.mark.asyncio
    async def test_buffered_call(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        body = {"model": "claude-haiku-4-5", "max_tokens": 8, "messages": []}

        resp = await h.client.post(
            "/api/proxy", json=body, headers={"x-request-id": "abc-123"}
        )

        assert resp.status_code == 200
        assert resp.json()["usage"] == {"input_tokens": 11, "output_tokens": 22}
        assert resp.headers["x-request-id"] == "abc-123"
        assert "sk-ant-test-secret" not in resp.text
        assert ledger.snapshot()[0].request_id == "abc-123"
        await h.close()

    @pytest.mark.asyncio
    async def test_streamed_call(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        body = {"model": "claude-haiku-4-5", "stream": True, "messages": []}

        resp = await h.client.post("/v1/messages", json=body)
        await h.relay.drain()

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert resp.content == SSE_STREAM
        [record] = ledger.snapshot()
        assert (record.input_tokens, record.output_tokens) == (8, 30)
        await h.close()

    @pytest.mark.asyncio
    async def test_transport_failure_is_502(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        def refuse(request: "httpx.Request") -> "httpx.Response":
            raise httpx.ConnectError("connection refused")

        h = Harness(config, ledger, metrics, upstream=refuse)
        resp = await h.client.post("/api/proxy", json={"model": "claude-haiku-4-5"})

        assert resp.status_code == 502
        assert resp.json()["error"].startswith("Proxy error")
        assert ledger.count() == 0
        await h.close()

    @pytest.mark.asyncio
    async def test_missing_key_is_500(
        self, ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(Config(anthropic_api_key=""), ledger, metrics)
        resp = await h.client.post("/api/proxy", json={"model": "claude-haiku-4-5"})

        assert resp.status_code == 500
        assert "ANTHROPIC_API_KEY" in resp.json()["error"]
        await h.close()

    @pytest.mark.asyncio
    async def test_invalid_body_is_400(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        resp = await h.client.post("/api/proxy", content=b"nope")
        assert resp.status_code == 400
        await h.close()


class TestLedgerRoutes:
    @pytest.mark.asyncio
    async def test_manual_entry_shows_up_in_logs_and_summary(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)

        resp = await h.client.post(
            "/api/manual",
            json={"model": "claude-sonnet-4-5", "input_tokens": 1_000_000},
        )
        assert resp.status_code == 200
        assert resp.json()["record"]["source"] == "manual"
        assert resp.json()["record"]["cost_usd"] == 3.0

        logs = (await h.client.get("/api/logs")).json()
        assert len(logs["rows"]) == 1
        assert logs["summary"]["total_requests"] == 1
        assert logs["today"]["total_cost_usd"] == 3.0

        summary = (await h.client.get("/api/summary", params={"days": 7})).json()
        assert [day["date"] for day in summary] == ["2026-03-14"]
        await h.close()

    @pytest.mark.asyncio
    async def test_manual_entry_validation(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        missing_model = await h.client.post("/api/manual", json={"input_tokens": 3})
        negative = await h.client.post(
            "/api/manual", json={"model": "claude-haiku-4-5", "output_tokens": -1}
        )
        assert missing_model.status_code == 422
        assert negative.status_code == 422
        assert ledger.count() == 0
        await h.close()

    @pytest.mark.asyncio
    async def test_export_both_formats(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        for i in range(3):
            await h.client.post(
                "/api/manual", json={"model": "claude-haiku-4-5", "input_tokens": i}
            )

        as_json = await h.client.get("/api/export")
        as_csv = await h.client.get("/api/export", params={"format": "csv"})
        bad = await h.client.get("/api/export", params={"format": "xml"})

        assert len(as_json.json()) == 3
        assert "attachment" in as_json.headers["content-disposition"]
        assert as_csv.headers["content-type"].startswith("text/csv")
        assert len(list(csv.DictReader(io.StringIO(as_csv.text)))) == 3
        assert bad.status_code == 422
        await h.close()

    @pytest.mark.asyncio
    async def test_import_is_idempotent(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        rows = [
            {"request_id": "x-1", "model": "claude-haiku-4-5", "input_tokens": 5},
            {"request_id": "x-2", "model": "claude-haiku-4-5", "output_tokens": 5},
        ]

        first = (await h.client.post("/api/import", json=rows)).json()
        second = (await h.client.post("/api/import", json=rows)).json()
        bad = await h.client.post("/api/import", json=[{"input_tokens": 1}])

        assert (first["imported"], first["skipped"]) == (2, 0)
        assert (second["imported"], second["skipped"]) == (0, 2)
        assert bad.status_code == 400
        assert ledger.count() == 2
        await h.close()

    @pytest.mark.asyncio
    async def test_delete_clears_everything(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        await h.client.post("/api/manual", json={"model": "claude-haiku-4-5"})

        resp = await h.client.delete("/api/logs")
        logs = (await h.client.get("/api/logs")).json()

        assert resp.json()["ok"] is True
        assert logs["rows"] == []
        assert logs["summary"]["total_requests"] == 0
        assert logs["summary"]["total_cost_usd"] == 0
        assert logs["today"] is None
        assert (await h.client.get("/api/summary")).json() == []
        await h.close()


class TestServiceRoutes:
    @pytest.mark.asyncio
    async def test_health_never_echoes_key(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        resp = await h.client.get("/api/health")
        assert resp.json()["keyLoaded"] is True
        assert resp.json()["dbPath"] == ledger.db_path
        assert "sk-ant-test-secret" not in resp.text
        await h.close()

    @pytest.mark.asyncio
    async def test_provider_usage_forbidden_is_reported_unavailable(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        def forbid(request: "httpx.Request") -> "httpx.Response":
            return httpx.Response(403, json={"error": {"type": "permission_error"}})

        h = Harness(config, ledger, metrics, upstream=forbid)
        resp = await h.client.get("/api/usage", params={"start_date": "2026-03-01"})

        assert resp.status_code == 200
        assert resp.json()["available"] is False
        assert resp.json()["status"] == 403
        await h.close()

    @pytest.mark.asyncio
    async def test_metrics_endpoint(
        self, config: "Config", ledger: "Ledger", metrics: "RelayMetrics"
    ) -> "None":
        h = Harness(config, ledger, metrics)
        await h.client.post("/api/proxy", json={"model": "claude-haiku-4-5"})

        resp = await h.client.get("/metrics/")

        assert resp.status_code == 200
        assert "tokenrelay_requests_total" in resp.text
        await h.close()
