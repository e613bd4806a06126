from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, AsyncIterator

import httpx
import structlog
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import make_asgi_app
from pydantic import BaseModel, Field

from tokenrelay.config import Config
from tokenrelay.errors import ForwardError, InvalidRequestError, MissingCredentialError
from tokenrelay.export import from_export, to_csv, to_json
from tokenrelay.ledger import DEFAULT_LIMIT, Ledger
from tokenrelay.metrics import RelayMetrics
from tokenrelay.models import Source, Usage, UsageInput
from tokenrelay.provider.anthropic import AnthropicUsageClient
from tokenrelay.relay import Relay

logger = structlog.get_logger()

VERSION = "1.0.0"

# only browser pages served from this machine may call the API
LOCAL_ORIGINS = r"^https?://(localhost|127\.0\.0\.1)(:\d+)?$"


class ManualRecordRequest(BaseModel):
    """
    ManualRecordRequest is the body of a call logged by hand.
    """

    model: "str" = Field(min_length=1)
    input_tokens: "int" = Field(default=0, ge=0)
    output_tokens: "int" = Field(default=0, ge=0)
    cache_read_tokens: "int" = Field(default=0, ge=0)
    cache_write_tokens: "int" = Field(default=0, ge=0)
    request_id: "str | None" = None


def _attachment(content: "str", media_type: "str", filename: "str") -> "Response":
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


def create_app(
    config: "Config",
    ledger: "Ledger",
    relay: "Relay",
    usage_client: "AnthropicUsageClient",
    metrics: "RelayMetrics",
) -> "FastAPI":
    """
    builds the HTTP surface around already constructed
    collaborators. The app owns nothing but the shutdown of
    the relay and the usage client.
    """

    @asynccontextmanager
    async def lifespan(app: "FastAPI") -> "AsyncIterator[None]":
        yield
        # pending ledger writes finish before the client goes away
        await relay.aclose()
        await usage_client.close()

    app = FastAPI(
        title="tokenrelay",
        description="Track LLM token usage and cost through a local relay",
        version=VERSION,
        lifespan=lifespan,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origin_regex=LOCAL_ORIGINS,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-Id"],
    )
    app.mount("/metrics", make_asgi_app(registry=metrics.registry))

    async def proxy(request: "Request") -> "Response":
        """
        forwards a messages call upstream. Configuration, body and
        transport errors map to 500, 400 and 502; anything the
        provider answers is passed back unchanged.
        """
        body = await request.body()
        try:
            result = await relay.forward(body, request.headers.get("x-request-id"))
        except MissingCredentialError as exc:
            return JSONResponse({"error": str(exc)}, status_code=500)
        except InvalidRequestError as exc:
            return JSONResponse({"error": str(exc)}, status_code=400)
        except ForwardError as exc:
            return JSONResponse({"error": str(exc)}, status_code=502)

        headers = {"x-request-id": result.call.request_id}
        if result.stream is not None:
            headers["cache-control"] = "no-cache"
            return StreamingResponse(
                result.stream,
                status_code=result.status_code,
                media_type=result.media_type or "text/event-stream",
                headers=headers,
            )

        return Response(
            content=result.body,
            status_code=result.status_code,
            media_type=result.media_type,
            headers=headers,
        )

    app.add_api_route("/api/proxy", proxy, methods=["POST"])
    # lets SDK clients use the relay as their base URL
    app.add_api_route("/v1/messages", proxy, methods=["POST"])

    @app.get("/api/logs")
    def list_logs(
        limit: "int" = Query(DEFAULT_LIMIT, ge=1),
        days: "int" = Query(30, ge=0),
    ) -> "dict[str, Any]":
        rows, totals, today = ledger.overview(days=days, limit=limit)
        return {
            "rows": [r.to_dict() for r in rows],
            "summary": totals.to_dict(),
            "today": today.to_dict() if today else None,
        }

    @app.get("/api/summary")
    def daily_summary(days: "int" = Query(7, ge=1)) -> "list[dict[str, Any]]":
        # oldest first, for the chart
        return [a.to_dict() for a in ledger.daily_window(days)]

    @app.post("/api/manual")
    def manual_record(request: "ManualRecordRequest") -> "dict[str, Any]":
        record = ledger.record(
            UsageInput(
                model=request.model,
                usage=Usage(
                    input_tokens=request.input_tokens,
                    output_tokens=request.output_tokens,
                    cache_read_tokens=request.cache_read_tokens,
                    cache_write_tokens=request.cache_write_tokens,
                ),
                source=Source.MANUAL,
                request_id=request.request_id,
            )
        )
        logger.info("manual_record", request_id=record.request_id, model=record.model)
        return {"ok": True, "record": record.to_dict()}

    @app.post("/api/import")
    def import_logs(rows: "list[dict[str, Any]]") -> "dict[str, Any]":
        """
        loads the rows of a JSON export in one transaction. Known
        request ids are skipped, a bad row rejects the whole batch.
        """
        try:
            items = from_export(rows)
            imported = ledger.import_records(items)
        except (TypeError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        logger.info("records_imported", imported=imported, skipped=len(items) - imported)
        return {"ok": True, "imported": imported, "skipped": len(items) - imported}

    @app.get("/api/export")
    def export_logs(
        format: "str" = Query("json", pattern="^(json|csv)$"),
    ) -> "Response":
        records = ledger.snapshot()
        if format == "csv":
            return _attachment(to_csv(records), "text/csv", "tokenrelay-export.csv")
        return _attachment(
            to_json(records), "application/json", "tokenrelay-export.json"
        )

    @app.delete("/api/logs")
    def delete_logs() -> "dict[str, Any]":
        ledger.clear()
        return {"ok": True, "message": "All logs deleted."}

    @app.get("/api/health")
    def health() -> "dict[str, Any]":
        return {
            "status": "ok",
            "version": VERSION,
            "keyLoaded": config.key_loaded,
            "dbPath": ledger.db_path,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/api/usage", response_model=None)
    async def provider_usage(
        start_date: "str | None" = None,
    ) -> "dict[str, Any] | JSONResponse":
        """
        returns the provider's own usage report. Keys without
        admin access get an unavailable report, not an error.
        """
        if not config.key_loaded:
            return JSONResponse({"error": str(MissingCredentialError())}, status_code=500)

        if start_date is None:
            start = datetime.now(timezone.utc) - timedelta(days=30)
            start_date = start.date().isoformat()

        try:
            return await usage_client.fetch_usage(start_date)
        except httpx.HTTPError as exc:
            logger.error("anthropic_usage_error", error=str(exc))
            return JSONResponse({"error": str(exc)}, status_code=502)

    return app
