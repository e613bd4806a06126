import asyncio
import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Coroutine

import httpx
import structlog

from tokenrelay.config import Config
from tokenrelay.errors import ForwardError, InvalidRequestError, MissingCredentialError
from tokenrelay.extractor import StreamUsageTracker, extract_buffered
from tokenrelay.ledger import Ledger
from tokenrelay.metrics import RelayMetrics
from tokenrelay.models import Source, Usage, UsageInput
from tokenrelay.pricing import DEFAULT_MODEL

logger = structlog.get_logger()

MESSAGES_PATH = "/v1/messages"


class RelayState(str, Enum):
    RECEIVED = "received"
    FORWARDING = "forwarding"
    RESPONDING_BUFFERED = "responding_buffered"
    RESPONDING_STREAMED = "responding_streamed"
    # terminal states
    LOGGED = "logged"
    LOG_SKIPPED = "log_skipped"
    UPSTREAM_FAILED = "upstream_failed"
    FORWARD_FAILED = "forward_failed"


@dataclass
class RelayCall:
    """
    RelayCall carries the state of one forwarded call.
    """

    request_id: "str"
    model: "str"
    stream: "bool"
    state: "RelayState" = RelayState.RECEIVED


@dataclass
class RelayResponse:
    """
    RelayResponse is what the route layer sends back to the caller.
    Exactly one of body and stream is set.
    """

    call: "RelayCall"
    status_code: "int"
    media_type: "str | None"
    body: "bytes | None" = None
    stream: "AsyncIterator[bytes] | None" = None


def _parse_payload(body: "bytes") -> "dict[str, Any]":
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise InvalidRequestError("request body must be JSON") from exc

    if not isinstance(payload, dict):
        raise InvalidRequestError("request body must be a JSON object")
    return payload


class Relay:
    """
    Relay forwards calls to the provider's messages endpoint and
    records the usage of every successful call in the ledger.

    The caller's body is sent as-is, only the credential headers are
    added. Responses come back unmodified: buffered bodies after the
    ledger write, streamed bodies chunk by chunk while a tracker folds
    a copy of the events. Ledger writes for streams run as background
    tasks so the end of the stream is never held back by logging.
    """

    def __init__(
        self,
        config: "Config",
        ledger: "Ledger",
        metrics: "RelayMetrics",
        client: "httpx.AsyncClient | None" = None,
    ) -> "None":
        self._config = config
        self._ledger = ledger
        self._metrics = metrics
        self._url = config.anthropic_base_url.rstrip("/") + MESSAGES_PATH
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(
            timeout=httpx.Timeout(config.upstream_timeout, connect=10.0),
        )
        # ledger writes scheduled after a stream ended
        self._pending: "set[asyncio.Task[None]]" = set()

    async def drain(self) -> "None":
        """
        waits for all scheduled ledger writes to finish.
        """
        while self._pending:
            await asyncio.gather(*self._pending)

    async def aclose(self) -> "None":
        await self.drain()
        await self._client.aclose()

    def _headers(self) -> "dict[str, str]":
        return {
            "content-type": "application/json",
            "anthropic-version": self._config.anthropic_version,
            "x-api-key": self._config.anthropic_api_key,
        }

    async def forward(
        self,
        body: "bytes",
        request_id: "str | None" = None,
    ) -> "RelayResponse":
        """
        forwards one call upstream.

        Raises MissingCredentialError when no key is configured,
        InvalidRequestError when the body is not a JSON object and
        ForwardError when the upstream cannot be reached.
        """
        if not self._config.key_loaded:
            raise MissingCredentialError()

        payload = _parse_payload(body)
        call = RelayCall(
            request_id=request_id or str(uuid.uuid4()),
            model=str(payload.get("model") or DEFAULT_MODEL),
            stream=payload.get("stream") is True,
        )
        log = logger.bind(request_id=call.request_id, model=call.model)

        call.state = RelayState.FORWARDING
        log.debug("relay_forwarding", stream=call.stream)
        request = self._client.build_request(
            "POST", self._url, content=body, headers=self._headers()
        )
        started = time.monotonic()
        try:
            response = await self._client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise self._forward_failed(call, log, exc) from exc

        self._metrics.observe_upstream_duration(call.stream, time.monotonic() - started)
        media_type = response.headers.get("content-type")

        if not response.is_success:
            content = await self._read(call, response, log)
            call.state = RelayState.UPSTREAM_FAILED
            self._metrics.inc_outcome(call.model, call.state.value)
            log.warning("relay_upstream_rejected", status=response.status_code)
            return RelayResponse(call, response.status_code, media_type, body=content)

        if call.stream:
            call.state = RelayState.RESPONDING_STREAMED
            return RelayResponse(
                call,
                response.status_code,
                media_type,
                stream=self._relay_stream(call, response, log),
            )

        content = await self._read(call, response, log)
        call.state = RelayState.RESPONDING_BUFFERED
        try:
            data = json.loads(content)
        except ValueError:
            data = None

        model = call.model
        if isinstance(data, dict) and isinstance(data.get("model"), str):
            model = data["model"]

        # the body goes back to the caller whatever happens here
        try:
            usage = extract_buffered(data)
        except Exception:
            log.exception("relay_usage_parse_failed")
            self._skip(call, log, "usage_parse_failed")
        else:
            await self._log_usage(call, model, usage, log)
        return RelayResponse(call, response.status_code, media_type, body=content)

    async def _read(
        self,
        call: "RelayCall",
        response: "httpx.Response",
        log: "Any",
    ) -> "bytes":
        try:
            return await response.aread()
        except httpx.HTTPError as exc:
            raise self._forward_failed(call, log, exc) from exc
        finally:
            await response.aclose()

    def _forward_failed(
        self,
        call: "RelayCall",
        log: "Any",
        exc: "Exception",
    ) -> "ForwardError":
        call.state = RelayState.FORWARD_FAILED
        self._metrics.inc_outcome(call.model, call.state.value)
        log.error("relay_forward_failed", error=str(exc), error_type=type(exc).__name__)
        return ForwardError(f"Proxy error: {exc}")

    async def _relay_stream(
        self,
        call: "RelayCall",
        response: "httpx.Response",
        log: "Any",
    ) -> "AsyncIterator[bytes]":
        """
        yields upstream chunks as they arrive. Each chunk reaches the
        caller before the tracker sees it. If the caller goes away the
        generator is closed at a yield, the upstream response is
        closed and nothing is logged.

        A tracker failure only stops usage tracking for this call,
        the caller keeps receiving chunks.
        """
        tracker: "StreamUsageTracker | None" = StreamUsageTracker()
        try:
            async for chunk in response.aiter_bytes():
                yield chunk
                if tracker is None:
                    continue
                try:
                    tracker.feed(chunk)
                except Exception:
                    log.exception("relay_usage_parse_failed")
                    tracker = None
        except httpx.HTTPError as exc:
            # partial delivery: end the caller's stream, keep what was observed
            log.error("relay_stream_error", error=str(exc), error_type=type(exc).__name__)
        except (GeneratorExit, asyncio.CancelledError):
            call.state = RelayState.LOG_SKIPPED
            self._metrics.inc_outcome(call.model, call.state.value)
            log.info("relay_caller_disconnected")
            raise
        finally:
            await response.aclose()

        if tracker is None:
            self._skip(call, log, "usage_parse_failed")
            return

        try:
            usage = tracker.finish()
        except Exception:
            log.exception("relay_usage_parse_failed")
            self._skip(call, log, "usage_parse_failed")
            return

        if usage is None:
            self._skip(call, log, "no_usage")
            return

        self._schedule(self._log_usage(call, tracker.model or call.model, usage, log))

    def _skip(self, call: "RelayCall", log: "Any", reason: "str") -> "None":
        call.state = RelayState.LOG_SKIPPED
        self._metrics.inc_outcome(call.model, call.state.value)
        log.info("relay_log_skipped", reason=reason)

    def _schedule(self, coro: "Coroutine[Any, Any, None]") -> "None":
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _log_usage(
        self,
        call: "RelayCall",
        model: "str",
        usage: "Usage",
        log: "Any",
    ) -> "None":
        """
        writes the call's usage to the ledger. Failures are reported
        to the operational log only.
        """
        data = UsageInput(
            model=model,
            usage=usage,
            source=Source.RELAY,
            endpoint=MESSAGES_PATH,
            request_id=call.request_id,
        )
        try:
            record, created = await asyncio.to_thread(self._ledger.record_new, data)
        except Exception:
            call.state = RelayState.LOG_SKIPPED
            self._metrics.inc_ledger_error()
            self._metrics.inc_outcome(call.model, call.state.value)
            log.exception("ledger_write_failed")
            return

        call.state = RelayState.LOGGED
        self._metrics.inc_outcome(call.model, call.state.value)
        if not created:
            # a retried request id was already counted
            log.info("relay_duplicate_ignored")
            return

        self._metrics.update_usage(record)
        log.info(
            "relay_logged",
            input_tokens=record.input_tokens,
            output_tokens=record.output_tokens,
            cost_usd=f"{record.cost_usd:.6f}",
        )
