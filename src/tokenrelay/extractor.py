import json
import math
from typing import Any, Iterable

from tokenrelay.models import Usage

# buffered response field -> Usage field
_USAGE_FIELDS: "dict[str, str]" = {
    "input_tokens": "input_tokens",
    "output_tokens": "output_tokens",
    "cache_read_input_tokens": "cache_read_tokens",
    "cache_creation_input_tokens": "cache_write_tokens",
}


def _count(value: "Any") -> "int":
    """
    coerces a usage field to a non-negative int. Anything
    that is not a plain finite number counts as 0.
    """
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    if isinstance(value, float) and not math.isfinite(value):
        return 0
    return max(int(value), 0)


def _usage_from_dict(usage: "Any") -> "Usage":
    if not isinstance(usage, dict):
        return Usage()
    return Usage(
        **{field: _count(usage.get(key)) for key, field in _USAGE_FIELDS.items()}
    )


def extract_buffered(body: "bytes | dict[str, Any]") -> "Usage":
    """
    reads usage from a complete (non-streamed) response. A body
    that is not JSON or has no usage block yields an all-zero
    Usage instead of raising.
    """
    if isinstance(body, (bytes, bytearray)):
        try:
            body = json.loads(body)
        except ValueError:
            return Usage()

    if not isinstance(body, dict):
        return Usage()

    return _usage_from_dict(body.get("usage"))


def parse_sse_line(line: "bytes") -> "dict[str, Any] | None":
    """
    returns the JSON object carried by a `data:` line, or None for
    control lines, comments and anything that does not parse.
    """
    line = line.rstrip(b"\r")
    if not line.startswith(b"data:"):
        return None

    try:
        event = json.loads(line[5:].strip())
    except ValueError:
        return None

    return event if isinstance(event, dict) else None


class StreamUsageTracker:
    """
    StreamUsageTracker folds the server-sent events of one streamed
    response into a Usage. It only observes bytes handed to feed()
    and never alters them.

    Raw chunks do not align with lines, so a trailing partial line
    is buffered until the rest of it arrives. A tracker belongs to a
    single call and is discarded when the stream ends.
    """

    def __init__(self) -> "None":
        self._pending: "bytes" = b""
        self._input_tokens: "int" = 0
        self._output_tokens: "int" = 0
        self._cache_read_tokens: "int" = 0
        self._cache_write_tokens: "int" = 0
        # model reported by the provider in message_start
        self.model: "str | None" = None

    def feed(self, chunk: "bytes") -> "None":
        lines = (self._pending + chunk).split(b"\n")
        self._pending = lines.pop()
        for line in lines:
            event = parse_sse_line(line)
            if event is not None:
                self.apply(event)

    def apply(self, event: "dict[str, Any]") -> "None":
        kind = event.get("type")

        if kind == "message_start":
            message = event.get("message")
            if not isinstance(message, dict):
                return
            if isinstance(message.get("model"), str):
                self.model = message["model"]
            usage = message.get("usage")
            if not isinstance(usage, dict):
                return
            self._input_tokens = _count(usage.get("input_tokens"))
            self._output_tokens = _count(usage.get("output_tokens"))
            self._cache_read_tokens = _count(usage.get("cache_read_input_tokens"))
            self._cache_write_tokens = _count(
                usage.get("cache_creation_input_tokens")
            )

        elif kind == "message_delta":
            usage = event.get("usage")
            if not isinstance(usage, dict):
                return
            # delta counts are cumulative, so they replace the running value
            if "output_tokens" in usage:
                self._output_tokens = _count(usage["output_tokens"])

    def finish(self) -> "Usage | None":
        """
        finalizes the fold. Returns None when nothing worth
        logging was seen.
        """
        if self._pending:
            event = parse_sse_line(self._pending)
            self._pending = b""
            if event is not None:
                self.apply(event)

        usage = Usage(
            input_tokens=self._input_tokens,
            output_tokens=self._output_tokens,
            cache_read_tokens=self._cache_read_tokens,
            cache_write_tokens=self._cache_write_tokens,
        )
        if usage.is_empty:
            return None
        return usage


def extract_streamed(chunks: "Iterable[bytes]") -> "Usage | None":
    tracker = StreamUsageTracker()
    for chunk in chunks:
        tracker.feed(chunk)
    return tracker.finish()
