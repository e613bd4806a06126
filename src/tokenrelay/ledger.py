import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Callable, Iterable

import structlog

from tokenrelay.models import DailyAggregate, Totals, UsageInput, UsageRecord
from tokenrelay.pricing import compute_cost

logger = structlog.get_logger()

DEFAULT_LIMIT = 500
MAX_LIMIT = 2000

# costs are stored as integer nano-dollars so SQL sums stay exact
_NANO = Decimal(10) ** 9

_SCHEMA = """
CREATE TABLE IF NOT EXISTS requests (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    request_id          TEXT    NOT NULL UNIQUE,
    model               TEXT    NOT NULL,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    cache_read_tokens   INTEGER NOT NULL DEFAULT 0,
    cache_write_tokens  INTEGER NOT NULL DEFAULT 0,
    cost_nano_usd       INTEGER NOT NULL DEFAULT 0,
    source              TEXT    NOT NULL,
    endpoint            TEXT    NOT NULL,
    created_at          TEXT    NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_requests_created_at ON requests (created_at);

CREATE TABLE IF NOT EXISTS daily_summary (
    date                 TEXT    PRIMARY KEY,
    total_cost_nano_usd  INTEGER NOT NULL DEFAULT 0,
    total_requests       INTEGER NOT NULL DEFAULT 0,
    total_input_tokens   INTEGER NOT NULL DEFAULT 0,
    total_output_tokens  INTEGER NOT NULL DEFAULT 0,
    updated_at           TEXT    NOT NULL
);
"""

_INSERT_REQUEST = """
INSERT OR IGNORE INTO requests
    (request_id, model, input_tokens, output_tokens, cache_read_tokens,
     cache_write_tokens, cost_nano_usd, source, endpoint, created_at)
VALUES
    (:request_id, :model, :input_tokens, :output_tokens, :cache_read_tokens,
     :cache_write_tokens, :cost_nano_usd, :source, :endpoint, :created_at)
"""

_UPDATE_DAILY = """
INSERT INTO daily_summary
    (date, total_cost_nano_usd, total_requests, total_input_tokens,
     total_output_tokens, updated_at)
VALUES (:date, :cost, 1, :input, :output, :now)
ON CONFLICT(date) DO UPDATE SET
    total_cost_nano_usd = total_cost_nano_usd + excluded.total_cost_nano_usd,
    total_requests      = total_requests + 1,
    total_input_tokens  = total_input_tokens + excluded.total_input_tokens,
    total_output_tokens = total_output_tokens + excluded.total_output_tokens,
    updated_at          = excluded.updated_at
"""

_REBUILD_DAILY = """
INSERT INTO daily_summary
    (date, total_cost_nano_usd, total_requests, total_input_tokens,
     total_output_tokens, updated_at)
SELECT substr(created_at, 1, 10), SUM(cost_nano_usd), COUNT(*),
       SUM(input_tokens), SUM(output_tokens), ?
FROM requests
GROUP BY substr(created_at, 1, 10)
"""


def _to_nanos(cost: "Decimal") -> "int":
    return int((cost * _NANO).to_integral_value(rounding=ROUND_HALF_UP))


def _from_nanos(nanos: "int | None") -> "Decimal":
    return Decimal(nanos or 0) / _NANO


def _utc_now() -> "datetime":
    return datetime.now(timezone.utc)


def _row_to_record(row: "sqlite3.Row") -> "UsageRecord":
    return UsageRecord(
        id=row["id"],
        request_id=row["request_id"],
        model=row["model"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cache_read_tokens=row["cache_read_tokens"],
        cache_write_tokens=row["cache_write_tokens"],
        cost_usd=_from_nanos(row["cost_nano_usd"]),
        source=row["source"],
        endpoint=row["endpoint"],
        created_at=row["created_at"],
    )


def _row_to_aggregate(row: "sqlite3.Row") -> "DailyAggregate":
    return DailyAggregate(
        date=row["date"],
        total_cost_usd=_from_nanos(row["total_cost_nano_usd"]),
        total_requests=row["total_requests"],
        total_input_tokens=row["total_input_tokens"],
        total_output_tokens=row["total_output_tokens"],
        updated_at=row["updated_at"],
    )


class Ledger:
    """
    Ledger is the durable store of usage records and their
    per-day aggregates, backed by a single SQLite connection.

    Every read and write goes through one lock, so a record insert
    and its aggregate update form one serialized transaction and
    readers always see a consistent snapshot. Methods are blocking;
    async callers run them with asyncio.to_thread.

    The aggregate date is the UTC date of the record's created_at.
    """

    def __init__(
        self,
        db_path: "str | Path" = "usage.db",
        clock: "Callable[[], datetime]" = _utc_now,
    ) -> "None":
        self.db_path = str(db_path)
        self._clock = clock
        self._lock: "threading.Lock" = threading.Lock()
        self._conn: "sqlite3.Connection" = sqlite3.connect(
            self.db_path, check_same_thread=False
        )
        self._conn.row_factory = sqlite3.Row
        with self._lock:
            self._conn.executescript(_SCHEMA)
            self._conn.commit()

    def close(self) -> "None":
        with self._lock:
            self._conn.close()

    def _insert(self, data: "UsageInput", now: "datetime") -> "tuple[bool, str]":
        """
        inserts one record and bumps its day's aggregate. Must run
        inside an open transaction with the lock held. Returns
        whether a row was created, and the request id used.
        """
        usage = data.usage
        for name in (
            "input_tokens",
            "output_tokens",
            "cache_read_tokens",
            "cache_write_tokens",
        ):
            if getattr(usage, name) < 0:
                raise ValueError(f"{name} must be >= 0")

        request_id = data.request_id or str(uuid.uuid4())
        cost = _to_nanos(
            compute_cost(data.model, usage.input_tokens, usage.output_tokens)
        )
        created_at = now.isoformat(timespec="microseconds")

        cursor = self._conn.execute(
            _INSERT_REQUEST,
            {
                "request_id": request_id,
                "model": data.model,
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
                "cache_read_tokens": usage.cache_read_tokens,
                "cache_write_tokens": usage.cache_write_tokens,
                "cost_nano_usd": cost,
                "source": data.source.value,
                "endpoint": data.endpoint,
                "created_at": created_at,
            },
        )
        # duplicate request id: the existing row stays, the aggregate is untouched
        if cursor.rowcount == 0:
            return False, request_id

        self._conn.execute(
            _UPDATE_DAILY,
            {
                "date": created_at[:10],
                "cost": cost,
                "input": usage.input_tokens,
                "output": usage.output_tokens,
                "now": created_at,
            },
        )
        return True, request_id

    def record(self, data: "UsageInput") -> "UsageRecord":
        """
        stores one usage record. Recording a request id that is
        already present is a no-op that returns the stored record.
        """
        record, _ = self.record_new(data)
        return record

    def record_new(self, data: "UsageInput") -> "tuple[UsageRecord, bool]":
        """
        like record(), but also returns whether a new row was created.
        False means the request id was already stored.
        """
        with self._lock:
            # the connection context manager commits, or rolls back on error
            with self._conn:
                created, request_id = self._insert(data, self._clock())
            row = self._conn.execute(
                "SELECT * FROM requests WHERE request_id = ?", (request_id,)
            ).fetchone()

        if not created:
            logger.debug("ledger_duplicate_ignored", request_id=request_id)
        return _row_to_record(row), created

    def import_records(self, items: "Iterable[UsageInput]") -> "int":
        """
        stores many records in one transaction. Returns how many
        were new; already known request ids are skipped.
        """
        created = 0
        with self._lock:
            with self._conn:
                for data in items:
                    inserted, _ = self._insert(data, self._clock())
                    created += inserted
        return created

    def _select_records(self, days: "int", limit: "int") -> "list[UsageRecord]":
        limit = max(1, min(limit, MAX_LIMIT))
        since = (self._clock() - timedelta(days=days)).date().isoformat()
        rows = self._conn.execute(
            "SELECT * FROM requests WHERE created_at >= ? "
            "ORDER BY created_at DESC, id DESC LIMIT ?",
            (since, limit),
        ).fetchall()
        return [_row_to_record(row) for row in rows]

    def _select_daily(self, date: "str") -> "DailyAggregate | None":
        row = self._conn.execute(
            "SELECT * FROM daily_summary WHERE date = ?", (date,)
        ).fetchone()
        return _row_to_aggregate(row) if row else None

    def _select_totals(self) -> "Totals":
        row = self._conn.execute(
            """
            SELECT
                COALESCE(SUM(cost_nano_usd), 0) AS cost,
                COALESCE(SUM(input_tokens), 0)  AS input,
                COALESCE(SUM(output_tokens), 0) AS output,
                COUNT(*)                        AS requests
            FROM requests
            """
        ).fetchone()
        return Totals(
            total_cost_usd=_from_nanos(row["cost"]),
            total_input_tokens=row["input"],
            total_output_tokens=row["output"],
            total_requests=row["requests"],
        )

    def list_records(
        self,
        days: "int" = 30,
        limit: "int" = DEFAULT_LIMIT,
    ) -> "list[UsageRecord]":
        """
        returns records created within the last `days` calendar days,
        newest first, capped at MAX_LIMIT rows.
        """
        with self._lock:
            return self._select_records(days, limit)

    def daily(self, date: "str") -> "DailyAggregate | None":
        with self._lock:
            return self._select_daily(date)

    def today(self) -> "DailyAggregate | None":
        return self.daily(self._clock().date().isoformat())

    def daily_window(self, days: "int" = 7) -> "list[DailyAggregate]":
        """
        returns the most recent `days` aggregates, oldest first.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM daily_summary ORDER BY date DESC LIMIT ?",
                (max(days, 0),),
            ).fetchall()
        return [_row_to_aggregate(row) for row in reversed(rows)]

    def totals(self) -> "Totals":
        with self._lock:
            return self._select_totals()

    def overview(
        self,
        days: "int" = 30,
        limit: "int" = DEFAULT_LIMIT,
    ) -> "tuple[list[UsageRecord], Totals, DailyAggregate | None]":
        """
        returns the recent records, the all-time totals and today's
        aggregate, all read under one lock so they agree with each
        other.
        """
        today = self._clock().date().isoformat()
        with self._lock:
            return (
                self._select_records(days, limit),
                self._select_totals(),
                self._select_daily(today),
            )

    def count(self) -> "int":
        with self._lock:
            return self._conn.execute("SELECT COUNT(*) FROM requests").fetchone()[0]

    def snapshot(self) -> "list[UsageRecord]":
        """
        returns every record, newest first. The lock is only held
        while rows are fetched.
        """
        with self._lock:
            rows = self._conn.execute(
                "SELECT * FROM requests ORDER BY created_at DESC, id DESC"
            ).fetchall()
        return [_row_to_record(row) for row in rows]

    def clear(self) -> "None":
        """
        deletes all records and aggregates together.
        """
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM requests")
                self._conn.execute("DELETE FROM daily_summary")
        logger.info("ledger_cleared")

    def rebuild_daily(self) -> "None":
        """
        recomputes every daily aggregate by replaying the stored
        records.
        """
        now = self._clock().isoformat(timespec="microseconds")
        with self._lock:
            with self._conn:
                self._conn.execute("DELETE FROM daily_summary")
                self._conn.execute(_REBUILD_DAILY, (now,))
        logger.info("ledger_daily_rebuilt")
