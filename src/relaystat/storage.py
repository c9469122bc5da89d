"""SQLite persistence for per-request telemetry."""

import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Tuple, Union

from .models import AgentSummary, TelemetryRecord

logger = logging.getLogger(__name__)

_COLUMNS = "id, ts, agent, in_bytes, est_tokens, out_bytes, upstream_status, duration_ms"


def _where(since_ms: Optional[int], agent: Optional[str]) -> Tuple[str, List[Any]]:
    clauses: List[str] = []
    params: List[Any] = []
    if since_ms is not None:
        clauses.append("ts >= ?")
        params.append(int(since_ms))
    if agent:
        clauses.append("agent = ?")
        params.append(agent)
    if not clauses:
        return "", params
    return " WHERE " + " AND ".join(clauses), params


class TelemetryStore:
    """Append-only telemetry log.

    A single connection is shared between threads; every statement runs under
    ``self._lock`` so concurrent appends get distinct, increasing ids and reads
    never observe a half-written row.
    """

    def __init__(self, path: Union[Path, str]) -> None:
        self.path = str(path)
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        with self._lock:
            if self.path != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS stats (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    ts INTEGER NOT NULL,
                    agent TEXT NOT NULL,
                    in_bytes INTEGER NOT NULL,
                    est_tokens INTEGER NOT NULL,
                    out_bytes INTEGER NOT NULL,
                    upstream_status INTEGER NOT NULL,
                    duration_ms INTEGER NOT NULL
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_stats_ts ON stats(ts)")
            self._conn.commit()

    def append(self, record: TelemetryRecord) -> TelemetryRecord:
        """Insert one row and return the record carrying its new id."""
        with self._lock:
            cur = self._conn.execute(
                """
                INSERT INTO stats (ts, agent, in_bytes, est_tokens, out_bytes, upstream_status, duration_ms)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.timestamp,
                    record.agent.value,
                    record.in_bytes,
                    record.estimated_tokens,
                    record.out_bytes,
                    record.upstream_status,
                    record.duration_ms,
                ),
            )
            self._conn.commit()
            row_id = cur.lastrowid
        return record.model_copy(update={"id": row_id})

    def summarize(
        self, since_ms: Optional[int] = None, agent: Optional[str] = None
    ) -> List[AgentSummary]:
        """Per-agent request count, byte sums and mean duration."""
        where, params = _where(since_ms, agent)
        sql = (
            "SELECT agent, COUNT(*), SUM(in_bytes), SUM(out_bytes), AVG(duration_ms) "
            f"FROM stats{where} GROUP BY agent ORDER BY agent"
        )
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [
            AgentSummary(
                agent=row[0],
                requests=row[1],
                sum_in=row[2] or 0,
                sum_out=row[3] or 0,
                avg_ms=float(row[4] or 0.0),
            )
            for row in rows
        ]

    def list_raw(
        self, since_ms: Optional[int] = None, agent: Optional[str] = None
    ) -> List[TelemetryRecord]:
        """All matching records in ascending id order."""
        where, params = _where(since_ms, agent)
        with self._lock:
            rows = self._conn.execute(
                f"SELECT {_COLUMNS} FROM stats{where} ORDER BY id ASC", params
            ).fetchall()
        return [
            TelemetryRecord(
                id=row[0],
                timestamp=row[1],
                agent=row[2],
                in_bytes=row[3],
                estimated_tokens=row[4],
                out_bytes=row[5],
                upstream_status=row[6],
                duration_ms=row[7],
            )
            for row in rows
        ]

    def count(self) -> int:
        with self._lock:
            (n,) = self._conn.execute("SELECT COUNT(*) FROM stats").fetchone()
        return n

    def close(self) -> None:
        with self._lock:
            self._conn.close()


@dataclass(frozen=True)
class StoreCapability:
    """Result of probing the telemetry backend at startup."""

    available: bool
    store: Optional[TelemetryStore] = None
    reason: Optional[str] = None

    @classmethod
    def disabled(cls, reason: str) -> "StoreCapability":
        return cls(available=False, store=None, reason=reason)


def negotiate_store(path: Optional[Union[Path, str]]) -> StoreCapability:
    """Open the telemetry store, degrading to "persistence disabled" on failure."""
    if not path:
        logger.info("[stats] no database path configured; stats persistence disabled")
        return StoreCapability.disabled("no database path configured")
    try:
        store = TelemetryStore(path)
    except (sqlite3.Error, OSError) as e:
        logger.error(f"[stats] DB init failed: {str(e)}")
        return StoreCapability.disabled(str(e))
    logger.info(f"[stats] DB ready at {path}")
    return StoreCapability(available=True, store=store)
