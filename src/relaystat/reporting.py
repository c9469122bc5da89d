"""Telemetry summaries and CSV export."""

import csv
import io
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from .models import TelemetryRecord
from .storage import TelemetryStore
from .utils import from_iso_ms, to_iso_ms

logger = logging.getLogger(__name__)

CSV_HEADER = [
    "id",
    "ts_iso",
    "agent",
    "in_bytes",
    "est_tokens",
    "out_bytes",
    "upstream_status",
    "duration_ms",
]


def parse_period_minutes(value: Optional[str]) -> float:
    """Lenient parse of ``periodMinutes``; junk, zero and negatives mean all time."""
    if value is None or value == "":
        return 0
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        return 0
    if minutes != minutes or minutes <= 0:
        return 0
    return int(minutes) if minutes.is_integer() else minutes


def parse_agent_filter(value: Optional[str]) -> Optional[str]:
    if not value or not value.strip():
        return None
    return value.strip().lower()


def since_timestamp(period_minutes: float, now_ms: int) -> Optional[int]:
    """Lower timestamp bound for a trailing window, or None for all time."""
    if not period_minutes or period_minutes <= 0:
        return None
    return int(now_ms - period_minutes * 60 * 1000)


def build_summary(
    store: TelemetryStore,
    period_minutes: float,
    agent: Optional[str],
    now_ms: int,
) -> Dict[str, Any]:
    rows = store.summarize(since_timestamp(period_minutes, now_ms), agent)
    return {
        "periodMinutes": period_minutes or None,
        "agent": agent or None,
        "summary": [row.model_dump() for row in rows],
    }


def list_records(
    store: TelemetryStore,
    period_minutes: float,
    agent: Optional[str],
    now_ms: int,
) -> List[TelemetryRecord]:
    return store.list_raw(since_timestamp(period_minutes, now_ms), agent)


def export_csv(records: Iterable[TelemetryRecord]) -> str:
    """Render records as CSV, one row per record in the order given."""
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(CSV_HEADER)
    count = 0
    for r in records:
        count += 1
        writer.writerow(
            [
                r.id,
                to_iso_ms(r.timestamp),
                r.agent.value,
                r.in_bytes,
                r.estimated_tokens,
                r.out_bytes,
                r.upstream_status,
                r.duration_ms,
            ]
        )
    logger.debug(f"exported {count} telemetry rows")
    return buffer.getvalue()


def parse_csv_row(row: List[str]) -> TelemetryRecord:
    """Read one exported data row back into a record."""
    values = dict(zip(CSV_HEADER, row))
    return TelemetryRecord(
        id=int(values["id"]),
        timestamp=from_iso_ms(values["ts_iso"]),
        agent=values["agent"],
        in_bytes=int(values["in_bytes"]),
        estimated_tokens=int(values["est_tokens"]),
        out_bytes=int(values["out_bytes"]),
        upstream_status=int(values["upstream_status"]),
        duration_ms=int(values["duration_ms"]),
    )


def export_filename(
    agent: Optional[str], period_minutes: float, now: Optional[datetime] = None
) -> str:
    """e.g. ``stats_coder_60m_2024-05-01T12-00-00-000Z.csv``"""
    if now is None:
        now = datetime.now(timezone.utc)
    parts = [p for p in (agent, f"{period_minutes}m" if period_minutes else None) if p]
    suffix = "_".join(parts) or "all"
    stamp = now.astimezone(timezone.utc).isoformat(timespec="milliseconds")
    stamp = stamp.replace("+00:00", "Z").replace(":", "-").replace(".", "-")
    return f"stats_{suffix}_{stamp}.csv"
