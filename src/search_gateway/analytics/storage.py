"""
Analytics SQLite storage.
Persists search events and result feedback, and provides aggregation queries.
"""

from __future__ import annotations

import json
import math
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING
import logging

if TYPE_CHECKING:
    from .tracker import SearchAnalyticsEvent, SearchFeedback


logger = logging.getLogger(__name__)


def _percentile(sorted_values: list[float], pct: float) -> float:
    """Nearest-rank percentile of an already sorted list."""
    if not sorted_values:
        return 0.0
    rank = max(1, math.ceil(pct / 100 * len(sorted_values)))
    return sorted_values[rank - 1]


class AnalyticsStorage:
    """
    SQLite storage for search analytics.

    Every method opens its own connection, so calls are safe from worker
    threads.
    """

    def __init__(self, db_path: str = "search_analytics.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize the database schema."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS search_events (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    org_id TEXT NOT NULL,
                    user_id TEXT NOT NULL,
                    query TEXT NOT NULL,
                    mode TEXT NOT NULL,
                    result_count INTEGER DEFAULT 0,
                    cache_hit INTEGER DEFAULT 0,
                    latency_ms REAL NOT NULL,
                    error TEXT,
                    filters TEXT
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS search_feedback (
                    id TEXT PRIMARY KEY,
                    timestamp TEXT NOT NULL,
                    search_id TEXT NOT NULL,
                    result_id TEXT NOT NULL,
                    feedback_type TEXT NOT NULL,
                    rating INTEGER,
                    org_id TEXT,
                    user_id TEXT
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_search_events_org_ts
                ON search_events(org_id, timestamp)
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_search_feedback_search
                ON search_feedback(search_id)
            """)

            conn.commit()

    def insert_event(self, event: "SearchAnalyticsEvent") -> str:
        """Insert one search event and return its id."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO search_events (
                    id, timestamp, org_id, user_id, query, mode,
                    result_count, cache_hit, latency_ms, error, filters
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.id,
                    event.timestamp.isoformat(),
                    event.org_id,
                    event.user_id,
                    event.query,
                    event.mode,
                    event.result_count,
                    1 if event.cache_hit else 0,
                    event.latency_ms,
                    event.error,
                    json.dumps(event.filters, sort_keys=True, default=str),
                ),
            )
            conn.commit()
        return event.id

    def insert_feedback(self, feedback: "SearchFeedback") -> str:
        """Insert one feedback record and return its id."""
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO search_feedback (
                    id, timestamp, search_id, result_id, feedback_type,
                    rating, org_id, user_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    feedback.id,
                    feedback.timestamp.isoformat(),
                    feedback.search_id,
                    feedback.result_id,
                    feedback.feedback_type.value,
                    feedback.rating,
                    feedback.org_id,
                    feedback.user_id,
                ),
            )
            conn.commit()
        return feedback.id

    def get_search_metrics(self, org_id: str, days: int = 7) -> dict:
        """Get search metrics for one organization over the last ``days``."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=days)).isoformat()

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row

            row = conn.execute(
                """
                SELECT
                    COUNT(*) as total_searches,
                    COALESCE(AVG(latency_ms), 0) as avg_latency_ms,
                    COALESCE(AVG(cache_hit), 0) as cache_hit_rate,
                    COALESCE(SUM(CASE WHEN error IS NOT NULL THEN 1 ELSE 0 END), 0) as error_count,
                    COALESCE(AVG(result_count), 0) as avg_result_count
                FROM search_events
                WHERE org_id = ? AND timestamp >= ?
                """,
                (org_id, cutoff),
            ).fetchone()

            # Percentiles are computed in Python; SQLite has no percentile function
            latencies = [
                r["latency_ms"]
                for r in conn.execute(
                    """
                    SELECT latency_ms FROM search_events
                    WHERE org_id = ? AND timestamp >= ?
                    ORDER BY latency_ms
                    """,
                    (org_id, cutoff),
                ).fetchall()
            ]

            top_queries = conn.execute(
                """
                SELECT LOWER(query) as query, COUNT(*) as count
                FROM search_events
                WHERE org_id = ? AND timestamp >= ?
                GROUP BY LOWER(query)
                ORDER BY count DESC, query ASC
                LIMIT 10
                """,
                (org_id, cutoff),
            ).fetchall()

            mode_counts = conn.execute(
                """
                SELECT mode, COUNT(*) as count
                FROM search_events
                WHERE org_id = ? AND timestamp >= ?
                GROUP BY mode
                """,
                (org_id, cutoff),
            ).fetchall()

            feedback_counts = conn.execute(
                """
                SELECT feedback_type, COUNT(*) as count
                FROM search_feedback
                WHERE org_id = ? AND timestamp >= ?
                GROUP BY feedback_type
                """,
                (org_id, cutoff),
            ).fetchall()

        return {
            "total_searches": row["total_searches"],
            "avg_latency_ms": round(row["avg_latency_ms"], 2),
            "p50_latency_ms": round(_percentile(latencies, 50), 2),
            "p95_latency_ms": round(_percentile(latencies, 95), 2),
            "p99_latency_ms": round(_percentile(latencies, 99), 2),
            "cache_hit_rate": round(row["cache_hit_rate"], 4),
            "error_count": row["error_count"],
            "avg_result_count": round(row["avg_result_count"], 2),
            "top_queries": [
                {"query": q["query"], "count": q["count"]}
                for q in top_queries
            ],
            "searches_by_mode": {
                m["mode"]: m["count"] for m in mode_counts
            },
            "feedback": {
                f["feedback_type"]: f["count"] for f in feedback_counts
            },
        }

    def count_events(self, org_id: str | None = None) -> int:
        with sqlite3.connect(self.db_path) as conn:
            if org_id is None:
                row = conn.execute("SELECT COUNT(*) FROM search_events").fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) FROM search_events WHERE org_id = ?",
                    (org_id,),
                ).fetchone()
            return row[0]

    def prune_old_events(self, keep_days: int = 90) -> int:
        """Delete events and feedback older than the specified number of days."""
        cutoff = (datetime.now(timezone.utc) - timedelta(days=keep_days)).isoformat()

        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                "DELETE FROM search_events WHERE timestamp < ?",
                (cutoff,),
            )
            deleted = cursor.rowcount
            conn.execute(
                "DELETE FROM search_feedback WHERE timestamp < ?",
                (cutoff,),
            )
            conn.commit()
            return deleted
