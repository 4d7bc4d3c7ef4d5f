"""SQLite result sink for acknowledged runs.

One row per ``(timeframe, boundary_ts, source)``; re-inserting the same
identity replaces the stored payload.  Live rows older than the per-timeframe
retention window are pruned on every insert.  Paper rows are only removed by
:meth:`RunHistory.delete_paper_runs` (called on a paper loop reset).
"""
from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional

import clock
from core_models import RunEnvelope, RunSource, Timeframe, parse_timeframe

logger = logging.getLogger(__name__)

_DAY_MS = 24 * 60 * 60 * 1000

DEFAULT_RETENTION_DAYS: Dict[Timeframe, int] = {
    Timeframe.M15: 7,
    Timeframe.H4: 30,
    Timeframe.D1: 90,
    Timeframe.D7: 365,
}


class RunHistory:
    TABLE_SQL = (
        "CREATE TABLE IF NOT EXISTS model_runs ("
        "id INTEGER PRIMARY KEY AUTOINCREMENT,"
        "timeframe TEXT NOT NULL,"
        "boundary_ts INTEGER NOT NULL,"
        "source TEXT NOT NULL,"
        "formula TEXT,"
        "args TEXT,"
        "output TEXT,"
        "oracle_id TEXT,"
        "created_at INTEGER NOT NULL,"
        "UNIQUE (timeframe, boundary_ts, source)"
        ")"
    )

    def __init__(
        self,
        path: str | Path,
        *,
        retention_days: Mapping[Timeframe | str, int] | None = None,
        time_fn: Callable[[], int] = clock.now_ms,
    ) -> None:
        self.path = Path(path)
        self.retention_days: Dict[Timeframe, int] = dict(DEFAULT_RETENTION_DAYS)
        for tf, days in (retention_days or {}).items():
            self.retention_days[parse_timeframe(tf)] = int(days)
        self._time_fn = time_fn
        self._lock = threading.Lock()
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as con:
            con.execute(self.TABLE_SQL)

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        con = sqlite3.connect(self.path)
        con.row_factory = sqlite3.Row
        try:
            with con:
                yield con
        finally:
            con.close()

    # ------------------------------------------------------------------
    def insert_run(self, envelope: RunEnvelope, oracle_id: Any = None) -> int:
        """Upsert ``envelope`` and prune expired live rows; returns the row id."""
        now = int(self._time_fn())
        tf = envelope.timeframe
        with self._lock, self._connect() as con:
            con.execute(
                "INSERT INTO model_runs"
                " (timeframe, boundary_ts, source, formula, args, output, oracle_id, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?, ?)"
                " ON CONFLICT (timeframe, boundary_ts, source) DO UPDATE SET"
                " formula = excluded.formula, args = excluded.args,"
                " output = excluded.output, oracle_id = excluded.oracle_id,"
                " created_at = excluded.created_at",
                (
                    tf.value,
                    int(envelope.boundary),
                    envelope.source.value,
                    envelope.formula,
                    json.dumps(envelope.args, separators=(",", ":")),
                    json.dumps(dict(envelope.output), separators=(",", ":")),
                    None if oracle_id is None else str(oracle_id),
                    now,
                ),
            )
            row = con.execute(
                "SELECT id FROM model_runs WHERE timeframe = ? AND boundary_ts = ? AND source = ?",
                envelope.key,
            ).fetchone()
            cutoff = now - self.retention_days.get(tf, 365) * _DAY_MS
            pruned = con.execute(
                "DELETE FROM model_runs WHERE timeframe = ? AND source = ? AND boundary_ts < ?",
                (tf.value, RunSource.LIVE.value, cutoff),
            ).rowcount
        if pruned:
            logger.info("HISTORY_PRUNED %s", {"timeframe": tf.value, "rows": pruned})
        return int(row["id"])

    def delete_paper_runs(self) -> int:
        with self._lock, self._connect() as con:
            removed = con.execute(
                "DELETE FROM model_runs WHERE source = ?", (RunSource.PAPER.value,)
            ).rowcount
        logger.info("delete_paper_runs: removed %d paper runs", removed)
        return removed

    def last_run_ts(self, tf: Timeframe | str, source: RunSource | str = RunSource.LIVE) -> Optional[int]:
        with self._connect() as con:
            row = con.execute(
                "SELECT MAX(boundary_ts) AS ts FROM model_runs WHERE timeframe = ? AND source = ?",
                (parse_timeframe(tf).value, RunSource(source).value),
            ).fetchone()
        return None if row is None or row["ts"] is None else int(row["ts"])

    def get_runs(
        self,
        timeframe: Timeframe | str | None = None,
        *,
        limit: int = 50,
        before: int | None = None,
        source: RunSource | str | None = None,
    ) -> Dict[str, Any]:
        """Newest-first page of runs; ``before`` is an exclusive row id cursor."""
        limit = max(1, int(limit))
        conditions: List[str] = []
        params: List[Any] = []
        if timeframe is not None:
            conditions.append("timeframe = ?")
            params.append(parse_timeframe(timeframe).value)
        if source is not None:
            conditions.append("source = ?")
            params.append(RunSource(source).value)
        if before is not None:
            conditions.append("id < ?")
            params.append(int(before))
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        params.append(limit + 1)
        with self._connect() as con:
            rows = con.execute(
                f"SELECT * FROM model_runs {where} ORDER BY id DESC LIMIT ?", params
            ).fetchall()
        has_more = len(rows) > limit
        return {
            "runs": [self._row_to_dict(r) for r in rows[:limit]],
            "has_more": has_more,
        }

    def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as con:
            row = con.execute("SELECT * FROM model_runs WHERE id = ?", (int(run_id),)).fetchone()
        return None if row is None else self._row_to_dict(row)

    @staticmethod
    def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "timeframe": row["timeframe"],
            "boundary_ts": row["boundary_ts"],
            "source": row["source"],
            "formula": row["formula"],
            "args": json.loads(row["args"] or "{}"),
            "output": json.loads(row["output"] or "{}"),
            "oracle_id": row["oracle_id"],
            "created_at": row["created_at"],
        }


__all__ = ["RunHistory", "DEFAULT_RETENTION_DAYS"]
