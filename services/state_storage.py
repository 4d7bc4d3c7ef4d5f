from __future__ import annotations

import json
import logging
import re
import shutil
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Protocol

from core_models import RunSource, Timeframe, parse_timeframe
from services import monitoring
from services.utils_app import atomic_write

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# State schema


def _clean_section(raw: Any) -> Dict[Timeframe, int]:
    out: Dict[Timeframe, int] = {}
    if not isinstance(raw, Mapping):
        return out
    for tf_raw, ts in raw.items():
        try:
            tf = parse_timeframe(tf_raw)
        except ValueError:
            logger.warning("Dropping unknown timeframe %r from state", tf_raw)
            continue
        if ts is None:
            continue
        try:
            out[tf] = int(ts)
        except (TypeError, ValueError):
            logger.warning("Dropping invalid boundary %r for %s", ts, tf.value)
    return out


@dataclass
class LastRunState:
    """Last acknowledged boundary per source and timeframe."""

    live: Dict[Timeframe, int] = field(default_factory=dict)
    paper: Dict[Timeframe, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LastRunState":
        if not isinstance(data, Mapping):
            logger.warning("Corrupt state data, using defaults")
            return cls()
        return cls(
            live=_clean_section(data.get("live")),
            paper=_clean_section(data.get("paper")),
        )

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {
            "live": {tf.value: ts for tf, ts in self.live.items()},
            "paper": {tf.value: ts for tf, ts in self.paper.items()},
        }

    def section(self, source: RunSource | str) -> Dict[Timeframe, int]:
        return self.paper if RunSource(source) is RunSource.PAPER else self.live

    def get(self, source: RunSource | str, tf: Timeframe | str) -> Optional[int]:
        return self.section(source).get(parse_timeframe(tf))

    def advance(self, source: RunSource | str, tf: Timeframe | str, boundary: int) -> bool:
        """Record ``boundary`` unless an equal or later one is already stored."""
        sect = self.section(source)
        t = parse_timeframe(tf)
        current = sect.get(t)
        if current is not None and current >= int(boundary):
            return False
        sect[t] = int(boundary)
        return True

    def clear(self, source: RunSource | str) -> None:
        self.section(source).clear()

    def copy(self) -> "LastRunState":
        return LastRunState(live=dict(self.live), paper=dict(self.paper))


# ---------------------------------------------------------------------------
# Backend abstraction


class StateBackend(Protocol):
    """Backend API for persisting :class:`LastRunState`."""

    def load(self, path: Path) -> LastRunState: ...

    def save(self, path: Path, state: LastRunState) -> None: ...


class JsonBackend:
    def load(self, path: Path) -> LastRunState:
        with path.open("r", encoding="utf-8") as fh:
            data = json.load(fh)
        return LastRunState.from_dict(data)

    def save(self, path: Path, state: LastRunState) -> None:
        bak = path.with_suffix(path.suffix + ".bak")
        if path.exists():
            try:
                shutil.copy2(path, bak)
            except OSError:
                logger.warning("Unable to rotate backup for %s", path, exc_info=True)
        atomic_write(path, json.dumps(state.to_dict(), separators=(",", ":")))


class SQLiteBackend:
    TABLE_SQL = (
        "CREATE TABLE IF NOT EXISTS last_run ("
        "source TEXT NOT NULL,"
        "timeframe TEXT NOT NULL,"
        "boundary_ts INTEGER NOT NULL,"
        "PRIMARY KEY (source, timeframe)"
        ")"
    )

    def load(self, path: Path) -> LastRunState:
        if not path.exists():
            raise FileNotFoundError(path)
        con = sqlite3.connect(path)
        try:
            with con:
                con.execute(self.TABLE_SQL)
                rows = con.execute(
                    "SELECT source, timeframe, boundary_ts FROM last_run"
                ).fetchall()
        finally:
            con.close()
        data: Dict[str, Dict[str, int]] = {"live": {}, "paper": {}}
        for source, tf, ts in rows:
            data.setdefault(source, {})[tf] = ts
        return LastRunState.from_dict(data)

    def save(self, path: Path, state: LastRunState) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        bak = path.with_suffix(path.suffix + ".bak")
        if path.exists():
            try:
                shutil.copy2(path, bak)
            except OSError:
                logger.warning("Unable to rotate backup for %s", path, exc_info=True)
        con = sqlite3.connect(path)
        try:
            con.execute("PRAGMA journal_mode=WAL;")
            cur = con.cursor()
            cur.execute("BEGIN IMMEDIATE;")
            cur.execute(self.TABLE_SQL)
            cur.execute("DELETE FROM last_run")
            rows = [
                (source, tf, ts)
                for source, sect in state.to_dict().items()
                for tf, ts in sect.items()
            ]
            cur.executemany(
                "INSERT INTO last_run (source, timeframe, boundary_ts) VALUES (?, ?, ?)",
                rows,
            )
            con.commit()
        finally:
            con.close()


# ---------------------------------------------------------------------------
# File locking and backups


@contextmanager
def _file_lock(lock_path: Path):
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "w") as lock_file:
        import fcntl

        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            try:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
            except OSError:
                pass


def _rotate_backups(p: Path, keep: int) -> None:
    bak = p.with_suffix(p.suffix + ".bak")
    pattern = re.compile(re.escape(p.name) + r"\.bak(\d+)$")
    if keep <= 0:
        for old in list(p.parent.glob(p.name + ".bak*")):
            try:
                old.unlink()
            except OSError:
                pass
        return
    for old in p.parent.glob(p.name + ".bak*"):
        m = pattern.match(old.name)
        if m and int(m.group(1)) > keep:
            try:
                old.unlink()
            except OSError:
                pass
    for i in range(keep, 0, -1):
        src = p.with_suffix(p.suffix + f".bak{i}")
        if not src.exists():
            continue
        if i == keep:
            try:
                src.unlink()
            except OSError:
                pass
        else:
            try:
                src.rename(p.with_suffix(p.suffix + f".bak{i + 1}"))
            except OSError:
                pass
    if bak.exists():
        try:
            bak.rename(p.with_suffix(p.suffix + ".bak1"))
        except OSError:
            pass


def _get_backend(backend: str | StateBackend) -> StateBackend:
    if isinstance(backend, str):
        if backend == "json":
            return JsonBackend()
        if backend == "sqlite":
            return SQLiteBackend()
        raise ValueError(f"Unknown backend: {backend}")
    return backend


# ---------------------------------------------------------------------------
# Store


class LastRunStore:
    """Durable last-run state with an in-memory copy.

    The in-memory state is authoritative for the process lifetime: a failed
    write is logged and the next successful write carries the full state.
    """

    def __init__(
        self,
        path: str | Path,
        backend: str | StateBackend = "json",
        lock_path: str | Path | None = None,
        backup_keep: int = 0,
    ) -> None:
        self.path = Path(path)
        self._backend = _get_backend(backend)
        self._lock_path = (
            Path(lock_path) if lock_path else self.path.with_suffix(self.path.suffix + ".lock")
        )
        self.backup_keep = int(backup_keep)
        self._state = LastRunState()
        self._lock = threading.RLock()

    def load(self) -> LastRunState:
        """Read state from disk, falling back to backups, then to empty."""
        state: Optional[LastRunState] = None
        with _file_lock(self._lock_path):
            if not self.path.exists():
                state = LastRunState()
            else:
                try:
                    state = self._backend.load(self.path)
                except Exception:
                    logger.warning("Failed to load state from %s", self.path, exc_info=True)
                    for i in range(1, self.backup_keep + 1):
                        bak = self.path.with_suffix(self.path.suffix + f".bak{i}")
                        try:
                            state = self._backend.load(bak)
                            logger.warning("Recovered state from backup %s", bak)
                            break
                        except Exception:
                            continue
        if state is None:
            state = LastRunState()
        with self._lock:
            self._state = state.copy()
        return state.copy()

    def snapshot(self) -> LastRunState:
        with self._lock:
            return self._state.copy()

    def last_runs(self, source: RunSource | str) -> Dict[Timeframe, int]:
        with self._lock:
            return dict(self._state.section(source))

    def get(self, source: RunSource | str, tf: Timeframe | str) -> Optional[int]:
        with self._lock:
            return self._state.get(source, tf)

    def commit(self, source: RunSource | str, tf: Timeframe | str, boundary: int) -> bool:
        """Advance the stored boundary and persist; returns ``False`` when stale.

        Blocking (file lock plus fsync); call it from a worker thread in async code.
        """
        with self._lock:
            if not self._state.advance(source, tf, boundary):
                return False
            self._persist(self._state.copy())
        return True

    def clear(self, source: RunSource | str) -> None:
        with self._lock:
            self._state.clear(source)
            self._persist(self._state.copy())

    def _persist(self, state: LastRunState) -> bool:
        try:
            with _file_lock(self._lock_path):
                self._backend.save(self.path, state)
                _rotate_backups(self.path, self.backup_keep)
        except (OSError, sqlite3.Error):
            logger.error("STATE_WRITE_FAILED %s", {"path": str(self.path)}, exc_info=True)
            monitoring.record_state_write_failure()
            return False
        return True


__all__ = [
    "LastRunState",
    "StateBackend",
    "JsonBackend",
    "SQLiteBackend",
    "LastRunStore",
]
