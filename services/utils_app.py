from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)


def ensure_dir(path: str | Path) -> None:
    p = Path(path)
    d = p.parent if p.suffix else p
    d.mkdir(parents=True, exist_ok=True)


def _fsync_dir(path: Path) -> None:
    try:
        dir_fd = os.open(str(path), os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


def atomic_write(path: str | Path, data: str) -> None:
    """Write ``data`` to ``path`` via a temp file and ``os.replace``."""
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    tmp = p.with_suffix(p.suffix + ".tmp")
    with tmp.open("w", encoding="utf-8") as fh:
        fh.write(data)
        fh.flush()
        os.fsync(fh.fileno())
    os.replace(tmp, p)
    _fsync_dir(p.parent)


def atomic_write_with_retry(
    path: str | Path,
    data: str,
    *,
    retries: int = 3,
    backoff: float = 0.1,
) -> None:
    """:func:`atomic_write` with linear backoff; re-raises the last error."""
    attempts = max(1, int(retries))
    for attempt in range(1, attempts + 1):
        try:
            atomic_write(path, data)
            return
        except OSError:
            if attempt >= attempts:
                raise
            logger.warning(
                "Atomic write to %s failed (attempt %d/%d)", path, attempt, attempts
            )
            time.sleep(backoff * attempt)


def read_json(path: str | Path) -> Dict[str, Any]:
    """Return JSON object stored at ``path`` or ``{}`` when missing/corrupt."""
    p = Path(path)
    if not p.exists():
        return {}
    try:
        with p.open("r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        logger.warning("Unreadable JSON file %s", p, exc_info=True)
        return {}
    return data if isinstance(data, dict) else {}
