"""Wall-clock helpers and timeframe boundary arithmetic."""

from __future__ import annotations

import time
from datetime import datetime, timezone

from core_models import TF_MS, Timeframe

# Optional fixed offset applied to the system clock (ms); tests and replays
# shift it instead of patching ``time.time``.
clock_skew_ms: float = 0.0


def system_utc_ms() -> int:
    """Return current system time in milliseconds since the epoch."""
    return int(time.time() * 1000.0)


def now_ms() -> int:
    """Return current time accounting for ``clock_skew_ms``."""
    return int(system_utc_ms() + clock_skew_ms)


def interval_ms(tf: Timeframe | str) -> int:
    return TF_MS[Timeframe(tf)]


def boundary_ms(tf: Timeframe | str, ts_ms: int | None = None) -> int:
    """Return the start of the ``tf`` interval containing ``ts_ms``.

    ``floor(ts / interval) * interval`` is idempotent (a boundary maps to
    itself) and non-decreasing in ``ts_ms``.
    """
    ms = interval_ms(tf)
    ts = now_ms() if ts_ms is None else int(ts_ms)
    return (ts // ms) * ms


def format_utc(ts_ms: int | None) -> str | None:
    if ts_ms is None:
        return None
    return (
        datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )
