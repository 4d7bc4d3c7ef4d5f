"""Live-mode scheduler: detects timeframe boundary crossings on the wall clock.

The scheduler polls the clock every ``check_interval_s`` and emits one
trigger per tracked timeframe per boundary to its listener.  It performs no
I/O; the listener decides what a trigger means.

After a pause longer than one interval only the *current* boundary fires,
intermediate boundaries are not replayed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import clock
from core_models import Timeframe, parse_timeframe

logger = logging.getLogger(__name__)

TriggerListener = Callable[[Timeframe, int], None]


class BoundaryScheduler:
    def __init__(
        self,
        timeframes: Iterable[Timeframe | str],
        *,
        listener: Optional[TriggerListener] = None,
        check_interval_s: float = 10.0,
        time_fn: Callable[[], int] = clock.now_ms,
    ) -> None:
        self.timeframes: List[Timeframe] = [parse_timeframe(tf) for tf in timeframes]
        self.check_interval_s = float(check_interval_s)
        self._listener = listener
        self._time_fn = time_fn
        self._last_fired: Dict[Timeframe, int] = {}
        self._task: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------
    def set_listener(self, listener: Optional[TriggerListener]) -> None:
        self._listener = listener

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def last_fired(self) -> Dict[Timeframe, int]:
        return dict(self._last_fired)

    # ------------------------------------------------------------------
    def start(self, initial_state: Mapping[Timeframe | str, int] | None = None) -> None:
        """Seed last-fired from ``initial_state``, start polling and check once.

        Must be called from within a running event loop.  Calling ``start`` on
        a running scheduler restarts it with the new seed; previous last-fired
        values are discarded.
        """
        self.stop()
        self._last_fired = {}
        for tf_raw, ts in (initial_state or {}).items():
            tf = parse_timeframe(tf_raw)
            if ts is None:
                continue
            self._last_fired[tf] = int(ts)
        self._task = asyncio.get_running_loop().create_task(self._loop())
        logger.info(
            "BoundaryScheduler started %s",
            {tf.value: self._last_fired.get(tf) for tf in self.timeframes},
        )
        self.check()

    def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        if not task.done():
            task.cancel()
        logger.info("BoundaryScheduler stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval_s)
            try:
                self.check()
            except Exception:
                logger.exception("BoundaryScheduler check failed")

    # ------------------------------------------------------------------
    def check(self) -> List[Tuple[Timeframe, int]]:
        """Emit triggers for every timeframe whose boundary advanced."""
        now = self._time_fn()
        fired: List[Tuple[Timeframe, int]] = []
        for tf in self.timeframes:
            boundary = clock.boundary_ms(tf, now)
            if boundary > self._last_fired.get(tf, 0):
                self._last_fired[tf] = boundary
                logger.info(
                    "BOUNDARY_TRIGGER %s",
                    {"timeframe": tf.value, "boundary": boundary, "at": clock.format_utc(boundary)},
                )
                fired.append((tf, boundary))
                if self._listener is not None:
                    try:
                        self._listener(tf, boundary)
                    except Exception:
                        logger.exception("Trigger listener failed for %s", tf.value)
        return fired

    def mark_fired(self, tf: Timeframe | str, boundary: int) -> None:
        """Record ``boundary`` as handled for ``tf``; never moves backwards."""
        t = parse_timeframe(tf)
        if int(boundary) > self._last_fired.get(t, 0):
            self._last_fired[t] = int(boundary)


__all__ = ["BoundaryScheduler", "TriggerListener"]
