"""Asynchronous in-memory event bus between the upstream reader and the orchestrator.

Upstream events (candle batches, mode signals, connection changes) must all
reach the single consumer, so the queue is unbounded and nothing is dropped.
After :meth:`EventBus.close` producers get ``RuntimeError`` and consumers
drain what is queued, then receive ``None``.

Metrics are emitted via :mod:`services.monitoring`:

``queue_depth`` -- current queue size

``events_in`` -- total number of events accepted into the queue
"""
from __future__ import annotations

import asyncio
from typing import Any

from . import monitoring


class EventBus:
    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._sentinel: object = object()

    @property
    def depth(self) -> int:
        return self._queue.qsize()

    @property
    def closed(self) -> bool:
        return self._closed

    def _set_depth(self) -> None:
        monitoring.queue_depth.set(self._queue.qsize())

    async def put(self, event: Any) -> None:
        if self._closed:
            raise RuntimeError("EventBus is closed")
        self._queue.put_nowait(event)
        monitoring.events_in.inc()
        self._set_depth()

    async def get(self) -> Any:
        """Return the next event or ``None`` once the bus is closed and drained."""

        item = await self._queue.get()
        self._set_depth()
        if item is self._sentinel:
            # leave it for any other consumer
            self._queue.put_nowait(self._sentinel)
            return None
        return item

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._sentinel)
        self._set_depth()


__all__ = ["EventBus"]
