# upstream_client.py
"""Subscriber for the local upstream event socket.

The upstream process pushes ``\\n\\n``-delimited JSON frames over a unix
domain socket: candle batches for paper mode and mode/lifecycle signals.
Frames are decoded into :class:`core_events.UpstreamEvent` objects and put on
an :class:`services.event_bus.EventBus`.

On close or error the subscriber marks itself disconnected, publishes a
``DISCONNECTED`` event and schedules exactly one reconnect attempt after a
fixed delay.  :meth:`UpstreamSubscriber.close` cancels the pending attempt.
"""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, List, Mapping, Optional

from clock import now_ms
from core_events import MESSAGE_TYPES, EventType, UpstreamEvent
from core_models import coerce_candles, parse_timeframe
from services import monitoring
from services.event_bus import EventBus

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"


def split_frames(buffer: str) -> tuple[List[str], str]:
    """Split ``buffer`` into complete trimmed frames and the trailing partial.

    Empty frames (e.g. extra blank lines between messages) are skipped.
    """
    parts = buffer.split(FRAME_DELIMITER)
    rest = parts.pop()
    frames = [p.strip() for p in parts if p.strip()]
    return frames, rest


def decode_message(msg: Mapping[str, Any]) -> Optional[UpstreamEvent]:
    """Map one upstream JSON message to an event, ``None`` if not recognised."""
    etype = MESSAGE_TYPES.get(str(msg.get("type")))
    if etype is None:
        logger.debug("Unhandled upstream message type: %s", msg.get("type"))
        return None
    if etype is EventType.CANDLES:
        tf_raw = msg.get("timeframe")
        boundary = msg.get("boundaryTimestamp")
        candles = msg.get("candles")
        if not tf_raw or boundary is None or not isinstance(candles, list):
            logger.debug("Incomplete mtf_candles message ignored")
            return None
        try:
            tf = parse_timeframe(tf_raw)
            return UpstreamEvent(
                etype=etype,
                ts=now_ms(),
                timeframe=tf.value,
                boundary=int(boundary),
                candles=coerce_candles(candles),
            )
        except (TypeError, ValueError, OverflowError):
            logger.warning("Invalid mtf_candles message for %s", tf_raw, exc_info=True)
            return None
    return UpstreamEvent(etype=etype, ts=now_ms())


class UpstreamSubscriber:
    """Persistent unix-socket subscriber with fixed-delay reconnect."""

    def __init__(
        self,
        socket_path: str,
        *,
        bus: EventBus,
        reconnect_delay_s: float = 2.0,
        read_chunk_bytes: int = 65536,
    ) -> None:
        self.socket_path = socket_path
        self._bus = bus
        self.reconnect_delay_s = float(reconnect_delay_s)
        self.read_chunk_bytes = int(read_chunk_bytes)
        self._task: Optional[asyncio.Task] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._connected = False
        self._closed = False

    # ------------------------------------------------------------------
    def is_connected(self) -> bool:
        return self._connected

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    def connect(self) -> None:
        """Open the connection; no-op while connected or connecting."""
        self._closed = False
        if self._task is not None and not self._task.done():
            return
        self._cancel_reconnect()
        logger.info("Connecting to upstream socket %s", self.socket_path)
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def close(self) -> None:
        self._closed = True
        self._cancel_reconnect()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._close_writer()
        self._set_connected(False)

    # ------------------------------------------------------------------
    def _cancel_reconnect(self) -> None:
        handle, self._reconnect_handle = self._reconnect_handle, None
        if handle is not None:
            handle.cancel()

    def _schedule_reconnect(self) -> None:
        if self._closed or self._reconnect_handle is not None:
            return
        monitoring.record_upstream_reconnect()
        logger.warning(
            "Upstream socket closed, reconnecting in %.1fs", self.reconnect_delay_s
        )
        self._reconnect_handle = asyncio.get_running_loop().call_later(
            self.reconnect_delay_s, self._reconnect
        )

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if not self._closed:
            self.connect()

    def _set_connected(self, value: bool) -> None:
        self._connected = value
        monitoring.set_upstream_connected(value)

    def _close_writer(self) -> None:
        writer, self._writer = self._writer, None
        if writer is not None:
            try:
                writer.close()
            except Exception:
                pass

    async def _emit(self, event: UpstreamEvent) -> None:
        try:
            await self._bus.put(event)
        except RuntimeError:
            # bus closed during shutdown
            logger.debug("Event bus closed, %s not delivered", event.etype.value)

    async def _dispatch(self, frame: str) -> None:
        try:
            msg = json.loads(frame)
        except ValueError as exc:
            monitoring.record_bad_frame()
            logger.warning("Failed to parse upstream message: %s", exc)
            return
        if not isinstance(msg, dict):
            monitoring.record_bad_frame()
            logger.warning("Upstream message is not an object, dropped")
            return
        try:
            event = decode_message(msg)
        except Exception:
            monitoring.record_bad_frame()
            logger.exception("Failed to decode upstream message, dropped")
            return
        if event is None:
            return
        if event.etype is not EventType.CANDLES:
            logger.info("Upstream signal received: %s", event.etype.value)
        await self._emit(event)

    async def _read_stream(self) -> None:
        reader, writer = await asyncio.open_unix_connection(self.socket_path)
        self._writer = writer
        self._set_connected(True)
        logger.info("Connected to upstream socket %s", self.socket_path)
        await self._emit(UpstreamEvent(etype=EventType.CONNECTED, ts=now_ms()))

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        while True:
            chunk = await reader.read(self.read_chunk_bytes)
            if not chunk:
                return
            buffer += decoder.decode(chunk)
            frames, buffer = split_frames(buffer)
            for frame in frames:
                await self._dispatch(frame)

    async def _run(self) -> None:
        try:
            await self._read_stream()
        except asyncio.CancelledError:
            self._close_writer()
            self._set_connected(False)
            raise
        except (OSError, asyncio.IncompleteReadError) as exc:
            logger.error("Upstream socket error: %s", exc)
        except Exception:
            logger.exception("Upstream reader stopped unexpectedly")
        self._close_writer()
        await self._on_disconnect()

    async def _on_disconnect(self) -> None:
        self._set_connected(False)
        if self._closed:
            return
        await self._emit(UpstreamEvent(etype=EventType.DISCONNECTED, ts=now_ms()))
        self._schedule_reconnect()


__all__ = ["UpstreamSubscriber", "split_frames", "decode_message", "FRAME_DELIMITER"]
