"""WebSocket fan-out of run results and status notifications.

Every connected client receives every message; delivery is best effort and
clients never acknowledge.  Messages are JSON objects tagged with ``type``
(``run``, ``mode``, ``upstream_disconnected``).
"""
from __future__ import annotations

import json
import logging
from typing import Any, Mapping, Optional, Set

from websockets.asyncio.server import Server, ServerConnection, broadcast, serve

from core_config import BroadcastConfig

logger = logging.getLogger(__name__)


class BroadcastHub:
    def __init__(self, host: str = "0.0.0.0", port: int = 3006) -> None:
        self.host = host
        self.port = int(port)
        self._server: Optional[Server] = None
        self._clients: Set[ServerConnection] = set()

    @classmethod
    def from_config(cls, cfg: BroadcastConfig) -> "BroadcastHub":
        return cls(cfg.host, cfg.port)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    @property
    def bound_port(self) -> Optional[int]:
        if self._server is None:
            return None
        for sock in self._server.sockets:
            return int(sock.getsockname()[1])
        return None

    async def start(self) -> None:
        """Bind the listener; a bind failure propagates to the caller."""
        if self._server is not None:
            return
        self._server = await serve(self._handler, self.host, self.port)
        logger.info("Broadcast server listening on %s:%s", self.host, self.bound_port)

    async def _handler(self, ws: ServerConnection) -> None:
        self._clients.add(ws)
        logger.info("WS client connected (total: %d)", len(self._clients))
        try:
            await ws.wait_closed()
        finally:
            self._clients.discard(ws)
            logger.debug("WS client disconnected (total: %d)", len(self._clients))

    def publish(self, message: Mapping[str, Any]) -> None:
        """Send ``message`` to all connected clients; never raises."""
        try:
            data = json.dumps(dict(message), separators=(",", ":"), default=str)
        except (TypeError, ValueError):
            logger.warning("Unserializable broadcast message dropped: %r", message)
            return
        if self._clients:
            try:
                broadcast(self._clients, data)
            except Exception:
                logger.warning("Broadcast failed", exc_info=True)

    async def close(self) -> None:
        """Stop accepting connections and close existing clients; idempotent."""
        server, self._server = self._server, None
        if server is None:
            return
        server.close()
        await server.wait_closed()
        self._clients.clear()
        logger.info("Broadcast server closed")


__all__ = ["BroadcastHub"]
