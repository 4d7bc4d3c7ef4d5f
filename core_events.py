"""Typed events flowing from the upstream subscriber to the orchestrator."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core_models import Candle


class EventType(str, Enum):
    CANDLES = "candles"
    LOOP_RESET = "loop_reset"
    PAPER_ON = "paper_on"
    PAPER_OFF = "paper_off"
    UPSTREAM_STARTUP = "upstream_startup"
    UPSTREAM_SHUTDOWN = "upstream_shutdown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


# upstream wire ``type`` -> event kind
MESSAGE_TYPES: Dict[str, EventType] = {
    "mtf_candles": EventType.CANDLES,
    "paper_loop": EventType.LOOP_RESET,
    "paperOn": EventType.PAPER_ON,
    "paperOff": EventType.PAPER_OFF,
    "startup": EventType.UPSTREAM_STARTUP,
    "shutdown": EventType.UPSTREAM_SHUTDOWN,
}


@dataclass
class UpstreamEvent:
    etype: EventType
    ts: int
    timeframe: Optional[str] = None
    boundary: Optional[int] = None
    candles: List[Candle] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)


__all__ = ["EventType", "MESSAGE_TYPES", "UpstreamEvent"]
