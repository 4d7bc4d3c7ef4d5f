# -*- coding: utf-8 -*-
"""
core_models.py
Domain types shared by the scheduler, the runner and the orchestrator:
timeframes, run sources, modes, candles and run envelopes.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Sequence


class Timeframe(str, Enum):
    """Tracked multi-timeframe intervals."""

    M15 = "15m"
    H4 = "4h"
    D1 = "1d"
    D7 = "7d"

    def __str__(self) -> str:
        return self.value


TF_MS: Dict[Timeframe, int] = {
    Timeframe.M15: 15 * 60 * 1000,
    Timeframe.H4: 4 * 60 * 60 * 1000,
    Timeframe.D1: 24 * 60 * 60 * 1000,
    Timeframe.D7: 7 * 24 * 60 * 60 * 1000,
}

ALL_TIMEFRAMES: List[Timeframe] = list(TF_MS)


class RunSource(str, Enum):
    LIVE = "live"
    PAPER = "paper"

    def __str__(self) -> str:
        return self.value


class Mode(str, Enum):
    """Process-wide trigger mode; exactly one is authoritative."""

    LIVE = "live"
    PAPER = "paper"

    def __str__(self) -> str:
        return self.value


def parse_timeframe(value: Any) -> Timeframe:
    """Return ``Timeframe`` for ``value`` or raise ``ValueError``."""
    try:
        return Timeframe(str(value))
    except ValueError:
        valid = ", ".join(tf.value for tf in ALL_TIMEFRAMES)
        raise ValueError(f"timeframe must be one of: {valid}") from None


def _to_float(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@dataclass(frozen=True)
class Candle:
    """OHLCV sample plus order-flow derived fields."""

    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    buy_volume: float = 0.0
    sell_volume: float = 0.0
    cvd: float = 0.0
    trade_count: int = 0
    sources: Sequence[str] = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Candle":
        """Build from an upstream payload (camelCase keys, snake_case accepted)."""
        return cls(
            timestamp=int(_to_float(d.get("timestamp"))),
            open=_to_float(d.get("open")),
            high=_to_float(d.get("high")),
            low=_to_float(d.get("low")),
            close=_to_float(d.get("close")),
            volume=_to_float(d.get("volume")),
            buy_volume=_to_float(d.get("buyVolume", d.get("buy_volume"))),
            sell_volume=_to_float(d.get("sellVolume", d.get("sell_volume"))),
            cvd=_to_float(d.get("cvd")),
            trade_count=int(_to_float(d.get("tradeCount", d.get("trade_count")))),
            sources=tuple(str(s) for s in (d.get("sources") or ())),
        )

    @classmethod
    def from_kline(cls, k: Sequence[Any], *, source: str) -> "Candle":
        """Build from a raw Binance kline row ``[open_time, o, h, l, c, v, ...]``."""
        return cls(
            timestamp=int(k[0]),
            open=_to_float(k[1]),
            high=_to_float(k[2]),
            low=_to_float(k[3]),
            close=_to_float(k[4]),
            volume=_to_float(k[5]),
            trade_count=int(_to_float(k[8])) if len(k) > 8 else 0,
            sources=(source,),
        )

    def price(self, field_name: str) -> float:
        if field_name not in ("open", "high", "low", "close"):
            raise ValueError(f"Unsupported price field: {field_name}")
        return float(getattr(self, field_name))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "open": self.open,
            "high": self.high,
            "low": self.low,
            "close": self.close,
            "volume": self.volume,
            "buyVolume": self.buy_volume,
            "sellVolume": self.sell_volume,
            "cvd": self.cvd,
            "tradeCount": self.trade_count,
            "sources": list(self.sources),
        }


def coerce_candles(items: Sequence[Any] | None) -> List[Candle]:
    out: List[Candle] = []
    for item in items or ():
        if isinstance(item, Candle):
            out.append(item)
        elif isinstance(item, Mapping):
            out.append(Candle.from_dict(item))
        else:
            raise TypeError(f"Cannot build Candle from {type(item).__name__}")
    return out


@dataclass(frozen=True)
class RunEnvelope:
    """Result of one successful computation pass.

    ``(timeframe, boundary, source)`` is the identity of the envelope; live and
    paper streams for the same timeframe never collide.
    """

    timeframe: Timeframe
    boundary: int
    source: RunSource
    config: Mapping[str, Any]
    output: Mapping[str, Any]

    def __post_init__(self) -> None:
        # detach from caller-owned containers
        object.__setattr__(self, "config", copy.deepcopy(dict(self.config)))
        object.__setattr__(self, "output", copy.deepcopy(dict(self.output)))

    @property
    def key(self) -> tuple[str, int, str]:
        return (self.timeframe.value, int(self.boundary), self.source.value)

    @property
    def model_date(self) -> str:
        return (
            datetime.fromtimestamp(self.boundary / 1000.0, tz=timezone.utc)
            .isoformat()
            .replace("+00:00", "Z")
        )

    @property
    def run_id(self) -> Any:
        return self.output.get("runId")

    @property
    def formula(self) -> str:
        return str(self.config.get("formula", ""))

    @property
    def args(self) -> Dict[str, Any]:
        return {
            "source": self.config.get("source"),
            "maType": self.config.get("ma_type"),
            "slowLength": self.config.get("slow_length"),
            "fastLength": self.config.get("fast_length"),
            "signalSmoothing": self.config.get("signal_smoothing"),
        }

    def to_payload(self) -> Dict[str, Any]:
        """Wire form submitted to the acknowledging authority."""
        return {
            "timeframe": self.timeframe.value,
            "boundaryTs": int(self.boundary),
            "modelDate": self.model_date,
            "runId": self.run_id,
            "source": self.source.value,
            "formula": self.formula,
            "args": self.args,
            "output": copy.deepcopy(dict(self.output)),
        }


__all__ = [
    "Timeframe",
    "TF_MS",
    "ALL_TIMEFRAMES",
    "RunSource",
    "Mode",
    "parse_timeframe",
    "Candle",
    "coerce_candles",
    "RunEnvelope",
]
