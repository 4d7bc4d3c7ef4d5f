# binance_public.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

import requests

from core_config import MarketDataConfig
from core_models import Candle, Timeframe, parse_timeframe

logger = logging.getLogger(__name__)


@dataclass
class PublicEndpoints:
    spot_base: str = "https://api.binance.com"


class BinancePublicClient:
    """
    Minimal public Binance client (no keys) used as the live-mode candle source.
      - get_klines() returns raw kline rows
      - get_candles() returns :class:`core_models.Candle` objects for a timeframe
    Times are Unix milliseconds.
    """

    def __init__(
        self,
        endpoints: Optional[PublicEndpoints] = None,
        *,
        symbol: str = "BTCUSDT",
        intervals: Mapping[Timeframe | str, str] | None = None,
        timeout: float = 20.0,
        session: requests.Session | None = None,
    ) -> None:
        self.e = endpoints or PublicEndpoints()
        self.symbol = symbol.upper()
        self.intervals: Dict[Timeframe, str] = {
            parse_timeframe(tf): iv for tf, iv in (intervals or {}).items()
        }
        self.timeout = float(timeout)
        self._owns_session = session is None
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, cfg: MarketDataConfig, session: requests.Session | None = None) -> "BinancePublicClient":
        return cls(
            PublicEndpoints(spot_base=cfg.spot_base.rstrip("/")),
            symbol=cfg.symbol,
            intervals=cfg.intervals,
            timeout=cfg.timeout_s,
            session=session,
        )

    def close(self) -> None:
        """Release owned REST session resources."""
        if self._owns_session:
            try:
                self.session.close()
            except Exception:  # pragma: no cover - best effort cleanup
                pass

    # -------- KLINES --------

    def get_klines(self, *, symbol: str, interval: str, limit: int = 500) -> List[List[Any]]:
        """Raw klines (list of lists, as returned by the Binance API)."""
        url = f"{self.e.spot_base}/api/v3/klines"
        params = {"symbol": symbol.upper(), "interval": interval, "limit": int(limit)}
        resp = self.session.get(url, params=params, timeout=self.timeout)
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, list):
            return data
        raise RuntimeError(f"Unexpected klines response: {data}")

    def get_candles(self, tf: Timeframe | str, limit: int) -> List[Candle]:
        t = parse_timeframe(tf)
        interval = self.intervals.get(t, t.value)
        rows = self.get_klines(symbol=self.symbol, interval=interval, limit=limit)
        source = f"LIVE:{self.symbol}"
        candles = [Candle.from_kline(k, source=source) for k in rows]
        logger.debug("Fetched %d %s candles for %s", len(candles), interval, self.symbol)
        return candles


__all__ = ["PublicEndpoints", "BinancePublicClient"]
