# -*- coding: utf-8 -*-
"""
core_config.py
Pydantic configuration models for the boundary runner plus the runtime
registry of per-timeframe model parameters.

Configuration is read from YAML (``load_config``); deployment knobs can be
overridden through environment variables (see ``apply_env_overrides``).
Model parameters patched at runtime are persisted to a JSON override file so
they survive restarts.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Mapping, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from core_models import ALL_TIMEFRAMES, Timeframe, parse_timeframe
from services.utils_app import atomic_write_with_retry, read_json

logger = logging.getLogger(__name__)


class ModelConfig(BaseModel):
    """Per-timeframe computation parameters."""

    model_config = ConfigDict(extra="forbid")

    formula: str = Field(default="default", min_length=1)
    source: Literal["open", "high", "low", "close"] = Field(
        default="close", description="Candle price field fed to the runner"
    )
    ma_type: Literal["ema", "ma"] = Field(default="ema")
    slow_length: int = Field(default=26, ge=1)
    fast_length: int = Field(default=12, ge=1)
    signal_smoothing: int = Field(default=0, ge=0)
    trace: bool = Field(default=False)


def _default_models() -> Dict[Timeframe, ModelConfig]:
    return {tf: ModelConfig() for tf in ALL_TIMEFRAMES}


class SchedulerConfig(BaseModel):
    """Live-mode boundary detection."""

    timeframes: List[Timeframe] = Field(default_factory=lambda: list(ALL_TIMEFRAMES))
    check_interval_s: float = Field(default=10.0, gt=0.0)

    @field_validator("timeframes")
    @classmethod
    def _unique(cls, v: List[Timeframe]) -> List[Timeframe]:
        seen: List[Timeframe] = []
        for tf in v:
            if tf not in seen:
                seen.append(tf)
        if not seen:
            raise ValueError("at least one timeframe must be tracked")
        return seen


class UpstreamConfig(BaseModel):
    """Local event source (paper mode candles and mode signals)."""

    enabled: bool = Field(default=True)
    socket_path: str = Field(default="/tmp/dataserv.sock")
    reconnect_delay_s: float = Field(default=2.0, gt=0.0)
    read_chunk_bytes: int = Field(default=65536, ge=1)


class RunnerConfig(BaseModel):
    """External computation binary."""

    path: str = Field(default="runner")
    config_dir: Optional[str] = Field(default=None)
    config_dir_env: str = Field(
        default="RUNNER_CONFIG_DIR",
        description="Environment variable through which config_dir is passed to the child",
    )
    timeout_s: float = Field(default=30.0, gt=0.0)


class OracleConfig(BaseModel):
    """Acknowledging authority."""

    base_url: str = Field(default="http://localhost:3003")
    endpoint: str = Field(default="/api/mtf-runs")
    timeout_s: float = Field(default=10.0, gt=0.0)
    api_key: Optional[str] = Field(default=None)


class MarketDataConfig(BaseModel):
    """Live-mode candle source (public Binance REST)."""

    spot_base: str = Field(default="https://api.binance.com")
    symbol: str = Field(default="BTCUSDT")
    candle_limit: int = Field(default=176, ge=1, le=1000)
    timeout_s: float = Field(default=20.0, gt=0.0)
    # Binance "1w" klines open on Monday 00:00 UTC while 7d boundaries are
    # epoch-aligned (Thursday 00:00 UTC), so a 7d live run sees a weekly candle
    # that is already part-way through. Map 7d to "1d" here to avoid that.
    intervals: Dict[Timeframe, str] = Field(
        default_factory=lambda: {
            Timeframe.M15: "15m",
            Timeframe.H4: "4h",
            Timeframe.D1: "1d",
            Timeframe.D7: "1w",
        }
    )


class StateConfig(BaseModel):
    """Durable last-run state."""

    backend: Literal["json", "sqlite"] = Field(default="json")
    path: str = Field(default="state/last_run.json")
    lock_path: Optional[str] = Field(default=None)
    backup_keep: int = Field(default=1, ge=0)


class HistoryConfig(BaseModel):
    """Run history result sink."""

    enabled: bool = Field(default=True)
    path: str = Field(default="state/run_history.sqlite")
    retention_days: Dict[Timeframe, int] = Field(
        default_factory=lambda: {
            Timeframe.M15: 7,
            Timeframe.H4: 30,
            Timeframe.D1: 90,
            Timeframe.D7: 365,
        }
    )


class BroadcastConfig(BaseModel):
    """WebSocket fan-out of run results and status notifications."""

    enabled: bool = Field(default=True)
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3006, ge=0, le=65535)


class AlertsConfig(BaseModel):
    """Remote error reporter."""

    enabled: bool = Field(default=False)
    base_url: str = Field(default="http://localhost:3000")
    service: str = Field(default="mtf-runner")
    api_key: Optional[str] = Field(default=None)
    cooldown_s: float = Field(default=0.0, ge=0.0)
    timeout_s: float = Field(default=5.0, gt=0.0)


class MonitoringConfig(BaseModel):
    """Prometheus exporter."""

    enabled: bool = Field(default=False)
    port: int = Field(default=9108, ge=0, le=65535)


class AppConfig(BaseModel):
    """Top-level configuration of the runner process."""

    log_level: str = Field(default="INFO")
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    upstream: UpstreamConfig = Field(default_factory=UpstreamConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    oracle: OracleConfig = Field(default_factory=OracleConfig)
    market_data: MarketDataConfig = Field(default_factory=MarketDataConfig)
    state: StateConfig = Field(default_factory=StateConfig)
    history: HistoryConfig = Field(default_factory=HistoryConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
    alerts: AlertsConfig = Field(default_factory=AlertsConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    models: Dict[Timeframe, ModelConfig] = Field(default_factory=_default_models)
    runtime_overrides_path: Optional[str] = Field(default="state/runtime-config.json")

    @field_validator("models")
    @classmethod
    def _fill_models(cls, v: Dict[Timeframe, ModelConfig]) -> Dict[Timeframe, ModelConfig]:
        for tf in ALL_TIMEFRAMES:
            v.setdefault(tf, ModelConfig())
        return v


# ---------------------------------------------------------------------------
# Loading


_ENV_OVERRIDES = {
    "RUNNER_PATH": ("runner", "path"),
    "RUNNER_CONFIG_DIR": ("runner", "config_dir"),
    "UPSTREAM_SOCKET_PATH": ("upstream", "socket_path"),
    "ORACLE_URL": ("oracle", "base_url"),
    "INTERNAL_API_KEY": ("oracle", "api_key"),
    "ERRORS_URL": ("alerts", "base_url"),
    "BROADCAST_PORT": ("broadcast", "port"),
    "STATE_PATH": ("state", "path"),
    "HISTORY_PATH": ("history", "path"),
}


def apply_env_overrides(data: Dict[str, Any], environ: Mapping[str, str] | None = None) -> Dict[str, Any]:
    """Merge supported environment variables into raw config ``data``."""
    env = os.environ if environ is None else environ
    for var, (section, key) in _ENV_OVERRIDES.items():
        value = env.get(var)
        if value is None or value == "":
            continue
        sect = data.setdefault(section, {}) or {}
        sect[key] = value
        data[section] = sect
    if env.get("INTERNAL_API_KEY"):
        alerts = data.setdefault("alerts", {}) or {}
        alerts.setdefault("api_key", env["INTERNAL_API_KEY"])
        data["alerts"] = alerts
    if env.get("LOG_LEVEL"):
        data["log_level"] = env["LOG_LEVEL"]
    models = data.setdefault("models", {}) or {}
    for tf in ALL_TIMEFRAMES:
        formula = env.get(f"FORMULA_{tf.value.upper()}")
        if formula:
            entry = dict(models.get(tf.value) or {})
            entry["formula"] = formula
            models[tf.value] = entry
    data["models"] = models
    return data


def load_config_from_str(content: str, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Parse configuration from YAML string."""
    data = yaml.safe_load(content) or {}
    if not isinstance(data, dict):
        raise ValueError("Top-level config must be a mapping")
    return AppConfig.model_validate(apply_env_overrides(data, environ))


def load_config(path: str | Path | None = None, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from a YAML file; a missing ``path`` yields defaults."""
    if path is None:
        return load_config_from_str("", environ)
    with open(path, "r", encoding="utf-8") as f:
        return load_config_from_str(f.read(), environ)


# ---------------------------------------------------------------------------
# Runtime model parameters


# control-surface spelling -> field name
_PATCH_ALIASES = {
    "maType": "ma_type",
    "slowLength": "slow_length",
    "fastLength": "fast_length",
    "signalSmoothing": "signal_smoothing",
}


class ModelConfigRegistry:
    """Owner of the mutable per-timeframe :class:`ModelConfig` values.

    Readers receive deep copies, so a patch applied while a run is in flight
    only affects the next run.
    """

    def __init__(
        self,
        configs: Mapping[Timeframe | str, ModelConfig],
        overrides_path: str | Path | None = None,
    ) -> None:
        self._configs: Dict[Timeframe, ModelConfig] = {
            parse_timeframe(tf): cfg.model_copy(deep=True) for tf, cfg in configs.items()
        }
        self._overrides_path = Path(overrides_path) if overrides_path else None

    @classmethod
    def from_app_config(cls, cfg: AppConfig) -> "ModelConfigRegistry":
        reg = cls(cfg.models, cfg.runtime_overrides_path)
        reg.load_overrides()
        return reg

    def load_overrides(self) -> None:
        if self._overrides_path is None:
            return
        data = read_json(self._overrides_path)
        for tf_raw, payload in data.items():
            try:
                tf = parse_timeframe(tf_raw)
                merged = {**self._configs.get(tf, ModelConfig()).model_dump(), **dict(payload)}
                self._configs[tf] = ModelConfig.model_validate(merged)
            except (TypeError, ValueError):
                logger.warning("Ignoring invalid config override for %s", tf_raw, exc_info=True)
        if data:
            logger.info("Loaded model config overrides from %s", self._overrides_path)

    def snapshot(self, tf: Timeframe | str) -> ModelConfig:
        t = parse_timeframe(tf)
        if t not in self._configs:
            raise ValueError(f"No model config for timeframe {t.value}")
        return self._configs[t].model_copy(deep=True)

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        return {tf.value: cfg.model_dump() for tf, cfg in self._configs.items()}

    def patch(self, tf: Timeframe | str, updates: Mapping[str, Any]) -> ModelConfig:
        """Validate and apply ``updates`` to ``tf``; persists all configs.

        Raises ``ValueError`` for unknown timeframes, unknown fields or invalid
        values; the stored config is left untouched in that case.
        """
        t = parse_timeframe(tf)
        current = self.snapshot(t).model_dump()
        for key, value in updates.items():
            if key == "timeframe":
                continue
            current[_PATCH_ALIASES.get(key, key)] = value
        try:
            new_cfg = ModelConfig.model_validate(current)
        except ValidationError as exc:
            raise ValueError(str(exc)) from None
        self._configs[t] = new_cfg
        logger.info("CONFIG_UPDATED %s", {"timeframe": t.value, **new_cfg.model_dump()})
        self.save()
        return new_cfg.model_copy(deep=True)

    def save(self) -> None:
        if self._overrides_path is None:
            return
        try:
            atomic_write_with_retry(
                self._overrides_path, json.dumps(self.as_dict(), indent=2) + "\n"
            )
        except OSError:
            logger.warning("Failed to persist model configs to %s", self._overrides_path, exc_info=True)


__all__ = [
    "ModelConfig",
    "SchedulerConfig",
    "UpstreamConfig",
    "RunnerConfig",
    "OracleConfig",
    "MarketDataConfig",
    "StateConfig",
    "HistoryConfig",
    "BroadcastConfig",
    "AlertsConfig",
    "MonitoringConfig",
    "AppConfig",
    "apply_env_overrides",
    "load_config",
    "load_config_from_str",
    "ModelConfigRegistry",
]
