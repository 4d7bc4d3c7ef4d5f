"""Prometheus-backed monitoring helpers.

Counters and gauges describing run outcomes, acknowledgment results, the
upstream connection and the current mode.  The ``record_*`` helpers never
raise: metrics are best effort and must not interfere with a run.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Union

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from core_config import MonitoringConfig

logger = logging.getLogger(__name__)

# Runs by timeframe/source and outcome (ok, acked, unacked, runner_error, skipped)
runs_total = Counter(
    "mtf_runs_total",
    "Model runs by timeframe, source and outcome",
    ["timeframe", "source", "outcome"],
)

runner_duration_ms = Histogram(
    "mtf_runner_duration_ms",
    "Wall-clock duration of runner invocations in milliseconds",
    ["timeframe"],
    buckets=(50, 100, 250, 500, 1000, 2500, 5000, 10000, 30000),
)

runner_failures = Counter(
    "mtf_runner_failures_total",
    "Runner invocations that failed, by error kind",
    ["kind"],
)

oracle_ack_total = Counter(
    "mtf_oracle_ack_total",
    "Acknowledgment attempts by outcome",
    ["outcome"],
)

last_run_boundary_ms = Gauge(
    "mtf_last_run_boundary_ms",
    "Last acknowledged boundary per timeframe and source",
    ["timeframe", "source"],
)

scheduler_triggers = Counter(
    "mtf_scheduler_triggers_total",
    "Boundary triggers emitted by the scheduler",
    ["timeframe"],
)

dropped_triggers = Counter(
    "mtf_dropped_triggers_total",
    "Triggers ignored because their mode was inactive",
    ["origin"],
)

upstream_connected = Gauge(
    "mtf_upstream_connected",
    "1 while the upstream event socket is connected",
)

upstream_reconnects = Counter(
    "mtf_upstream_reconnects_total",
    "Scheduled upstream reconnect attempts",
)

upstream_bad_frames = Counter(
    "mtf_upstream_bad_frames_total",
    "Upstream frames dropped because they were not valid JSON",
)

mode_paper = Gauge(
    "mtf_mode_paper",
    "1 while the process is in paper mode, 0 in live mode",
)

state_write_failures = Counter(
    "mtf_state_write_failures_total",
    "Durable last-run state writes that failed",
)

# Event bus metrics
queue_depth = Gauge(
    "event_bus_queue_depth",
    "Current depth of the event bus queue",
)
events_in = Counter(
    "event_bus_events_in_total",
    "Total number of events enqueued to the event bus",
)


def _label(value: Union[Enum, str]) -> str:
    """Return the value of an Enum member or cast value to string."""
    try:
        return str(value.value)  # type: ignore[union-attr]
    except AttributeError:
        return str(value)


def record_run(timeframe: Union[Enum, str], source: Union[Enum, str], outcome: str) -> None:
    try:
        runs_total.labels(_label(timeframe), _label(source), outcome).inc()
    except Exception:
        pass


def observe_runner_duration(timeframe: Union[Enum, str], duration_ms: float) -> None:
    try:
        runner_duration_ms.labels(_label(timeframe)).observe(float(duration_ms))
    except Exception:
        pass


def record_runner_failure(kind: str) -> None:
    try:
        runner_failures.labels(kind).inc()
    except Exception:
        pass


def record_ack(outcome: str) -> None:
    try:
        oracle_ack_total.labels(outcome).inc()
    except Exception:
        pass


def set_last_run(timeframe: Union[Enum, str], source: Union[Enum, str], boundary: int) -> None:
    try:
        last_run_boundary_ms.labels(_label(timeframe), _label(source)).set(int(boundary))
    except Exception:
        pass


def record_trigger(timeframe: Union[Enum, str]) -> None:
    try:
        scheduler_triggers.labels(_label(timeframe)).inc()
    except Exception:
        pass


def record_dropped_trigger(origin: str) -> None:
    try:
        dropped_triggers.labels(origin).inc()
    except Exception:
        pass


def set_upstream_connected(connected: bool) -> None:
    try:
        upstream_connected.set(1 if connected else 0)
    except Exception:
        pass


def record_upstream_reconnect() -> None:
    try:
        upstream_reconnects.inc()
    except Exception:
        pass


def record_bad_frame() -> None:
    try:
        upstream_bad_frames.inc()
    except Exception:
        pass


def set_mode(mode: Union[Enum, str]) -> None:
    try:
        mode_paper.set(1 if _label(mode) == "paper" else 0)
    except Exception:
        pass


def record_state_write_failure() -> None:
    try:
        state_write_failures.inc()
    except Exception:
        pass


def start_exporter(cfg: MonitoringConfig) -> bool:
    """Expose metrics over HTTP when enabled; returns ``True`` if started."""
    if not cfg.enabled:
        return False
    start_http_server(int(cfg.port))
    logger.info("Prometheus exporter listening on :%d", cfg.port)
    return True


__all__ = [
    "record_run",
    "observe_runner_duration",
    "record_runner_failure",
    "record_ack",
    "set_last_run",
    "record_trigger",
    "record_dropped_trigger",
    "set_upstream_connected",
    "record_upstream_reconnect",
    "record_bad_frame",
    "set_mode",
    "record_state_write_failure",
    "start_exporter",
]
