# orchestrator.py
"""Control core of the boundary runner.

Owns the process mode (``live`` or ``paper``), routes scheduler triggers and
upstream events to model runs and applies the acknowledgment-gated commit
protocol:

1. skip empty candle sets;
2. snapshot the model config, build runner input and execute the runner;
3. attach the raw input prices to the output;
4. submit the run envelope to the acknowledging authority;
5. only an acknowledged run advances durable last-run state, the scheduler
   and the result sink;
6. broadcast the run either way (``id`` is ``None`` when unacknowledged).

A missed acknowledgment leaves the boundary uncommitted so the same boundary
can be attempted again by the next trigger or an external watchdog.
"""
from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Protocol, Sequence, Set, Tuple

import clock
from binance_public import BinancePublicClient
from boundary_scheduler import BoundaryScheduler
from core_config import AppConfig, ModelConfigRegistry
from core_events import EventType, UpstreamEvent
from core_models import (
    ALL_TIMEFRAMES,
    Candle,
    Mode,
    RunEnvelope,
    RunSource,
    Timeframe,
    coerce_candles,
    parse_timeframe,
)
from oracle_client import OracleClient
from runner_invoker import RunnerError, RunnerInvoker, build_input
from services import monitoring
from services.alerts import ErrorReporter
from services.broadcast import BroadcastHub
from services.event_bus import EventBus
from services.run_history import RunHistory
from services.state_storage import LastRunStore
from upstream_client import UpstreamSubscriber

logger = logging.getLogger(__name__)


class ModeError(RuntimeError):
    """Operation not valid in the current mode."""


class Acknowledger(Protocol):
    async def submit(self, envelope: RunEnvelope) -> Any: ...


class CandleSource(Protocol):
    def get_candles(self, tf: Timeframe | str, limit: int) -> Sequence[Candle]: ...


@dataclass(frozen=True)
class RunOutcome:
    envelope: RunEnvelope
    ack_id: Any
    duration_ms: int

    @property
    def acknowledged(self) -> bool:
        return self.ack_id is not None


RunKey = Tuple[Timeframe, int, RunSource]


class Orchestrator:
    def __init__(
        self,
        *,
        runner: RunnerInvoker,
        configs: ModelConfigRegistry,
        state: LastRunStore,
        oracle: Acknowledger,
        scheduler: Optional[BoundaryScheduler] = None,
        bus: Optional[EventBus] = None,
        upstream: Optional[UpstreamSubscriber] = None,
        broadcaster: Optional[BroadcastHub] = None,
        history: Optional[RunHistory] = None,
        market_data: Optional[CandleSource] = None,
        reporter: Optional[ErrorReporter] = None,
        candle_limit: int = 176,
        time_fn=clock.now_ms,
    ) -> None:
        self.runner = runner
        self.configs = configs
        self.state = state
        self.oracle = oracle
        self.scheduler = scheduler
        self.bus = bus or EventBus()
        self.upstream = upstream
        self.broadcaster = broadcaster
        self.history = history
        self.market_data = market_data
        self.reporter = reporter
        self.candle_limit = int(candle_limit)
        self._time_fn = time_fn
        self._mode = Mode.LIVE
        self._inflight: Set[RunKey] = set()
        self._tasks: Set[asyncio.Task] = set()
        self._consumer: Optional[asyncio.Task] = None
        self._started = False
        self._shutting_down = False
        if self.scheduler is not None:
            self.scheduler.set_listener(self._on_trigger)

    @classmethod
    def from_config(cls, cfg: AppConfig) -> "Orchestrator":
        bus = EventBus()
        upstream = None
        if cfg.upstream.enabled:
            upstream = UpstreamSubscriber(
                cfg.upstream.socket_path,
                bus=bus,
                reconnect_delay_s=cfg.upstream.reconnect_delay_s,
                read_chunk_bytes=cfg.upstream.read_chunk_bytes,
            )
        history = None
        if cfg.history.enabled:
            history = RunHistory(cfg.history.path, retention_days=cfg.history.retention_days)
        return cls(
            runner=RunnerInvoker.from_config(cfg.runner),
            configs=ModelConfigRegistry.from_app_config(cfg),
            state=LastRunStore(
                cfg.state.path,
                backend=cfg.state.backend,
                lock_path=cfg.state.lock_path,
                backup_keep=cfg.state.backup_keep,
            ),
            oracle=OracleClient.from_config(cfg.oracle),
            scheduler=BoundaryScheduler(
                cfg.scheduler.timeframes,
                check_interval_s=cfg.scheduler.check_interval_s,
            ),
            bus=bus,
            upstream=upstream,
            broadcaster=BroadcastHub.from_config(cfg.broadcast) if cfg.broadcast.enabled else None,
            history=history,
            market_data=BinancePublicClient.from_config(cfg.market_data),
            reporter=ErrorReporter.from_config(cfg.alerts),
            candle_limit=cfg.market_data.candle_limit,
        )

    # ------------------------------------------------------------------
    # Read accessors

    @property
    def mode(self) -> Mode:
        return self._mode

    @property
    def timeframes(self) -> Iterable[Timeframe]:
        return self.scheduler.timeframes if self.scheduler is not None else ALL_TIMEFRAMES

    def status(self) -> Dict[str, Any]:
        source = RunSource.PAPER if self._mode is Mode.PAPER else RunSource.LIVE
        runs = self.state.last_runs(source)
        return {
            "mode": self._mode.value,
            "last_run": {tf.value: runs.get(tf) for tf in self.timeframes},
            "upstream_connected": bool(self.upstream is not None and self.upstream.is_connected()),
        }

    def get_config(self) -> Dict[str, Dict[str, Any]]:
        return self.configs.as_dict()

    def patch_config(self, tf: Timeframe | str, updates: Dict[str, Any]) -> Dict[str, Any]:
        """Validate and store new model parameters; the next run uses them."""
        return self.configs.patch(tf, updates).model_dump()

    def history_page(
        self,
        timeframe: Timeframe | str | None = None,
        *,
        limit: int = 50,
        before: int | None = None,
        source: RunSource | str | None = None,
    ) -> Dict[str, Any]:
        if self.history is None:
            return {"runs": [], "has_more": False}
        return self.history.get_runs(timeframe, limit=limit, before=before, source=source)

    def get_run(self, run_id: int) -> Optional[Dict[str, Any]]:
        if self.history is None:
            return None
        return self.history.get_run(run_id)

    # ------------------------------------------------------------------
    # Helpers

    def _publish(self, message: Dict[str, Any]) -> None:
        if self.broadcaster is not None:
            self.broadcaster.publish(message)

    def _report(self, location: str, err: Any) -> None:
        if self.reporter is None:
            return
        try:
            self.reporter.report(location, err)
        except Exception:
            logger.warning("Error reporter failed for %s", location, exc_info=True)

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Task %s failed", task.get_name(), exc_info=exc)

    def _start_scheduler(self) -> None:
        if self.scheduler is None:
            return
        seed = self.state.last_runs(RunSource.LIVE)
        self.scheduler.start(seed)

    # ------------------------------------------------------------------
    # Mode transitions

    def paper_on(self) -> bool:
        if self._mode is Mode.PAPER:
            return False
        self._mode = Mode.PAPER
        if self.scheduler is not None:
            self.scheduler.stop()
        monitoring.set_mode(self._mode)
        logger.info("MODE_CHANGE %s", {"mode": self._mode.value})
        self._publish({"type": "mode", "mode": self._mode.value})
        return True

    def paper_off(self) -> bool:
        if self._mode is Mode.LIVE:
            return False
        self._mode = Mode.LIVE
        self._start_scheduler()
        monitoring.set_mode(self._mode)
        logger.info("MODE_CHANGE %s", {"mode": self._mode.value})
        self._publish({"type": "mode", "mode": self._mode.value})
        return True

    # ------------------------------------------------------------------
    # Trigger wiring

    def _on_trigger(self, tf: Timeframe, boundary: int) -> None:
        monitoring.record_trigger(tf)
        if self._mode is not Mode.LIVE or self._shutting_down:
            monitoring.record_dropped_trigger("scheduler")
            logger.debug("Scheduler trigger for %s dropped in %s mode", tf.value, self._mode.value)
            return
        self._spawn(self._live_run(tf, boundary), f"live-run-{tf.value}-{boundary}")

    async def _live_run(self, tf: Timeframe, boundary: int) -> Optional[RunOutcome]:
        if self.market_data is None:
            logger.error("No market data source configured for live runs")
            return None
        try:
            candles = await asyncio.to_thread(self.market_data.get_candles, tf, self.candle_limit)
        except Exception as exc:
            logger.error("Live candle fetch failed for %s: %s", tf.value, exc)
            self._report(f"liveScheduler/{tf.value}", exc)
            return None
        return await self.run_model(tf, boundary, candles, RunSource.LIVE)

    async def trigger_run(self, tf: Timeframe | str) -> Optional[RunOutcome]:
        """Force a live run of the current boundary of ``tf``.

        Raises ``ValueError`` for unknown timeframes and :class:`ModeError`
        outside live mode.
        """
        t = parse_timeframe(tf)
        if self._mode is not Mode.LIVE:
            raise ModeError("Manual trigger is only available in live mode")
        boundary = clock.boundary_ms(t, self._time_fn())
        if self.scheduler is not None:
            self.scheduler.mark_fired(t, boundary)
        logger.info("MANUAL_TRIGGER %s", {"timeframe": t.value, "boundary": boundary})
        return await self._live_run(t, boundary)

    async def handle_event(self, event: UpstreamEvent) -> None:
        etype = event.etype
        if etype is EventType.CANDLES:
            if self._mode is not Mode.PAPER:
                monitoring.record_dropped_trigger("upstream")
                logger.debug("Upstream candles for %s dropped in live mode", event.timeframe)
                return
            tf = parse_timeframe(event.timeframe)
            boundary = int(event.boundary or 0)
            self._spawn(
                self.run_model(tf, boundary, event.candles, RunSource.PAPER),
                f"paper-run-{tf.value}-{boundary}",
            )
        elif etype is EventType.PAPER_ON:
            self.paper_on()
        elif etype is EventType.PAPER_OFF:
            self.paper_off()
        elif etype is EventType.LOOP_RESET:
            await self.reset_paper_loop()
        elif etype is EventType.DISCONNECTED:
            self._publish({"type": "upstream_disconnected"})
        else:
            logger.info("Upstream event: %s", etype.value)

    async def reset_paper_loop(self) -> bool:
        if self._mode is not Mode.PAPER:
            logger.debug("Paper loop reset ignored in live mode")
            return False
        logger.info("Paper loop reset detected, purging paper runs")
        if self.history is not None:
            try:
                await asyncio.to_thread(self.history.delete_paper_runs)
            except (sqlite3.Error, OSError) as exc:
                logger.error("Failed to purge paper runs: %s", exc)
                self._report("deletePaperRuns", exc)
        await asyncio.to_thread(self.state.clear, RunSource.PAPER)
        return True

    async def _consume(self) -> None:
        while True:
            event = await self.bus.get()
            if event is None:
                break
            try:
                await self.handle_event(event)
            except Exception:
                logger.exception("Failed to handle upstream event %s", event.etype)

    # ------------------------------------------------------------------
    # Commit protocol

    async def run_model(
        self,
        tf: Timeframe | str,
        boundary: int,
        candles: Sequence[Candle | Dict[str, Any]],
        source: RunSource | str,
    ) -> Optional[RunOutcome]:
        t = parse_timeframe(tf)
        src = RunSource(source)
        bars = coerce_candles(candles)
        if not bars:
            logger.warning(
                "RUN_SKIPPED %s",
                {"timeframe": t.value, "boundary": int(boundary), "reason": "no candles"},
            )
            monitoring.record_run(t, src, "skipped")
            return None
        key: RunKey = (t, int(boundary), src)
        if key in self._inflight:
            logger.info(
                "RUN_DUPLICATE %s",
                {"timeframe": t.value, "boundary": int(boundary), "source": src.value},
            )
            return None
        self._inflight.add(key)
        try:
            return await self._run(t, int(boundary), bars, src)
        finally:
            self._inflight.discard(key)

    async def _run(
        self, tf: Timeframe, boundary: int, candles: Sequence[Candle], source: RunSource
    ) -> Optional[RunOutcome]:
        cfg = self.configs.snapshot(tf)
        payload = build_input(candles, cfg)
        logger.info(
            "RUN_START %s",
            {
                "timeframe": tf.value,
                "boundary": boundary,
                "at": clock.format_utc(boundary),
                "source": source.value,
                "candles": len(candles),
                "formula": cfg.formula,
            },
        )
        try:
            result = await self.runner.execute(payload)
        except RunnerError as exc:
            logger.error(
                "RUN_FAILED %s",
                {"timeframe": tf.value, "boundary": boundary, "kind": exc.kind, "error": str(exc)},
            )
            monitoring.record_runner_failure(exc.kind)
            monitoring.record_run(tf, source, "runner_error")
            self._report(f"runModel/{tf.value}", exc)
            return None
        monitoring.observe_runner_duration(tf, result.duration_ms)

        output = dict(result.output)
        output["prices"] = list(payload["signal"])
        envelope = RunEnvelope(
            timeframe=tf,
            boundary=boundary,
            source=source,
            config=cfg.model_dump(),
            output=output,
        )

        try:
            ack_id = await self.oracle.submit(envelope)
        except Exception as exc:
            logger.error("Oracle submission raised for %s: %s", tf.value, exc)
            ack_id = None

        if ack_id is not None:
            await self._commit(envelope, ack_id)
            monitoring.record_run(tf, source, "acked")
        else:
            logger.warning(
                "RUN_UNACKNOWLEDGED %s",
                {"timeframe": tf.value, "boundary": boundary, "source": source.value},
            )
            monitoring.record_run(tf, source, "unacked")
            self._report(
                f"oracle/{tf.value}",
                RuntimeError(f"Run for {tf.value} at {clock.format_utc(boundary)} not acknowledged"),
            )

        self._publish(
            {
                "type": "run",
                "timeframe": tf.value,
                "boundaryTs": boundary,
                "source": source.value,
                "runId": envelope.run_id,
                "id": ack_id,
                "output": dict(envelope.output),
            }
        )
        logger.info(
            "RUN_COMPLETE %s",
            {
                "timeframe": tf.value,
                "boundary": boundary,
                "source": source.value,
                "run_id": envelope.run_id,
                "ack_id": ack_id,
                "duration_ms": result.duration_ms,
            },
        )
        return RunOutcome(envelope=envelope, ack_id=ack_id, duration_ms=result.duration_ms)

    async def _commit(self, envelope: RunEnvelope, ack_id: Any) -> None:
        tf, boundary, source = envelope.timeframe, envelope.boundary, envelope.source
        if await asyncio.to_thread(self.state.commit, source, tf, boundary):
            monitoring.set_last_run(tf, source, boundary)
        else:
            logger.info(
                "Stale commit ignored %s",
                {"timeframe": tf.value, "boundary": boundary, "source": source.value},
            )
        if source is RunSource.LIVE and self.scheduler is not None:
            self.scheduler.mark_fired(tf, boundary)
        if self.history is not None:
            try:
                await asyncio.to_thread(self.history.insert_run, envelope, ack_id)
            except (sqlite3.Error, OSError) as exc:
                logger.error("History insert failed for %s: %s", tf.value, exc)
                self._report(f"insertRun/{tf.value}", exc)

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        if self.broadcaster is not None:
            await self.broadcaster.start()
        await asyncio.to_thread(self.state.load)
        for src in (RunSource.LIVE, RunSource.PAPER):
            for tf, ts in self.state.last_runs(src).items():
                monitoring.set_last_run(tf, src, ts)
        monitoring.set_mode(self._mode)
        self._consumer = asyncio.get_running_loop().create_task(self._consume())
        if self.upstream is not None:
            self.upstream.connect()
        if self._mode is Mode.LIVE:
            self._start_scheduler()
        logger.info("Orchestrator ready %s", self.status())

    async def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Orchestrator shutting down")
        if self.scheduler is not None:
            self.scheduler.stop()
        if self.upstream is not None:
            await self.upstream.close()
        self.bus.close()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            try:
                await consumer
            except asyncio.CancelledError:
                pass
        if self.broadcaster is not None:
            await self.broadcaster.close()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        for client in (self.oracle, self.market_data):
            close = getattr(client, "close", None)
            if callable(close):
                close()
        logger.info("Orchestrator shutdown complete")


__all__ = ["ModeError", "RunOutcome", "Orchestrator"]
