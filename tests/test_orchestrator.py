import asyncio
import json
import logging
import sys
import threading
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from boundary_scheduler import BoundaryScheduler
from core_config import ModelConfig, ModelConfigRegistry
from core_events import EventType, UpstreamEvent
from core_models import ALL_TIMEFRAMES, Candle, Mode, RunSource, Timeframe
from orchestrator import ModeError, Orchestrator
from runner_invoker import RunnerTimeoutError, RunResult
from services.run_history import RunHistory
from services.state_storage import LastRunStore

H4 = 14_400_000
NOW = H4 * 5


def _candles(n=3):
    return [
        Candle(timestamp=i, open=float(i), high=float(i) + 1, low=float(i) - 1, close=float(i) + 0.5)
        for i in range(1, n + 1)
    ]


class FakeRunner:
    def __init__(self, output=None, error=None, gate=None):
        self.output = output if output is not None else {"runId": 7, "series": [0.1]}
        self.error = error
        self.gate = gate
        self.calls = []

    async def execute(self, payload):
        self.calls.append(payload)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return RunResult(output=dict(self.output), duration_ms=5)


class FakeOracle:
    def __init__(self, ack_id=None):
        self.ack_id = ack_id
        self.submitted = []

    async def submit(self, envelope):
        self.submitted.append(envelope)
        return self.ack_id


class FakeBroadcaster:
    def __init__(self):
        self.messages = []
        self.started = False
        self.closed = False

    async def start(self):
        self.started = True

    def publish(self, message):
        self.messages.append(dict(message))

    async def close(self):
        self.closed = True


class FakeReporter:
    def __init__(self):
        self.reports = []

    def report(self, location, err):
        self.reports.append((location, err))
        return True


class FakeMarket:
    def __init__(self, candles=None):
        self.candles = candles if candles is not None else _candles()
        self.calls = []

    def get_candles(self, tf, limit):
        self.calls.append((tf, limit))
        return list(self.candles)


def _make(tmp_path, *, runner=None, oracle=None, now=NOW, state=None, timeframes=("4h",)):
    registry = ModelConfigRegistry({tf: ModelConfig() for tf in ALL_TIMEFRAMES})
    return Orchestrator(
        runner=runner or FakeRunner(),
        configs=registry,
        state=state or LastRunStore(tmp_path / "state" / "last_run.json"),
        oracle=oracle or FakeOracle(ack_id=42),
        scheduler=BoundaryScheduler(list(timeframes), check_interval_s=3600, time_fn=lambda: now),
        broadcaster=FakeBroadcaster(),
        history=RunHistory(tmp_path / "history.sqlite", time_fn=lambda: now),
        market_data=FakeMarket(),
        reporter=FakeReporter(),
        time_fn=lambda: now,
    )


def test_empty_candles_skip_run(tmp_path, caplog):
    orch = _make(tmp_path)
    with caplog.at_level(logging.WARNING):
        res = asyncio.run(orch.run_model("4h", NOW, [], "live"))
    assert res is None
    assert orch.runner.calls == []
    assert orch.oracle.submitted == []
    assert orch.state.get("live", "4h") is None
    assert orch.broadcaster.messages == []
    assert "RUN_SKIPPED" in caplog.text


def test_acknowledged_run_commits_boundary(tmp_path):
    orch = _make(tmp_path)
    res = asyncio.run(orch.run_model(Timeframe.H4, NOW, _candles(), RunSource.LIVE))

    assert res.acknowledged and res.ack_id == 42
    assert orch.runner.calls[0]["signal"] == [1.5, 2.5, 3.5]
    env = orch.oracle.submitted[0]
    assert env.output["prices"] == [1.5, 2.5, 3.5]
    assert env.run_id == 7
    assert env.to_payload()["boundaryTs"] == NOW

    assert orch.state.get("live", "4h") == NOW
    on_disk = json.loads((tmp_path / "state" / "last_run.json").read_text())
    assert on_disk == {"live": {"4h": NOW}, "paper": {}}
    assert orch.scheduler.last_fired[Timeframe.H4] == NOW

    msg = orch.broadcaster.messages[-1]
    assert msg["type"] == "run" and msg["id"] == 42 and msg["boundaryTs"] == NOW
    page = orch.history_page("4h")
    assert len(page["runs"]) == 1 and page["runs"][0]["oracle_id"] == "42"
    assert orch.reporter.reports == []


def test_unacknowledged_run_keeps_previous_boundary(tmp_path):
    state = LastRunStore(tmp_path / "last_run.json")
    state.commit("live", "4h", NOW - H4)
    orch = _make(tmp_path, oracle=FakeOracle(ack_id=None), state=state)

    res = asyncio.run(orch.run_model("4h", NOW, _candles(), "live"))

    assert res is not None and not res.acknowledged
    assert orch.state.get("live", "4h") == NOW - H4
    assert json.loads((tmp_path / "last_run.json").read_text())["live"] == {"4h": NOW - H4}
    msg = orch.broadcaster.messages[-1]
    assert msg["type"] == "run" and msg["id"] is None
    assert [loc for loc, _ in orch.reporter.reports] == ["oracle/4h"]
    assert orch.history_page()["runs"] == []


def test_oracle_exception_is_unacknowledged(tmp_path):
    class Boom:
        async def submit(self, envelope):
            raise ConnectionError("down")

    orch = _make(tmp_path, oracle=Boom())
    res = asyncio.run(orch.run_model("4h", NOW, _candles(), "live"))
    assert res.ack_id is None
    assert orch.state.get("live", "4h") is None


def test_runner_failure_is_reported_not_committed(tmp_path):
    orch = _make(tmp_path, runner=FakeRunner(error=RunnerTimeoutError(30)))
    res = asyncio.run(orch.run_model("4h", NOW, _candles(), "live"))
    assert res is None
    assert orch.oracle.submitted == []
    assert orch.broadcaster.messages == []
    assert orch.state.get("live", "4h") is None
    assert orch.reporter.reports[0][0] == "runModel/4h"


class ThreadRecordingStore(LastRunStore):
    def __init__(self, path):
        super().__init__(path)
        self.threads = {}

    def load(self):
        self.threads["load"] = threading.get_ident()
        return super().load()

    def commit(self, source, tf, boundary):
        self.threads["commit"] = threading.get_ident()
        return super().commit(source, tf, boundary)

    def clear(self, source):
        self.threads["clear"] = threading.get_ident()
        super().clear(source)


def test_state_file_io_runs_off_the_event_loop(tmp_path):
    store = ThreadRecordingStore(tmp_path / "last_run.json")

    async def run():
        orch = _make(tmp_path, state=store)
        await orch.start()
        await asyncio.gather(*orch._tasks)
        orch.paper_on()
        await orch.reset_paper_loop()
        await orch.shutdown()
        return threading.get_ident()

    loop_thread = asyncio.run(run())
    assert set(store.threads) == {"load", "commit", "clear"}
    assert loop_thread not in store.threads.values()
    assert store.get("live", "4h") == NOW


def test_state_write_failure_is_not_fatal(tmp_path, caplog):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    state = LastRunStore(blocker / "last_run.json")
    orch = _make(tmp_path, state=state)
    with caplog.at_level(logging.ERROR):
        res = asyncio.run(orch.run_model("4h", NOW, _candles(), "live"))
    assert res.acknowledged
    assert orch.state.get("live", "4h") == NOW
    assert "STATE_WRITE_FAILED" in caplog.text


def test_duplicate_inflight_run_is_skipped(tmp_path):
    async def run():
        gate = asyncio.Event()
        orch = _make(tmp_path, runner=FakeRunner(gate=gate))
        first = asyncio.create_task(orch.run_model("4h", NOW, _candles(), "paper"))
        await asyncio.sleep(0)
        second = await orch.run_model("4h", NOW, _candles(), "paper")
        gate.set()
        return orch, await first, second

    orch, first, second = asyncio.run(run())
    assert second is None
    assert first.acknowledged
    assert len(orch.runner.calls) == 1
    assert orch.state.get("paper", "4h") == NOW
    assert orch.state.get("live", "4h") is None


def test_mode_transitions_gate_triggers(tmp_path):
    async def run():
        orch = _make(tmp_path)
        assert orch.mode is Mode.LIVE
        assert orch.paper_off() is False

        assert orch.paper_on() is True
        assert orch.paper_on() is False
        assert not orch.scheduler.running
        # a scheduler trigger in paper mode produces no run
        orch.scheduler.check()
        assert orch._tasks == set()
        assert orch.market_data.calls == []

        # upstream candles are honoured in paper mode
        await orch.handle_event(
            UpstreamEvent(EventType.CANDLES, ts=0, timeframe="4h", boundary=NOW, candles=_candles())
        )
        await asyncio.gather(*orch._tasks)
        assert orch.state.get("paper", "4h") == NOW

        assert orch.paper_off() is True
        assert orch.scheduler.running
        # live candles are dropped from upstream
        await orch.handle_event(
            UpstreamEvent(EventType.CANDLES, ts=0, timeframe="4h", boundary=NOW + H4, candles=_candles())
        )
        await asyncio.gather(*orch._tasks)
        orch.scheduler.stop()
        return orch

    orch = asyncio.run(run())
    modes = [m["mode"] for m in orch.broadcaster.messages if m["type"] == "mode"]
    assert modes == ["paper", "live"]
    assert orch.state.get("paper", "4h") == NOW
    sources = [env.source for env in orch.oracle.submitted]
    # paper run plus the live catch-up run after returning to live mode
    assert sources == [RunSource.PAPER, RunSource.LIVE]


def test_paper_off_reseeds_from_durable_state(tmp_path):
    state = LastRunStore(tmp_path / "last_run.json")
    state.commit("live", "4h", NOW)

    async def run():
        orch = _make(tmp_path, state=state)
        orch.paper_on()
        orch.paper_off()
        await asyncio.sleep(0)
        orch.scheduler.stop()
        return orch

    orch = asyncio.run(run())
    assert orch.scheduler.last_fired[Timeframe.H4] == NOW
    assert orch.market_data.calls == []


def test_restart_seeds_scheduler_from_state_file(tmp_path):
    path = tmp_path / "last_run.json"
    path.write_text(json.dumps({"live": {"4h": NOW}, "paper": {}}))

    async def run(now):
        orch = _make(tmp_path, state=LastRunStore(path), now=now)
        await orch.start()
        assert orch.broadcaster.started
        await asyncio.gather(*orch._tasks)
        calls = list(orch.market_data.calls)
        await orch.shutdown()
        return orch, calls

    orch, calls = asyncio.run(run(NOW + 1000))
    assert calls == []
    assert orch.scheduler.last_fired[Timeframe.H4] == NOW

    orch, calls = asyncio.run(run(NOW + H4))
    assert calls == [(Timeframe.H4, 176)]
    assert json.loads(path.read_text())["live"]["4h"] == NOW + H4


def test_loop_reset_purges_paper_runs(tmp_path):
    async def run():
        orch = _make(tmp_path)
        await orch.run_model("4h", NOW, _candles(), "live")
        orch.paper_on()
        await orch.run_model("4h", NOW, _candles(), "paper")
        assert len(orch.history_page()["runs"]) == 2
        await orch.handle_event(UpstreamEvent(EventType.LOOP_RESET, ts=0))
        return orch

    orch = asyncio.run(run())
    assert orch.state.get("paper", "4h") is None
    assert orch.state.get("live", "4h") == NOW
    runs = orch.history_page()["runs"]
    assert [r["source"] for r in runs] == ["live"]


def test_loop_reset_ignored_in_live_mode(tmp_path):
    orch = _make(tmp_path)
    assert asyncio.run(orch.reset_paper_loop()) is False


def test_manual_trigger(tmp_path):
    orch = _make(tmp_path)
    res = asyncio.run(orch.trigger_run("4h"))
    assert res.acknowledged
    assert orch.market_data.calls == [(Timeframe.H4, 176)]
    assert orch.scheduler.last_fired[Timeframe.H4] == NOW

    with pytest.raises(ValueError):
        asyncio.run(orch.trigger_run("2h"))
    orch.paper_on()
    with pytest.raises(ModeError):
        asyncio.run(orch.trigger_run("4h"))


def test_disconnect_event_is_broadcast(tmp_path):
    orch = _make(tmp_path)
    asyncio.run(orch.handle_event(UpstreamEvent(EventType.DISCONNECTED, ts=0)))
    assert orch.broadcaster.messages == [{"type": "upstream_disconnected"}]


def test_status_and_config_surface(tmp_path):
    orch = _make(tmp_path)
    asyncio.run(orch.run_model("4h", NOW, _candles(), "live"))
    assert orch.status() == {
        "mode": "live",
        "last_run": {"4h": NOW},
        "upstream_connected": False,
    }
    updated = orch.patch_config("4h", {"maType": "ma", "slowLength": 50})
    assert updated["ma_type"] == "ma" and updated["slow_length"] == 50
    assert orch.get_config()["4h"]["slow_length"] == 50
    with pytest.raises(ValueError):
        orch.patch_config("4h", {"slow_length": 0})

    asyncio.run(orch.run_model("4h", NOW + H4, _candles(), "live"))
    assert orch.runner.calls[-1]["options"]["ma_type"] == "ma"
    run_id = orch.history_page()["runs"][0]["id"]
    assert orch.get_run(run_id)["boundary_ts"] == NOW + H4


def test_shutdown_is_idempotent(tmp_path):
    async def run():
        orch = _make(tmp_path)
        await orch.start()
        await asyncio.gather(*orch._tasks)
        await orch.shutdown()
        await orch.shutdown()
        return orch

    orch = asyncio.run(run())
    assert orch.broadcaster.closed
    assert not orch.scheduler.running
    assert orch.bus.closed
