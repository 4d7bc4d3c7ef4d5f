import asyncio
import logging
import sys
from pathlib import Path

sys.path.append(str(Path(__file__).resolve().parents[1]))

import clock
from boundary_scheduler import BoundaryScheduler
from core_models import ALL_TIMEFRAMES, TF_MS, Timeframe

H4 = 14_400_000


def test_boundary_is_idempotent_and_monotonic():
    for tf in ALL_TIMEFRAMES:
        ms = TF_MS[tf]
        prev = None
        for now in range(0, ms * 3, ms // 7):
            b = clock.boundary_ms(tf, now)
            assert b <= now < b + ms
            assert b % ms == 0
            assert clock.boundary_ms(tf, b) == b
            if prev is not None:
                assert b >= prev
            prev = b


def test_check_fires_once_per_boundary():
    now = [H4 * 5]
    fired = []
    sched = BoundaryScheduler(
        ["4h"], listener=lambda tf, b: fired.append((tf, b)), time_fn=lambda: now[0]
    )

    assert sched.check() == [(Timeframe.H4, H4 * 5)]
    # same instant and later within the interval: nothing new
    assert sched.check() == []
    now[0] += 60_000
    assert sched.check() == []

    now[0] = H4 * 6
    assert sched.check() == [(Timeframe.H4, H4 * 6)]
    assert fired == [(Timeframe.H4, H4 * 5), (Timeframe.H4, H4 * 6)]


def test_gap_fires_only_current_boundary():
    now = [H4 * 5]
    fired = []
    sched = BoundaryScheduler(
        ["4h"], listener=lambda tf, b: fired.append(b), time_fn=lambda: now[0]
    )
    sched.check()
    now[0] = H4 * 9 + 123
    sched.check()
    assert fired == [H4 * 5, H4 * 9]


def test_mark_fired_suppresses_and_never_moves_back():
    now = [H4 * 5]
    fired = []
    sched = BoundaryScheduler(
        ["4h"], listener=lambda tf, b: fired.append(b), time_fn=lambda: now[0]
    )
    sched.mark_fired("4h", H4 * 5)
    assert sched.check() == []
    sched.mark_fired(Timeframe.H4, H4 * 2)
    assert sched.last_fired[Timeframe.H4] == H4 * 5
    assert fired == []


def test_listener_error_does_not_block_other_timeframes(caplog):
    now = H4 * 5
    seen = []

    def listener(tf, boundary):
        if tf is Timeframe.M15:
            raise RuntimeError("boom")
        seen.append(tf)

    sched = BoundaryScheduler(["15m", "4h"], listener=listener, time_fn=lambda: now)
    with caplog.at_level(logging.ERROR):
        fired = sched.check()
    assert [tf for tf, _ in fired] == [Timeframe.M15, Timeframe.H4]
    assert seen == [Timeframe.H4]
    assert "Trigger listener failed for 15m" in caplog.text


def test_start_seeds_state_and_checks_immediately():
    fired = []

    async def run():
        sched = BoundaryScheduler(
            ["4h", "1d"],
            listener=lambda tf, b: fired.append((tf, b)),
            check_interval_s=3600,
            time_fn=lambda: H4 * 5,
        )
        # 4h already completed at the current boundary; 1d has no record
        sched.start({"4h": H4 * 5})
        assert sched.running
        sched.stop()
        sched.stop()
        assert not sched.running

    asyncio.run(run())
    assert fired == [(Timeframe.D1, clock.boundary_ms("1d", H4 * 5))]


def test_restart_fires_only_after_seeded_boundary():
    fired = []
    now = [H4 * 5 + 1000]

    async def run():
        sched = BoundaryScheduler(
            ["4h"],
            listener=lambda tf, b: fired.append(b),
            check_interval_s=0.01,
            time_fn=lambda: now[0],
        )
        sched.start({"4h": H4 * 5})
        await asyncio.sleep(0.05)
        assert fired == []
        now[0] = H4 * 6
        await asyncio.sleep(0.05)
        sched.stop()

    asyncio.run(run())
    assert fired == [H4 * 6]


def test_restart_discards_previous_last_fired():
    fired = []

    async def run():
        sched = BoundaryScheduler(
            ["4h"],
            listener=lambda tf, b: fired.append(b),
            check_interval_s=3600,
            time_fn=lambda: H4 * 6,
        )
        sched.start({})
        sched.stop()
        # reseeding from an older persisted value makes the boundary eligible again
        sched.start({"4h": H4 * 5})
        sched.stop()

    asyncio.run(run())
    assert fired == [H4 * 6, H4 * 6]
