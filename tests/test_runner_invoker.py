import asyncio
import json
import os
import sys
import textwrap
import time
from pathlib import Path

import pytest

sys.path.append(str(Path(__file__).resolve().parents[1]))

from core_config import ModelConfig
from core_models import Candle
from runner_invoker import (
    RunnerExitError,
    RunnerInvoker,
    RunnerOutputError,
    RunnerSpawnError,
    RunnerTimeoutError,
    build_input,
)


def _script(tmp_path, body, name="runner"):
    p = tmp_path / name
    p.write_text(f"#!{sys.executable}\n" + textwrap.dedent(body))
    p.chmod(0o755)
    return str(p)


def test_execute_returns_parsed_output(tmp_path):
    path = _script(
        tmp_path,
        """
        import json, sys
        data = json.load(sys.stdin)
        json.dump({"runId": 7, "series": data["signal"], "echo": data}, sys.stdout)
        """,
    )
    payload = {
        "formula": "X",
        "signal": [1, 2, 3],
        "options": {"ma_type": "ema", "slow_length": 2, "fast_length": 1, "signal_smoothing": 0},
    }
    res = asyncio.run(RunnerInvoker(path, timeout_s=10).execute(payload))
    assert res.output["runId"] == 7
    assert res.output["series"] == [1, 2, 3]
    assert res.output["echo"] == payload
    assert res.duration_ms >= 0


def test_execute_passes_config_dir(tmp_path):
    path = _script(
        tmp_path,
        """
        import json, os, sys
        sys.stdin.read()
        json.dump({"runId": 1, "dir": os.environ.get("RUNNER_CONFIG_DIR")}, sys.stdout)
        """,
    )
    inv = RunnerInvoker(path, timeout_s=10, config_dir=str(tmp_path))
    res = asyncio.run(inv.execute({}))
    assert res.output["dir"] == str(tmp_path)


def test_nonzero_exit_carries_code_and_stderr(tmp_path):
    path = _script(
        tmp_path,
        """
        import sys
        sys.stdin.read()
        sys.stderr.write("boom: bad formula")
        sys.exit(3)
        """,
    )
    with pytest.raises(RunnerExitError) as ei:
        asyncio.run(RunnerInvoker(path, timeout_s=10).execute({}))
    assert ei.value.returncode == 3
    assert "boom: bad formula" in ei.value.stderr
    assert ei.value.kind == "exit"


@pytest.mark.parametrize("stdout", ["not json", "[1, 2, 3]", ""])
def test_malformed_output_is_output_error(tmp_path, stdout):
    path = _script(
        tmp_path,
        f"""
        import sys
        sys.stdin.read()
        sys.stdout.write({stdout!r})
        """,
    )
    with pytest.raises(RunnerOutputError):
        asyncio.run(RunnerInvoker(path, timeout_s=10).execute({}))


def test_timeout_kills_process(tmp_path):
    pid_file = tmp_path / "pid"
    path = _script(
        tmp_path,
        f"""
        import os, time
        with open({str(pid_file)!r}, "w") as f:
            f.write(str(os.getpid()))
        time.sleep(30)
        """,
    )
    timeout = 1.0
    start = time.monotonic()
    with pytest.raises(RunnerTimeoutError):
        asyncio.run(RunnerInvoker(path, timeout_s=timeout).execute({}))
    assert time.monotonic() - start < timeout + 3.0
    pid = int(pid_file.read_text())
    with pytest.raises(ProcessLookupError):
        os.kill(pid, 0)


def test_missing_binary_is_spawn_error(tmp_path):
    with pytest.raises(RunnerSpawnError):
        asyncio.run(RunnerInvoker(str(tmp_path / "nope"), timeout_s=5).execute({}))


def test_non_executable_is_spawn_error(tmp_path):
    p = tmp_path / "runner"
    p.write_text("#!/bin/sh\nexit 0\n")
    p.chmod(0o644)
    with pytest.raises(RunnerSpawnError):
        asyncio.run(RunnerInvoker(str(p), timeout_s=5).execute({}))


def test_build_input_extracts_price_field():
    candles = [
        Candle(timestamp=1, open=1, high=5, low=0, close=2),
        {"timestamp": 2, "open": "2", "high": "6.5", "low": "1", "close": "3"},
    ]
    cfg = ModelConfig(
        formula="X", source="high", ma_type="ma", slow_length=2, fast_length=1, signal_smoothing=3
    )
    payload = build_input(candles, cfg)
    assert payload == {
        "formula": "X",
        "signal": [5.0, 6.5],
        "options": {"ma_type": "ma", "slow_length": 2, "fast_length": 1, "signal_smoothing": 3},
        "trace": False,
    }
    json.dumps(payload)
