"""Invocation of the external computation binary.

The runner is spawned with no arguments, receives one JSON object on stdin
and must print one JSON object on stdout.  A hard wall-clock budget measured
from spawn applies; on expiry the child is killed and reaped and no partial
output is returned.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Sequence

from core_config import ModelConfig, RunnerConfig
from core_models import Candle, coerce_candles

logger = logging.getLogger(__name__)

_STDERR_TAIL = 2000


class RunnerError(RuntimeError):
    """Base class for failed runner invocations."""

    kind = "runner"


class RunnerSpawnError(RunnerError):
    kind = "spawn"


class RunnerTimeoutError(RunnerError):
    kind = "timeout"

    def __init__(self, timeout_s: float) -> None:
        super().__init__(f"Runner timed out after {timeout_s:g}s")
        self.timeout_s = timeout_s


class RunnerExitError(RunnerError):
    kind = "exit"

    def __init__(self, returncode: int, stderr: str) -> None:
        tail = stderr[-_STDERR_TAIL:]
        super().__init__(f"Runner exited with code {returncode}: {tail}")
        self.returncode = returncode
        self.stderr = stderr


class RunnerOutputError(RunnerError):
    kind = "output"

    def __init__(self, message: str, stdout: str = "") -> None:
        super().__init__(message)
        self.stdout = stdout


@dataclass(frozen=True)
class RunResult:
    output: Dict[str, Any]
    duration_ms: int


def build_input(candles: Sequence[Candle | Mapping[str, Any]], config: ModelConfig) -> Dict[str, Any]:
    """Runner stdin payload for ``candles`` under ``config``."""
    signal = [c.price(config.source) for c in coerce_candles(candles)]
    return {
        "formula": config.formula,
        "signal": signal,
        "options": {
            "ma_type": config.ma_type,
            "slow_length": int(config.slow_length),
            "fast_length": int(config.fast_length),
            "signal_smoothing": int(config.signal_smoothing),
        },
        "trace": bool(config.trace),
    }


class RunnerInvoker:
    """Run one computation pass per :meth:`execute` call; holds no run state."""

    def __init__(
        self,
        path: str,
        *,
        timeout_s: float = 30.0,
        config_dir: Optional[str] = None,
        config_dir_env: str = "RUNNER_CONFIG_DIR",
    ) -> None:
        self.path = path
        self.timeout_s = float(timeout_s)
        self.config_dir = config_dir
        self.config_dir_env = config_dir_env

    @classmethod
    def from_config(cls, cfg: RunnerConfig) -> "RunnerInvoker":
        return cls(
            cfg.path,
            timeout_s=cfg.timeout_s,
            config_dir=cfg.config_dir,
            config_dir_env=cfg.config_dir_env,
        )

    def _env(self) -> Dict[str, str]:
        env = dict(os.environ)
        if self.config_dir:
            env[self.config_dir_env] = self.config_dir
        return env

    async def execute(self, payload: Mapping[str, Any]) -> RunResult:
        data = (json.dumps(payload, separators=(",", ":")) + "\n").encode("utf-8")
        start = time.monotonic()
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=self._env(),
            )
        except OSError as exc:
            raise RunnerSpawnError(f"Failed to spawn runner {self.path!r}: {exc}") from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(
                proc.communicate(data), timeout=self.timeout_s
            )
        except asyncio.TimeoutError:
            await self._kill(proc)
            raise RunnerTimeoutError(self.timeout_s) from None
        except asyncio.CancelledError:
            await self._kill(proc)
            raise
        duration_ms = max(0, int((time.monotonic() - start) * 1000))

        stdout = stdout_b.decode("utf-8", errors="replace")
        stderr = stderr_b.decode("utf-8", errors="replace")
        if stderr.strip():
            logger.debug("Runner stderr: %s", stderr[-_STDERR_TAIL:])
        if proc.returncode != 0:
            raise RunnerExitError(int(proc.returncode or 0), stderr)
        try:
            output = json.loads(stdout)
        except ValueError as exc:
            raise RunnerOutputError(f"Runner output is not valid JSON: {exc}", stdout) from None
        if not isinstance(output, dict):
            raise RunnerOutputError("Runner output must be a JSON object", stdout)
        return RunResult(output=output, duration_ms=duration_ms)

    @staticmethod
    async def _kill(proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            try:
                proc.kill()
            except ProcessLookupError:
                pass
        await proc.wait()


__all__ = [
    "RunnerError",
    "RunnerSpawnError",
    "RunnerTimeoutError",
    "RunnerExitError",
    "RunnerOutputError",
    "RunResult",
    "RunnerInvoker",
    "build_input",
]
