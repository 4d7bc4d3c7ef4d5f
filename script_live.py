"""Run the multi-timeframe boundary runner using :mod:`orchestrator`."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from contextlib import suppress
from pathlib import Path

from core_config import AppConfig, StateConfig, load_config
from orchestrator import Orchestrator
from services import monitoring

logger = logging.getLogger(__name__)


def _reset_state_files(state_cfg: StateConfig) -> None:
    p = Path(state_cfg.path)
    with suppress(OSError):
        p.unlink()
    for backup in p.parent.glob(f"{p.name}.bak*"):
        with suppress(OSError):
            backup.unlink()
    lock_path = Path(state_cfg.lock_path) if state_cfg.lock_path else p.with_suffix(p.suffix + ".lock")
    with suppress(OSError):
        lock_path.unlink()


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def run(cfg: AppConfig) -> None:
    orch = Orchestrator.from_config(cfg)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop.set)
    try:
        await orch.start()
    except OSError:
        logger.exception("Startup failed")
        await orch.shutdown()
        raise
    await stop.wait()
    logger.info("Signal received, shutting down")
    await orch.shutdown()


def main() -> None:
    p = argparse.ArgumentParser(
        description="Run the multi-timeframe model runner (live scheduler + paper upstream).",
    )
    p.add_argument(
        "--config",
        default="configs/config_live.yaml",
        help="Path to the YAML run config",
    )
    p.add_argument(
        "--reset-state",
        action="store_true",
        help="Delete durable last-run state before starting",
    )
    args = p.parse_args()

    cfg = load_config(args.config if Path(args.config).exists() else None)
    _configure_logging(cfg.log_level)
    if args.config and not Path(args.config).exists():
        logger.warning("Config %s not found, using defaults", args.config)

    if args.reset_state:
        _reset_state_files(cfg.state)
    Path(cfg.state.path).parent.mkdir(parents=True, exist_ok=True)

    monitoring.start_exporter(cfg.monitoring)
    asyncio.run(run(cfg))


if __name__ == "__main__":
    main()
