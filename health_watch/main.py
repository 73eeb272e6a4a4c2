from __future__ import annotations

import argparse
import asyncio
import logging
import os
import signal
from pathlib import Path

from health_watch.config import ConfigError, FileConfigProvider
from health_watch.scheduler import MonitorScheduler


LOGGER = logging.getLogger("health-watch")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()

    def _stop(signame: str) -> None:
        LOGGER.info("Caught %s, exiting", signame)
        stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _stop, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops: KeyboardInterrupt still ends asyncio.run().
            pass


def _remove_signal_handlers() -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.remove_signal_handler(sig)
        except (NotImplementedError, RuntimeError):
            pass


async def run_loop(config_path: Path, once: bool) -> int:
    try:
        provider = FileConfigProvider(config_path)
    except ConfigError as exc:
        LOGGER.error("Config load error path=%s error=%s", config_path, exc)
        return 1

    scheduler = MonitorScheduler(provider)
    config = scheduler.config
    LOGGER.info(
        "Starting health monitor targets=%s interval_seconds=%s verify_tls=%s",
        [t.name for t in config.targets],
        config.interval_seconds,
        config.verify_tls,
    )

    try:
        if once:
            await scheduler.run_cycle()
            return 0

        stop_event = asyncio.Event()
        _install_signal_handlers(stop_event)
        runner = asyncio.create_task(scheduler.run_forever(stop_event))
        stopper = asyncio.create_task(stop_event.wait())
        done, _ = await asyncio.wait({runner, stopper}, return_when=asyncio.FIRST_COMPLETED)
        for task in (runner, stopper):
            if task not in done:
                task.cancel()
        await asyncio.gather(runner, stopper, return_exceptions=True)
        if runner in done:
            runner.result()
        return 0
    finally:
        if not once:
            _remove_signal_handlers()
        await scheduler.aclose()


def main() -> int:
    parser = argparse.ArgumentParser(description="Health endpoint monitor with webhook alerts")
    parser.add_argument(
        "--config",
        default=os.getenv("HEALTH_WATCH_CONFIG") or str(Path(__file__).with_name("config.yaml")),
        help="Path to YAML (or JSON) config",
    )
    parser.add_argument("--once", action="store_true", help="Run one check cycle and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, str(args.log_level).upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    # The webhook URL is a secret and httpx logs request URLs at INFO.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return asyncio.run(run_loop(Path(args.config), once=bool(args.once)))


if __name__ == "__main__":
    raise SystemExit(main())
