"""
Continuous-sync daemon.

Runs as: python -m vwsync.sync.daemon  (or ``vwsync daemon``)

Startup closes out interrupted runs, then a pass runs every
SYNC__SYNCINTERVALSECONDS until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys

from vwsync.config import Config, get_config
from vwsync.db.connection import close_pool

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"


def setup_logging(level: int | str = logging.INFO) -> None:
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("kubernetes").setLevel(logging.WARNING)


def build_coordinator(config: Config):
    """Wire the production vault, gateway and store."""
    from vwsync.sync.coordinator import RunCoordinator
    from vwsync.sync.gateway import KubernetesSecretGateway
    from vwsync.sync.store import PostgresStateStore
    from vwsync.sync.vault import BitwardenCli

    timeout = config.sync.timeout_seconds
    return RunCoordinator(
        vault=BitwardenCli(config.vault, timeout=timeout),
        gateway=KubernetesSecretGateway(config.kubernetes, timeout=timeout),
        store=PostgresStateStore(),
        config=config,
    )


async def main(config: Config | None = None, coordinator=None) -> int:
    """Recover, then loop until a stop signal. Returns the number of passes."""
    config = config or get_config()
    logger.info("Starting vaultwarden-k8s-sync daemon...")

    problems = config.validate()
    if problems:
        for p in problems:
            logger.error("Config: %s", p)
        raise SystemExit(2)

    coordinator = coordinator or build_coordinator(config)
    loop = asyncio.get_running_loop()

    # Crash artifacts must be closed out before the first pass
    recovered = await loop.run_in_executor(None, coordinator.recover)
    if recovered:
        logger.info("Startup: marked %d interrupted run(s) as Failed", len(recovered))

    stop = asyncio.Event()
    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            logger.debug("Signal handler for %s not installed", sig)

    logger.info(
        "Interval: %ds | dry-run: %s | orphan cleanup: %s",
        config.sync.interval_seconds,
        config.sync.dry_run,
        config.sync.delete_orphans,
    )
    try:
        passes = await coordinator.run_continuous(stop, config.sync.interval_seconds)
    finally:
        close_pool()
    logger.info("Daemon stopped")
    return passes


def run() -> None:
    """Entry point for python -m vwsync.sync.daemon"""
    config = get_config()
    setup_logging(config.log_level_value)
    try:
        asyncio.run(main(config))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        logger.error("Daemon crashed: %s", e, exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    run()
