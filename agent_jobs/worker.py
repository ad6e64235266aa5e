"""Worker process entry point."""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional

from prometheus_client import start_http_server

from agent_jobs.db.session import AsyncSessionLocal, engine, init_models
from agent_jobs.domain.errors import FatalWorkerError
from agent_jobs.handlers.registry import load_handler_modules, registry
from agent_jobs.scheduler.loop import SchedulerLoop
from agent_jobs.settings import settings

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FATAL = 1


def configure_logging(level: str = settings.LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def install_signal_handlers(loop: SchedulerLoop) -> None:
    event_loop = asyncio.get_running_loop()

    def _on_signal(sig: signal.Signals):
        logger.info("%s received, draining...", sig.name)
        loop.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            event_loop.add_signal_handler(sig, _on_signal, sig)
        except NotImplementedError:
            # Windows support
            pass


async def run_worker(create_tables: bool = False, once: bool = False) -> None:
    if create_tables:
        await init_models(engine)

    scheduler = SchedulerLoop(settings=settings, session_factory=AsyncSessionLocal, registry=registry)
    try:
        if once:
            await scheduler.events.start()
            try:
                await scheduler.iterate()
            finally:
                await scheduler.events.stop()
            return

        install_signal_handlers(scheduler)
        await scheduler.run()
    finally:
        await engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run an agent job worker.")
    parser.add_argument("--create-tables", action="store_true", help="create missing tables before starting")
    parser.add_argument("--once", action="store_true", help="run a single loop iteration and exit")
    args = parser.parse_args(argv)

    configure_logging()
    load_handler_modules(settings.WORKER_HANDLER_MODULES)
    if not len(registry):
        logger.warning("No job handlers registered; every claimed job will fail as unknown")

    if settings.WORKER_METRICS_PORT:
        start_http_server(settings.WORKER_METRICS_PORT)
        logger.info("Metrics exposed on :%d", settings.WORKER_METRICS_PORT)

    try:
        asyncio.run(run_worker(create_tables=args.create_tables, once=args.once))
    except FatalWorkerError as e:
        # Supervisor restarts us
        logger.critical("Worker exiting: %s", e.reason)
        return EXIT_FATAL
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
