"""
Signal handling for long-running polling workers.
"""

import asyncio
import signal
from typing import Protocol

from app.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)


class StoppableWorker(Protocol):
    async def run(self) -> None: ...

    async def stop(self) -> None: ...


async def run_until_signalled(worker: StoppableWorker) -> None:
    """
    Run a worker and translate SIGTERM/SIGINT into a cooperative stop().

    The container runtime sends SIGTERM on deploys; stop() lets the batch in
    flight finish instead of abandoning claimed rows.
    """
    loop = asyncio.get_running_loop()
    stop_tasks: list[asyncio.Task] = []

    def _request_stop(sig: signal.Signals) -> None:
        logger.info("Shutdown signal received", signal=sig.name)
        stop_tasks.append(loop.create_task(worker.stop()))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except NotImplementedError:
            # Windows event loops have no signal handler support
            pass

    try:
        await worker.run()
        if stop_tasks:
            await asyncio.gather(*stop_tasks)
    finally:
        for sig in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass
