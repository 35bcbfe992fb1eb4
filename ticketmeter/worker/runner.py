"""Maintenance worker loop: runs the periodic billing jobs on an interval."""

from __future__ import annotations

import asyncio
import signal
from typing import TYPE_CHECKING

import structlog

from ticketmeter.worker.jobs import DEFAULT_JOBS

if TYPE_CHECKING:
    from ticketmeter.billing.services import BillingServices
    from ticketmeter.worker.jobs import Job

logger = structlog.get_logger(__name__)


class MaintenanceWorker:
    """Runs every job once per interval until stopped.

    A failing job is logged and the remaining jobs still run; the loop
    itself never exits on a job error. Handles SIGTERM/SIGINT for
    graceful shutdown.
    """

    def __init__(
        self,
        services: BillingServices,
        interval: float = 3600.0,
        jobs: dict[str, Job] | None = None,
    ) -> None:
        self._services = services
        self._interval = interval
        self._jobs = dict(DEFAULT_JOBS) if jobs is None else jobs
        self._stop = asyncio.Event()

    @property
    def running(self) -> bool:
        return not self._stop.is_set()

    async def run_once(self) -> dict[str, int | None]:
        """Run each job once; a failed job reports ``None``."""
        results: dict[str, int | None] = {}
        for name, job in self._jobs.items():
            try:
                results[name] = await job(self._services)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("worker_job_failed", job=name)
                results[name] = None
        return results

    async def run(self, install_signal_handlers: bool = True) -> None:
        """Main loop."""
        if install_signal_handlers:
            loop = asyncio.get_running_loop()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.add_signal_handler(sig, self.stop)

        logger.info("worker_started", interval=self._interval, jobs=sorted(self._jobs))

        while self.running:
            try:
                results = await self.run_once()
                logger.info("worker_cycle_done", results=results)
                await asyncio.wait_for(self._stop.wait(), timeout=self._interval)
            except TimeoutError:
                continue
            except asyncio.CancelledError:
                break

        logger.info("worker_stopped")

    def stop(self) -> None:
        """Signal handler for graceful shutdown."""
        logger.info("worker_shutdown_requested")
        self._stop.set()
