"""CLI entry point for the maintenance worker."""

from __future__ import annotations

import asyncio

from ticketmeter.billing.services import build_services
from ticketmeter.config.logging import setup_logging
from ticketmeter.config.settings import get_settings
from ticketmeter.storage.database import get_engine
from ticketmeter.worker.runner import MaintenanceWorker


def main() -> None:
    """Start the maintenance worker."""
    settings = get_settings()
    setup_logging(log_level=settings.log_level, json_output=True)
    services = build_services(get_engine(), settings)
    worker = MaintenanceWorker(services, interval=settings.maintenance_interval_seconds)
    asyncio.run(worker.run())


if __name__ == "__main__":
    main()
