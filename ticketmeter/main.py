"""TicketMeter API server entrypoint."""

import uvicorn

from ticketmeter.config.settings import get_settings


def cli() -> None:
    """Serve the API; auto-reload only in debug mode."""
    settings = get_settings()
    uvicorn.run(
        "ticketmeter.web.app:create_app",
        factory=True,
        reload=settings.debug,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    cli()
