"""Main entry point for the mailmirror API server."""

import asyncio

from mailmirror.config import get_settings
from mailmirror.logging import get_logger, setup_logging
from mailmirror.server import MirrorServer
from mailmirror.services import open_services


async def main() -> None:
    """Main application entry point."""
    setup_logging()
    log = get_logger("mailmirror.main")

    settings = get_settings()
    log.info(
        "starting_mailmirror",
        environment=settings.environment,
        host=settings.server_host,
        port=settings.server_port,
    )
    if settings.api_secret is None:
        log.warning("api_secret_not_set", detail="API routes are unauthenticated")

    async with open_services(settings) as services:
        server = MirrorServer(
            services,
            host=settings.server_host,
            port=settings.server_port,
            api_secret=settings.api_secret.get_secret_value() if settings.api_secret else "",
            cron_secret=settings.cron_secret.get_secret_value() if settings.cron_secret else "",
        )
        await server.start()
        try:
            await asyncio.Event().wait()
        finally:
            await server.stop()
            log.info("mailmirror_stopped")


def run() -> None:
    """Run the application."""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
