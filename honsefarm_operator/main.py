"""HonseFarm operator main application."""

import asyncio
import logging
import signal
from typing import Optional

from honsefarm_operator import __version__
from honsefarm_operator.cluster import ClusterConnection
from honsefarm_operator.config import Settings, get_settings
from honsefarm_operator.watch import OperatorLoop

logger = logging.getLogger(__name__)


class Application:
    """Main application orchestrator."""

    def __init__(self, settings: Settings):
        """
        Initialize application.

        Args:
            settings: Operator settings
        """
        self.settings = settings
        self.connection: Optional[ClusterConnection] = None
        self.loop: Optional[OperatorLoop] = None
        self._shutdown = False

    async def start(self) -> None:
        """Start the application."""
        logger.info("Starting HonseFarm operator...")
        logger.info(f"   Version: {__version__}")
        logger.info(f"   Namespace: {self.settings.watch_namespace or 'all'}")
        logger.info(f"   Build image: {self.settings.build_image}")

        self.connection = ClusterConnection(self.settings)
        logger.info(f"   API server: {self.connection.get_cluster_version()}")

        self.loop = OperatorLoop(self.connection, self.settings)
        await self.loop.start()

        logger.info("HonseFarm operator started successfully")

        # Run until shutdown signal
        try:
            while not self._shutdown:
                await asyncio.sleep(1)
        except asyncio.CancelledError:
            pass

    async def stop(self) -> None:
        """Stop the application."""
        logger.info("Shutting down HonseFarm operator...")
        self._shutdown = True

        if self.loop:
            await self.loop.stop()
        if self.connection:
            self.connection.close()

        logger.info("HonseFarm operator stopped")

    def handle_signal(self, sig: int) -> None:
        """
        Handle shutdown signals.

        Args:
            sig: Signal number
        """
        logger.info(f"Received signal {sig}, initiating shutdown...")
        self._shutdown = True


async def main() -> None:
    """Main entry point."""
    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app = Application(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, app.handle_signal, sig)

    try:
        await app.start()
    finally:
        await app.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
