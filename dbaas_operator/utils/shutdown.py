"""
Shutdown signal handler for graceful operator termination.
"""
import asyncio
import signal
from typing import Optional

from dbaas_operator.config.logging import get_logger

logger = get_logger(__name__)


class ShutdownHandler:
    """Turns SIGINT/SIGTERM into an asyncio event the controller can await."""

    def __init__(self):
        self.shutdown_event: Optional[asyncio.Event] = None

    def setup(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Install signal handlers on the running loop."""
        loop = loop or asyncio.get_running_loop()
        self.shutdown_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self._signal_handler, sig)
        logger.info("shutdown_handler_installed")

    def _signal_handler(self, signum: signal.Signals):
        logger.info("received_signal_initiating_shutdown", signal=signum.name)
        self.request_shutdown()

    def request_shutdown(self):
        if self.shutdown_event is None:
            self.shutdown_event = asyncio.Event()
        self.shutdown_event.set()

    def is_shutting_down(self) -> bool:
        """Check if shutdown has been requested."""
        return self.shutdown_event is not None and self.shutdown_event.is_set()

    async def wait(self) -> None:
        if self.shutdown_event is None:
            self.shutdown_event = asyncio.Event()
        await self.shutdown_event.wait()

    async def wait_or_shutdown(self, delay: float) -> bool:
        """
        Wait for delay seconds or until shutdown is requested.

        Returns:
            True if shutdown was requested, False if wait completed normally
        """
        if self.shutdown_event is None:
            self.shutdown_event = asyncio.Event()
        try:
            await asyncio.wait_for(self.shutdown_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False
