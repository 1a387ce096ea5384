"""
Lifecycle controller - starts and stops the inbox watcher and the periodic checker
"""
import asyncio
import logging
from typing import Optional

from .inbox_watcher import InboxWatcher

logger = logging.getLogger(__name__)


class LifecycleController:
    """Orchestrates startup, shutdown and manual checks for the process entry point"""

    def __init__(self, watcher: InboxWatcher, check_interval: float = 300.0):
        """
        Args:
            watcher: The inbox watcher to drive
            check_interval: Seconds between periodic unseen-message scans
        """
        self.watcher = watcher
        self.check_interval = check_interval
        self._connect_task: Optional[asyncio.Task] = None
        self._periodic_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def initialize(self) -> None:
        """Start the mailbox connection and the periodic checker; repeated calls are ignored"""
        if self._running:
            logger.warning("Auto-responder already initialized, ignoring")
            return

        self._running = True
        self._connect_task = asyncio.create_task(self.watcher.connect())
        self._periodic_task = asyncio.create_task(self._periodic_check())

    async def shutdown(self) -> None:
        """Stop the periodic checker and close the mailbox connection. Replies in flight keep running."""
        self._running = False

        tasks = [
            task for task in (self._periodic_task, self._connect_task)
            if task is not None and not task.done()
        ]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._periodic_task = None
        self._connect_task = None

        await self.watcher.close()

    async def check_now(self) -> None:
        """
        Scan for unseen messages right away.

        Raises:
            MailboxNotConnectedError: If the mailbox is not connected
        """
        logger.info("Manual email check triggered")
        await self.watcher.scan_unseen()

    async def _periodic_check(self) -> None:
        """Background task that scans on a fixed interval while the mailbox is ready"""
        logger.info(f"Starting periodic checker (interval: {self.check_interval}s)")

        while True:
            await asyncio.sleep(self.check_interval)

            if not self.watcher.is_ready:
                logger.debug("Mailbox not ready, skipping periodic check")
                continue

            logger.info("Periodic check for new emails...")
            try:
                await self.watcher.scan_unseen()
            except Exception as e:
                logger.error(f"Error in periodic check: {e}")
