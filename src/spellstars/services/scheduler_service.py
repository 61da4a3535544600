"""Service for running sync passes and queue housekeeping in the background."""
import asyncio
import logging
from datetime import timedelta
from typing import Dict, Optional

from spellstars.config import SyncSettings, settings
from spellstars.services.connectivity import ConnectivityMonitor
from spellstars.services.queue_service import QueueService
from spellstars.services.sync_service import SyncService

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Service for managing scheduled sync and prune tasks."""

    def __init__(
        self,
        sync_service: SyncService,
        queue: QueueService,
        connectivity: Optional[ConnectivityMonitor] = None,
        sync_settings: Optional[SyncSettings] = None,
    ):
        """Initialize the scheduler with the sync engine it drives."""
        self.sync_service = sync_service
        self.queue = queue
        self.connectivity = connectivity
        self.settings = sync_settings or settings.sync
        self.tasks: Dict[str, asyncio.Task] = {}
        self.running = False
        self._wake = asyncio.Event()

    async def start(self) -> None:
        """Start the scheduler service."""
        if self.running:
            return

        self.running = True
        logger.info("Starting sync scheduler...")

        # Start periodic sync task
        self.tasks["sync"] = asyncio.create_task(self._run_sync_loop())

        # Start synced record pruning task
        self.tasks["prune"] = asyncio.create_task(self._run_prune_loop())

    async def stop(self) -> None:
        """Stop the scheduler service."""
        if not self.running:
            return

        self.running = False
        logger.info("Stopping sync scheduler...")

        # Cancel all tasks
        for task in self.tasks.values():
            task.cancel()

        # Wait for tasks to complete
        await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()

    def trigger(self) -> None:
        """Run the next sync pass now instead of after the current delay."""
        self._wake.set()

    def on_connectivity_change(self, online: bool) -> None:
        if online:
            logger.info("Back online, triggering sync")
            self.trigger()

    async def _sleep(self, delay: float) -> None:
        """Sleep for delay seconds or until triggered."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass
        self._wake.clear()

    async def _run_sync_loop(self) -> None:
        """Run sync task."""
        while self.running:
            try:
                if self.connectivity is None or self.connectivity.online:
                    result = await self.sync_service.sync_queued_data()
                    if result.ran and not result.clean:
                        logger.warning(
                            "Sync pass left work behind, next attempt in %.0f seconds",
                            self.sync_service.next_delay(),
                        )
                else:
                    logger.debug("Offline, skipping sync pass")

                await self._sleep(self.sync_service.next_delay())

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in sync task: %s", str(e))
                await self._sleep(self.settings.backoff_base_seconds)

    async def _run_prune_loop(self) -> None:
        """Run prune task."""
        while self.running:
            try:
                removed = self.queue.prune_synced(timedelta(days=self.settings.prune_after_days))
                logger.debug("Prune pass removed %d records", removed)

                # Wait until next prune
                await asyncio.sleep(self.settings.prune_interval_seconds)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Error in prune task: %s", str(e))
                await asyncio.sleep(60)  # Wait 1 minute before retrying
