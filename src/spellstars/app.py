"""Main application entry point."""
import asyncio
import logging
from typing import Callable, Optional

from spellstars.config import Settings, settings
from spellstars.models.database import QueueDatabase
from spellstars.services.connectivity import ConnectivityMonitor
from spellstars.services.difficulty import DifficultyModel
from spellstars.services.learning_service import LearningService
from spellstars.services.practice_service import PracticeService
from spellstars.services.queue_service import QueueService
from spellstars.services.remote_store import RemoteStore, SupabaseStore
from spellstars.services.scheduler_service import SyncScheduler
from spellstars.services.sync_service import SyncService


class SpellStarsApp:
    """Main application class.

    Owns the queue database, the remote client and the background sync
    scheduler, and exposes the practice service to the screens.
    """

    def __init__(
        self,
        remote: Optional[RemoteStore] = None,
        app_settings: Optional[Settings] = None,
        online: bool = True,
    ):
        """Initialize the application."""
        self.settings = app_settings or settings
        self.remote = remote
        self.connectivity = ConnectivityMonitor(online)
        self.database: Optional[QueueDatabase] = None
        self.db = None
        self.queue: Optional[QueueService] = None
        self.practice: Optional[PracticeService] = None
        self.sync_service: Optional[SyncService] = None
        self.scheduler: Optional[SyncScheduler] = None
        self.running = False
        self.logger = logging.getLogger(__name__)
        self._owns_remote = False
        self._unsubscribe: Optional[Callable[[], None]] = None

    async def start(self) -> None:
        """Start the application."""
        if self.running:
            return

        try:
            # Open queue database
            self.database = QueueDatabase(self.settings.database.url, self.settings.database.echo)
            self.database.open()
            self.db = self.database.session()
            self.queue = QueueService(self.db)
            self.logger.info("Queue database initialized")

            # Create remote client
            if self.remote is None and self.settings.remote.url:
                self.remote = SupabaseStore(self.settings.remote)
                self._owns_remote = True
            if self.remote is None:
                self.logger.warning("No remote store configured, practice results stay queued")

            model = DifficultyModel(self.settings.difficulty)
            learning = None
            if self.remote is not None:
                learning = LearningService(self.remote, self.settings.scheduler, self.settings.difficulty)
            self.practice = PracticeService(self.queue, self.remote, self.connectivity, learning, model)

            if self.remote is not None:
                self.sync_service = SyncService(self.queue, self.remote, model, self.settings.sync)

                # Fill fields added to queued records since they were written
                if self.connectivity.online:
                    await self.queue.migrate_pending_records(self.remote)

                # Create sync scheduler
                self.scheduler = SyncScheduler(
                    self.sync_service,
                    self.queue,
                    self.connectivity,
                    self.settings.sync,
                )
                self._unsubscribe = self.connectivity.subscribe(self.scheduler.on_connectivity_change)
                await self.scheduler.start()
                self.logger.info("Sync scheduler started")

            self.running = True
            self.logger.info("Application started")

        except Exception as e:
            self.logger.error("Failed to start application: %s", str(e))
            await self._shutdown()
            raise

    async def stop(self) -> None:
        """Stop the application."""
        if not self.running:
            return
        await self._shutdown()
        self.logger.info("Application stopped")

    async def _shutdown(self) -> None:
        try:
            # Stop sync before closing what it writes to
            if self.sync_service:
                self.sync_service.cancel()
            if self._unsubscribe:
                self._unsubscribe()
                self._unsubscribe = None
            if self.scheduler:
                await self.scheduler.stop()
                self.scheduler = None
                self.logger.info("Sync scheduler stopped")

            # Let direct writes finish or fall back to the queue
            if self.practice:
                await self.practice.wait_for_background_writes()

            if self.remote and self._owns_remote:
                await self.remote.aclose()
                self.remote = None
                self._owns_remote = False

            # Close database session
            if self.db:
                self.db.close()
                self.db = None
            if self.database:
                self.database.close()
                self.database = None
                self.logger.info("Queue database closed")

        finally:
            self.running = False
            self.sync_service = None
            self.practice = None
            self.queue = None

    async def sync_now(self):
        """Run a sync pass immediately, outside the scheduler's timing."""
        if self.sync_service is None:
            raise RuntimeError("Application is not started or has no remote store")
        return await self.sync_service.sync_queued_data()

    def set_online(self, online: bool) -> None:
        self.connectivity.set_online(online)

    async def run_forever(self) -> None:
        """Start and keep syncing until cancelled."""
        await self.start()
        try:
            await asyncio.Event().wait()
        finally:
            await self.stop()


def main() -> None:
    """Main entry point."""
    from spellstars.logging_config import setup_logging

    setup_logging()
    app = SpellStarsApp()
    try:
        asyncio.run(app.run_forever())
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Received keyboard interrupt")


if __name__ == "__main__":
    main()
