"""Local queue database lifecycle."""
import logging
from typing import Generator, Optional

from sqlalchemy import create_engine, event, inspect, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from spellstars.models.base import Base
from spellstars.models.models import QUEUE_MODELS, QueueMeta, SyncState

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 4


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Make every SQLite commit durable before it returns."""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=FULL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class QueueDatabase:
    """On-device store backing the sync queue.

    Opened once at process start and closed at shutdown. Services receive
    sessions from it instead of importing a module-level engine.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> None:
        """Create the engine, bring the schema up to date and recover."""
        if self.is_open:
            return

        kwargs = {"echo": self.echo}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if ":memory:" in self.url or self.url in ("sqlite://", "sqlite:///"):
                # One shared connection, otherwise every session sees an empty database
                kwargs["poolclass"] = StaticPool

        self.engine = create_engine(self.url, **kwargs)
        if self.url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_sqlite_pragma)

        self._session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            expire_on_commit=False,
            bind=self.engine,
        )

        Base.metadata.create_all(bind=self.engine)  # Create tables if they don't exist
        self._upgrade_schema()
        self._recover_interrupted()
        logger.info("Queue database opened at %s", self.url)

    def close(self) -> None:
        """Dispose of the engine."""
        if not self.is_open:
            return
        self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Queue database closed")

    def session(self) -> Session:
        """Create a new session bound to the queue database."""
        if not self.is_open:
            raise RuntimeError("Queue database is not open")
        return self._session_factory()

    def get_db(self) -> Generator[Session, None, None]:
        """Yield a session and close it afterwards."""
        db = self.session()
        try:
            yield db
        finally:
            db.close()

    def schema_version(self) -> int:
        with self.session() as db:
            meta = db.get(QueueMeta, "schema_version")
            return int(meta.value) if meta else 0

    def _upgrade_schema(self) -> None:
        """Add columns introduced after a queue table was first created.

        Existing rows receive the column's server default. Filling fields
        that need inference (such as an attempt's list) happens later in
        QueueService.migrate_pending_records, once the remote store is
        reachable.
        """
        inspector = inspect(self.engine)
        with self.engine.begin() as connection:
            for table in Base.metadata.sorted_tables:
                existing = {column["name"] for column in inspector.get_columns(table.name)}
                for column in table.columns:
                    if column.name in existing:
                        continue
                    ddl = "ALTER TABLE {} ADD COLUMN {} {}".format(
                        table.name,
                        column.name,
                        column.type.compile(dialect=self.engine.dialect),
                    )
                    if column.server_default is not None:
                        ddl += f" DEFAULT {column.server_default.arg}"
                    connection.exec_driver_sql(ddl)
                    logger.info("Added column %s.%s to queue database", table.name, column.name)

        with self.session() as db:
            meta = db.get(QueueMeta, "schema_version")
            if meta is None:
                db.add(QueueMeta(key="schema_version", value=str(SCHEMA_VERSION)))
            elif int(meta.value) < SCHEMA_VERSION:
                logger.info("Upgraded queue schema from version %s to %s", meta.value, SCHEMA_VERSION)
                meta.value = str(SCHEMA_VERSION)
            db.commit()

    def _recover_interrupted(self) -> None:
        """Records left mid-write by a crash go back to pending."""
        with self.session() as db:
            recovered = 0
            for model in QUEUE_MODELS.values():
                result = db.execute(
                    update(model)
                    .where(model.state == SyncState.SYNCING)
                    .values(state=SyncState.PENDING)
                )
                recovered += result.rowcount or 0
            db.commit()
        if recovered:
            logger.warning("Recovered %d queued records interrupted mid-sync", recovered)
