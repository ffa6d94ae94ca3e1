import logging
from typing import Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    # SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Owns the engine and the session factory.

    Constructed once at process start, ``connect()`` is called from the app
    lifespan (or a maintenance script) and ``disconnect()`` on shutdown.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: Optional[Engine] = None
        self._session_factory: Optional[sessionmaker] = None

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            raise RuntimeError("Database is not connected")
        return self._session_factory

    def connect(self) -> sessionmaker:
        if self.engine is not None:
            return self.session_factory

        connect_args = {}
        if self.url.startswith("sqlite"):
            # Sessions are used from FastAPI's threadpool
            connect_args["check_same_thread"] = False

        self.engine = create_engine(self.url, echo=self.echo, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _enable_sqlite_foreign_keys)

        # Import models so every table is registered on Base.metadata
        import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

        self._session_factory = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        logger.info("Database connected", extra={"dialect": self.engine.dialect.name})
        return self._session_factory

    def disconnect(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._session_factory = None
        logger.info("Database disconnected")

    def ping(self) -> bool:
        with self.session_factory() as db:
            db.execute(text("SELECT 1"))
        return True
