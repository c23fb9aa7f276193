"""
Engine and session lifecycle for the usage store.

Store calls run on worker threads, so one DatabaseManager is shared by many
threads at once. The engine and session factory are created lazily under a
lock and there is at most one of each per manager.
"""

import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.orm import Session, sessionmaker

from governance.config import settings
from governance.db.base import Base

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Thread-safe owner of one engine and its session factory."""

    def __init__(
        self,
        database_url: str = "sqlite:///data/governance.db",
        echo: bool = False,
        busy_timeout_ms: int | None = None,
        connect_timeout: int | None = None,
        pool_timeout: float | None = None,
    ) -> None:
        """
        Initialize the database manager. No connection is opened yet.

        Args:
            database_url: SQLAlchemy database URL
            echo: Enable SQL echo logging
            busy_timeout_ms: How long SQLite waits on a locked database
            connect_timeout: Seconds to establish a server database connection
            pool_timeout: Seconds to wait for a free pooled connection
        """
        self._database_url = database_url
        self._echo = echo
        self._busy_timeout_ms = (
            busy_timeout_ms if busy_timeout_ms is not None else settings.database_busy_timeout_ms
        )
        self._connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.database_connect_timeout
        )
        self._pool_timeout = (
            pool_timeout if pool_timeout is not None else settings.database_pool_timeout
        )
        self._lock = threading.RLock()
        self._engine: Engine | None = None
        self._session_factory: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """The shared engine, created on first use."""
        engine = self._engine
        if engine is None:
            with self._lock:
                if self._engine is None:
                    self._engine = self._create_engine()
                engine = self._engine
        return engine

    @property
    def session_factory(self) -> sessionmaker[Session]:
        """The shared session factory, bound to :attr:`engine`."""
        factory = self._session_factory
        if factory is None:
            with self._lock:
                if self._session_factory is None:
                    self._session_factory = sessionmaker(
                        bind=self.engine,
                        autocommit=False,
                        autoflush=False,
                        expire_on_commit=False,
                    )
                factory = self._session_factory
        return factory

    def _engine_options(self) -> dict[str, Any]:
        if self.is_sqlite:
            # Lock waits are bounded by the busy_timeout pragma
            return {}
        return {
            "pool_timeout": self._pool_timeout,
            "connect_args": {"connect_timeout": self._connect_timeout},
        }

    def _create_engine(self) -> Engine:
        if self._database_url.startswith("sqlite:///"):
            db_path = self._database_url.replace("sqlite:///", "")
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,
            **self._engine_options(),
        )

        if self.is_sqlite:
            self._configure_sqlite_pragmas(engine)

        logger.info(f"Database engine created for {engine.url.render_as_string(hide_password=True)}")
        return engine

    def _configure_sqlite_pragmas(self, engine: Engine) -> None:
        busy_timeout_ms = self._busy_timeout_ms

        @event.listens_for(engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record) -> None:  # type: ignore
            cursor = dbapi_connection.cursor()
            cursor.execute(f"PRAGMA busy_timeout={busy_timeout_ms}")
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.execute("PRAGMA synchronous=NORMAL")
            cursor.close()

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Session that commits on success and rolls back on error.

        Usage:
            with db_manager.get_session() as session:
                session.get(UsageCounters, 1)
        """
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create all tables if they don't exist."""
        # Register models on the metadata before create_all
        from governance.db import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)
        logger.info("Usage tables created/verified")

    def drop_db(self) -> None:
        """Drop all tables."""
        Base.metadata.drop_all(bind=self.engine)
        logger.warning("All usage tables dropped")

    def health_check(self) -> bool:
        """Run ``SELECT 1``; False if the database is unreachable."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    def close(self) -> None:
        """Dispose of the engine. A later call recreates it on demand."""
        with self._lock:
            if self._engine is None:
                return
            self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Database connection closed")
