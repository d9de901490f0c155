"""Engine and session handling for the quota ledger database."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from search_gateway.db.base import Base

logger = logging.getLogger(__name__)

SQLITE_PREFIX = "sqlite:///"


class DatabaseManager:
    """
    Lazily built SQLAlchemy engine plus a transactional session scope.

    Quota stores call into this from worker threads (``asyncio.to_thread``),
    so SQLite connections are opened without the same-thread check and with
    WAL journaling so readers never block the single writer.
    """

    def __init__(self, database_url: str = "sqlite:///data/search_gateway.db", echo: bool = False) -> None:
        self.database_url = database_url
        self._echo = echo
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = self._build_engine()
        return self._engine

    def _build_engine(self) -> Engine:
        connect_args = {}
        if self.database_url.startswith(SQLITE_PREFIX):
            Path(self.database_url[len(SQLITE_PREFIX):]).parent.mkdir(parents=True, exist_ok=True)
            connect_args["check_same_thread"] = False

        engine = create_engine(
            self.database_url,
            echo=self._echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if self.is_sqlite:
            event.listen(engine, "connect", _apply_sqlite_pragmas)
        return engine

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Session committed on clean exit and rolled back on error.

        Usage:
            with db.get_session() as session:
                session.execute(update(OrgQuota).where(...))
        """
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create missing tables."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Quota tables ready at {self.database_url}")

    def close(self) -> None:
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database connections closed")


def _apply_sqlite_pragmas(dbapi_connection, connection_record) -> None:  # type: ignore
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    # Wait on writer contention instead of failing with "database is locked"
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()
