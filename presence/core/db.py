"""
SQLAlchemy engine, session, and base for the SQL cache backend. DB path from config or default.
"""
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

DEFAULT_DB_PATH = Path.home() / ".presence_api" / "cache.db"


def sqlite_url(path: Optional[str] = None) -> str:
    """SQLite URL for path (expanded, parent created); in-memory for ':memory:'."""
    if path == ":memory:":
        return "sqlite://"
    db_path = Path(path).expanduser().resolve() if path else DEFAULT_DB_PATH
    db_path.parent.mkdir(parents=True, exist_ok=True)
    return f"sqlite:///{db_path}"


class Database:
    """Owns one engine and session factory; tables are created on construction."""

    def __init__(self, db_url: Optional[str] = None, path: Optional[str] = None):
        if db_url is None:
            db_url = sqlite_url(path)
        connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}
        if db_url == "sqlite://":
            from sqlalchemy.pool import StaticPool

            self.engine = create_engine(
                db_url, echo=False, future=True, connect_args=connect_args, poolclass=StaticPool
            )
        else:
            self.engine = create_engine(db_url, echo=False, future=True, connect_args=connect_args)

        # Register tables with Base before create_all
        from presence.core import models as _models  # noqa: F401

        Base.metadata.create_all(self.engine)
        self._session_factory = sessionmaker(
            bind=self.engine, autocommit=False, autoflush=False, expire_on_commit=False
        )
        logger.info(f"Database initialized: {db_url.split('?')[0]}")

    @contextmanager
    def session_scope(self) -> Generator[Session, None, None]:
        """Context manager for a single DB session. Commits on success, rolls back on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
