"""Database engine and session management."""

import logging
import os
from collections.abc import Generator
from contextlib import contextmanager
from pathlib import Path

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

logger = logging.getLogger(__name__)

# Default database path (can be overridden via DATABASE_URL)
DEFAULT_DB_PATH = Path.home() / ".price_harvester" / "price_harvester.db"


def get_database_url(db_path: Path | str | None = None) -> str:
    """
    Get the database URL.

    Args:
        db_path: Optional path to a SQLite database file. If None, uses
                 DATABASE_URL env var or default path.

    Returns:
        SQLAlchemy connection URL.
    """
    if db_path is not None:
        path = Path(db_path)
    elif os.environ.get("DATABASE_URL"):
        # Support full URL (postgresql://, sqlite://) or just a file path
        url = os.environ["DATABASE_URL"]
        if "://" in url:
            return url
        path = Path(url)
    else:
        path = DEFAULT_DB_PATH

    # Ensure parent directory exists
    path.parent.mkdir(parents=True, exist_ok=True)

    return f"sqlite:///{path}"


def create_db_engine(url: str, echo: bool = False) -> Engine:
    """
    Create a SQLAlchemy engine.

    Args:
        url: Database URL.
        echo: If True, log all SQL statements.

    Returns:
        SQLAlchemy Engine instance.
    """
    if url.startswith("sqlite"):
        return create_engine(
            url,
            echo=echo,
            connect_args={"check_same_thread": False},  # Allow multi-threaded access
        )
    return create_engine(url, echo=echo, pool_pre_ping=True)


class Database:
    """
    Explicitly constructed database client.

    Construct once at process start, pass to the components that need it,
    and call dispose() at shutdown.

    Usage:
        db = Database(get_database_url())
        with db.session() as session:
            ...
            session.commit()
        db.dispose()
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        self.url = url
        self.engine = create_db_engine(url, echo=echo)
        self._session_factory = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    @classmethod
    def from_env(cls, echo: bool = False) -> "Database":
        """Build a client from DATABASE_URL or the default path."""
        return cls(get_database_url(), echo=echo)

    @contextmanager
    def session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Uncommitted work is rolled back when the block raises.

        Yields:
            SQLAlchemy Session instance.
        """
        session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        """
        Create all tables directly from the ORM metadata.

        Note: In production, use Alembic migrations instead.
        """
        from price_harvester.db.models import Base

        Base.metadata.create_all(bind=self.engine)

    def run_migrations(self) -> None:
        """Run Alembic migrations to the latest revision."""
        project_root = Path(__file__).resolve().parents[2]
        alembic_ini = project_root / "alembic.ini"

        if not alembic_ini.exists():
            raise FileNotFoundError(f"Alembic config not found: {alembic_ini}")

        config = Config(str(alembic_ini))
        config.set_main_option("sqlalchemy.url", self.url.replace("%", "%%"))
        command.upgrade(config, "head")

    def dispose(self) -> None:
        """Release pooled connections."""
        logger.debug(f"Disposing engine for {self.engine.url.render_as_string(hide_password=True)}")
        self.engine.dispose()
