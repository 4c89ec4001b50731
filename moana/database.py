from dataclasses import dataclass
import logging

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from moana.models import Base

logger = logging.getLogger(__name__)


@dataclass
class Database:
    """Explicit persistence handle: one engine and its session factory."""
    engine: Engine
    SessionLocal: sessionmaker

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def _enable_sqlite_pragmas(engine: Engine, in_memory: bool) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        if not in_memory:
            cursor.execute("PRAGMA journal_mode=WAL")
        cursor.close()


def create_database(database_url: str) -> Database:
    """
    Build a database handle and create the schema.

    Args:
        database_url: SQLAlchemy URL, e.g. "sqlite:///./moana.db" or "sqlite://"

    Returns:
        Database handle to inject into the Registry
    """
    in_memory = database_url in ("sqlite://", "sqlite:///:memory:")
    kwargs = {}
    if database_url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}
        if in_memory:
            # Every session must see the same in-memory database
            kwargs["poolclass"] = StaticPool

    engine = create_engine(database_url, **kwargs)
    if database_url.startswith("sqlite"):
        _enable_sqlite_pragmas(engine, in_memory)

    session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    database = Database(engine=engine, SessionLocal=session_factory)
    database.init_db()

    logger.info(f"Database initialized at {database_url} with {len(Base.metadata.tables)} tables")
    return database
