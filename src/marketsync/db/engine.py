"""SQLModel engine construction and the process-wide engine singleton."""
from sqlalchemy import event
from sqlmodel import SQLModel, create_engine

from marketsync.config import get_settings

_engine = None


def build_engine(database_url: str, **kwargs):
    """Create an engine with foreign keys enforced on SQLite.

    SQLite ignores FOREIGN KEY constraints unless the pragma is set on every
    connection; dependency repair relies on the violation being raised.
    """
    if database_url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(database_url, **kwargs)
    if engine.dialect.name == "sqlite":
        enable_sqlite_foreign_keys(engine)
    return engine


def enable_sqlite_foreign_keys(engine) -> None:
    @event.listens_for(engine, "connect")
    def _set_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def create_tables(engine) -> None:
    # Import all models so metadata is populated before create_all
    from marketsync.models.market import Player, Sale  # noqa
    from marketsync.models.sync import SyncCheckpoint, SyncExecution, SyncStage  # noqa
    SQLModel.metadata.create_all(engine)


def get_engine():
    """Return the module-level engine, creating it on first call."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = build_engine(settings.database_url)
        create_tables(_engine)
    return _engine
