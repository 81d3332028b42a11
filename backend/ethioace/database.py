"""SQLModel engine and session helpers.

The engine targets `settings.DATABASE_URL`, a SQLite file at
`backend/app.db` unless overridden. Tests point it at a temporary file
before the app is imported.
"""

from sqlmodel import SQLModel, create_engine, Session

from .config import settings

DB_URL = settings.DATABASE_URL
_connect_args = {"check_same_thread": False} if DB_URL.startswith("sqlite") else {}
engine = create_engine(DB_URL, echo=False, connect_args=_connect_args)


def create_db_and_tables():
    """Create every EthioAce table that does not exist yet.

    Runs at app import. Schema changes to existing tables need a
    migration tool (alembic); `create_all` never alters columns.
    """
    from . import models  # noqa: F401  registers tables on the metadata
    SQLModel.metadata.create_all(engine)


def get_session():
    """Request-scoped `Session` dependency, closed when the request ends."""
    with Session(engine) as session:
        yield session
