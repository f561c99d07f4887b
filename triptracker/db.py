from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool
from .models import Base
from .config import DATABASE_URL


def _enable_sqlite_foreign_keys(dbapi_conn, connection_record):
    """Enable foreign key constraints (cascade deletes) for SQLite."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_db_engine(database_url: str) -> Engine:
    """Create an engine; SQLite gets FK enforcement and in-memory URLs share one connection."""
    if database_url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in database_url or database_url in ("sqlite://", "sqlite:///"):
            kwargs["poolclass"] = StaticPool
        db_engine = create_engine(database_url, future=True, **kwargs)
        event.listen(db_engine, "connect", _enable_sqlite_foreign_keys)
        return db_engine
    return create_engine(database_url, future=True)


def create_session_factory(database_url: str) -> sessionmaker:
    """Build the store handle the recorder and sync service are constructed with."""
    return sessionmaker(bind=create_db_engine(database_url), expire_on_commit=False)


SessionLocal = create_session_factory(DATABASE_URL)

def init_db(session_factory: sessionmaker = None):
    """Initialize the database by creating all tables."""
    factory = session_factory or SessionLocal
    Base.metadata.create_all(bind=factory.kw["bind"])
