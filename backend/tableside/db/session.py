"""Database session management."""

from collections.abc import Generator, Iterator
from contextlib import contextmanager
from typing import Annotated

from fastapi import Depends
from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker

from tableside.core.config import settings


# Create engine - handle SQLite specially for check_same_thread
connect_args = {}
pool_config = {}

if settings.database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False, "timeout": 30}
    pool_config = {
        "pool_pre_ping": True,
        "pool_recycle": 1800,
    }
else:
    pool_config = {
        "pool_size": 20,
        "max_overflow": 40,
        "pool_pre_ping": True,
        "pool_recycle": 3600,
    }

engine = create_engine(
    settings.database_url,
    connect_args=connect_args,
    echo=False,
    **pool_config,
)


def enable_sqlite_foreign_keys(target_engine) -> None:
    """SQLite ignores ON DELETE SET NULL unless foreign keys are switched on per connection."""

    @event.listens_for(target_engine, "connect")
    def set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def enable_sqlite_immediate_transactions(target_engine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE.

    SQLite has no row locks and pysqlite defers BEGIN until the first write,
    so ``with_for_update()`` alone leaves read-then-insert units unserialized.
    Taking the database write lock up front makes them queue instead.
    """

    @event.listens_for(target_engine, "connect")
    def disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(target_engine, "begin")
    def begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


if settings.database_url.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine)
    enable_sqlite_immediate_transactions(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """Get database session dependency."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def unit_of_work(db: Session) -> Iterator[Session]:
    """Run a block as one atomic write.

    Commits when the block finishes, rolls the whole block back on any
    exception and re-raises it. Nothing inside the block is visible to other
    sessions until the commit.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


# Type alias for dependency injection
DbSession = Annotated[Session, Depends(get_db)]
