from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .models import Base

WRITE_OPTION = "feedback_write"
_MEMORY_URLS = {"sqlite://", "sqlite:///:memory:"}


def _use_explicit_sqlite_transactions(engine: Engine, wal: bool) -> None:
    # pysqlite's implicit BEGIN breaks SAVEPOINT; take over transaction control.
    # Reads open a deferred transaction; sessions marked by begin_write() open
    # with BEGIN IMMEDIATE so writers queue on the busy timeout.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None
        if wal:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA journal_mode=WAL")
            cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        if conn.get_execution_options().get(WRITE_OPTION):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
        else:
            conn.exec_driver_sql("BEGIN")


def make_engine(database_url: str) -> Engine:
    if not database_url.startswith("sqlite"):
        return create_engine(database_url, future=True, pool_pre_ping=True)
    connect_args = {"check_same_thread": False, "timeout": 30}
    if database_url in _MEMORY_URLS:
        engine = create_engine(database_url, future=True, connect_args=connect_args, poolclass=StaticPool)
    else:
        engine = create_engine(database_url, future=True, connect_args=connect_args)
    _use_explicit_sqlite_transactions(engine, wal=database_url not in _MEMORY_URLS)
    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def begin_write(db: Session) -> None:
    """Open the session's next transaction as a writer.

    Whatever transaction the session already has open is committed first. On
    SQLite the new one starts with BEGIN IMMEDIATE; other backends ignore the
    marker.
    """
    if db.in_transaction():
        db.commit()
    db.connection(execution_options={WRITE_OPTION: True})


def init_db(engine: Engine) -> None:
    Base.metadata.create_all(engine)
