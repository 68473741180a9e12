from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings


def create_ledger_engine(
    database_url: str, *, lock_timeout_secs: Optional[float] = None
) -> Engine:
    connect_args: dict[str, object] = {}
    engine_kwargs: dict[str, object] = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        if lock_timeout_secs is not None:
            connect_args["timeout"] = lock_timeout_secs
        if ":memory:" in database_url or database_url == "sqlite://":
            # One shared connection, or every thread sees its own empty database.
            engine_kwargs["poolclass"] = StaticPool

    eng = create_engine(database_url, connect_args=connect_args, **engine_kwargs)
    if database_url.startswith("sqlite"):
        event.listen(eng, "connect", _enable_sqlite_pragmas)
        event.listen(eng, "begin", _begin_immediate)
    return eng


def _enable_sqlite_pragmas(dbapi_conn, _record):
    # pysqlite must not emit its own BEGIN; _begin_immediate takes over.
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA journal_mode=WAL;")
    cursor.execute("PRAGMA foreign_keys=ON;")
    cursor.close()


def _begin_immediate(conn):
    # SQLite has no row locks; taking the write lock up front serializes
    # units of work the way SELECT ... FOR UPDATE does elsewhere.
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def _create_engine() -> Engine:
    settings = get_settings()
    return create_ledger_engine(
        settings.database_url, lock_timeout_secs=settings.lock_timeout_secs
    )


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, expire_on_commit=False)


engine = _create_engine()
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    session: Session = factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
