# app/db/session.py
from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings


def _is_sqlite(uri: str) -> bool:
    return uri.startswith("sqlite")


def enable_sqlite_savepoints(eng: Engine) -> None:
    """
    pysqlite opens transactions lazily on its own, which breaks SAVEPOINT.
    Let SQLAlchemy emit BEGIN itself instead.
    """

    @event.listens_for(eng, "connect")
    def _do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(eng, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def build_engine(uri: str) -> Engine:
    if _is_sqlite(uri):
        eng = create_engine(uri, future=True)
        enable_sqlite_savepoints(eng)
        return eng

    return create_engine(
        uri,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        isolation_level=settings.DB_ISOLATION_LEVEL,
        future=True,
    )


engine: Engine = build_engine(settings.SQLALCHEMY_DATABASE_URI)

SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    future=True,
)
