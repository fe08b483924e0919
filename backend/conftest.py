from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

ROOT = Path(__file__).resolve().parent
sys.path.append(str(ROOT))

os.environ["DATABASE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ["DATABASE_WRITE_URL"] = "sqlite+pysqlite:///:memory:"
os.environ.setdefault("NOTIFICATIONS_SINK", "none")

import cmmsdb  # noqa: E402,F401
from cmmsdb.database import Base  # noqa: E402


def _sqlite_engine(url: str):
    engine = create_engine(url)

    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT handling.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture()
def db_session():
    engine = _sqlite_engine("sqlite+pysqlite:///:memory:")
    TestingSession = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    session = TestingSession()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture()
def session_factory(tmp_path):
    """Sessions on a file database, for code that opens its own sessions from threads."""
    engine = _sqlite_engine(f"sqlite+pysqlite:///{tmp_path / 'cmms.db'}")
    factory = sessionmaker(
        bind=engine,
        autoflush=False,
        autocommit=False,
        expire_on_commit=False,
    )
    try:
        yield factory
    finally:
        engine.dispose()
