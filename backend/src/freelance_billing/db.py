from __future__ import annotations

from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .tables import BillingBase


def _enable_sqlite_transactions(engine: Engine) -> None:
    # pysqlite defers BEGIN on its own, which breaks SAVEPOINT; emit it explicitly.
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record) -> None:
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(connection) -> None:
        connection.exec_driver_sql("BEGIN")


class Database:
    """Engine plus session factory; sessions are handed to services explicitly."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise RuntimeError("DATABASE_URL is required")
        self.url = database_url
        if database_url.startswith("sqlite"):
            engine_kwargs: dict[str, object] = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+pysqlite:"):
                engine_kwargs["poolclass"] = StaticPool
            self._engine = create_engine(database_url, future=True, **engine_kwargs)
            _enable_sqlite_transactions(self._engine)
            BillingBase.metadata.create_all(self._engine)
        else:
            self._engine = create_engine(database_url, future=True, pool_pre_ping=True)
        self._session_factory = sessionmaker(self._engine, expire_on_commit=False, future=True)

    @property
    def engine(self) -> Engine:
        return self._engine

    def session(self) -> Session:
        return self._session_factory()

    def reset(self) -> None:
        with self.session() as session:
            with session.begin():
                for table in reversed(BillingBase.metadata.sorted_tables):
                    session.execute(table.delete())

    def dispose(self) -> None:
        self._engine.dispose()
