import os

from sqlalchemy import create_engine, text, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

DATABASE_URL = os.getenv("DATABASE_URL")
DB_SCHEMA = os.getenv("DB_SCHEMA", "checkout")
DB_POOL_SIZE = int(os.getenv("DB_POOL_SIZE", "10"))
DB_MAX_OVERFLOW = int(os.getenv("DB_MAX_OVERFLOW", "20"))


class Base(DeclarativeBase):
    pass


def _quote_ident(ident: str) -> str:
    return '"' + ident.replace('"', '""') + '"'


def create_db_engine(url: str, schema: str | None = None) -> Engine:
    """
    Build the process-wide engine. Every unit of work borrows a connection
    from its pool and returns it when the session closes.

    SQLite has no SELECT ... FOR UPDATE, so its transactions are opened with
    BEGIN IMMEDIATE instead; concurrent writers then queue on the database
    lock the same way they would queue on a Postgres row lock.
    """
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _disable_pysqlite_begin(dbapi_conn, _):
            dbapi_conn.isolation_level = None

        @event.listens_for(engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

        return engine

    engine = create_engine(
        url,
        pool_size=DB_POOL_SIZE,
        max_overflow=DB_MAX_OVERFLOW,
        pool_pre_ping=True,
    )

    if schema:
        @event.listens_for(engine, "connect")
        def _set_search_path(dbapi_conn, _):
            cur = dbapi_conn.cursor()
            cur.execute(f"SET search_path TO {_quote_ident(schema)}")
            cur.close()

    return engine


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)


def init_schema(engine: Engine, schema: str | None = None):
    """
    Optional: prefer deploy-time migrations instead of runtime.
    Keep for local/dev if you want.
    """
    from . import models  # noqa: F401  (register tables on Base.metadata)

    if schema and engine.dialect.name == "postgresql":
        with engine.begin() as conn:
            conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {_quote_ident(schema)}"))
    Base.metadata.create_all(bind=engine)
