from __future__ import annotations

from collections.abc import Generator, Iterator
from contextlib import contextmanager, suppress
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.dialects.postgresql import insert as postgresql_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from farmtrack.errors import StoreUnavailable
from farmtrack.settings import get_settings


class Base(DeclarativeBase):
    pass


def build_engine(database_url: str | None = None) -> Engine:
    settings = get_settings()
    url = database_url or settings.database_url
    connect_args: dict[str, Any] = {}
    engine_kwargs: dict[str, Any] = {"pool_pre_ping": True}
    if url.startswith("postgresql"):
        # Store calls from a stuck tenant cycle must not hold a connection forever.
        connect_args["options"] = f"-c statement_timeout={int(settings.database_statement_timeout_ms)}"
        engine_kwargs["pool_timeout"] = settings.database_pool_timeout_seconds
    return create_engine(url, connect_args=connect_args, **engine_kwargs)


engine = build_engine()
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def translate_store_errors(operation: str, db: Session | None = None) -> Iterator[None]:
    """Re-raise connectivity and timeout failures as ``StoreUnavailable``."""
    try:
        yield
    except (OperationalError, InterfaceError, PoolTimeoutError) as exc:
        if db is not None:
            with suppress(SQLAlchemyError):
                db.rollback()
        raise StoreUnavailable(operation, exc) from exc


_UPSERT_INSERTS: dict[str, Any] = {
    "postgresql": postgresql_insert,
    "sqlite": sqlite_insert,
}


def dialect_insert(session: Session) -> Any:
    """``insert`` construct with ``on_conflict_do_update`` for the session's dialect."""
    dialect_name = session.get_bind().dialect.name
    insert_factory = _UPSERT_INSERTS.get(dialect_name)
    if insert_factory is None:
        raise RuntimeError(f"upsert is not supported on dialect {dialect_name}")
    return insert_factory
