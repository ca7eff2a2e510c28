import asyncio
from collections.abc import Callable
from typing import Any, TypeVar

from sqlalchemy import Engine, event
from sqlmodel import Session, SQLModel, create_engine

from archgen.core.config import settings

SessionFactory = Callable[[], Session]
T = TypeVar("T")


def make_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    db_engine = create_engine(url, connect_args=connect_args)
    if url.startswith("sqlite"):
        # SQLite ignores ON DELETE rules unless foreign keys are switched on per connection.
        @event.listens_for(db_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, _connection_record) -> None:
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return db_engine


engine = make_engine(settings.DATABASE_URL)


def init_db(db_engine: Engine) -> None:
    # Tables are registered on SQLModel.metadata by importing the models module.
    from archgen import models  # noqa: F401

    SQLModel.metadata.create_all(db_engine)


def session_factory_for(db_engine: Engine) -> SessionFactory:
    def _factory() -> Session:
        return Session(db_engine)

    return _factory


async def run_in_session(session_factory: SessionFactory, fn: Callable[..., T], /, **kwargs: Any) -> T:
    """Call `fn(session=..., **kwargs)` in a fresh session on a worker thread."""

    def _call() -> T:
        with session_factory() as session:
            return fn(session=session, **kwargs)

    return await asyncio.to_thread(_call)
