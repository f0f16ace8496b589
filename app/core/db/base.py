from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy import event
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool
from fastapi import Request

from typing import AsyncIterator
import logging


Base = declarative_base()


logger = logging.getLogger(__name__)


class Database:
    """Engine plus session factory, owned by whoever builds it (app lifespan, tests)."""

    def __init__(self, url: str, *, echo: bool = False) -> None:
        kwargs: dict = {"echo": echo}
        if url.startswith("sqlite"):
            # in-memory sqlite must share one connection across sessions
            kwargs["connect_args"] = {"check_same_thread": False}
            kwargs["poolclass"] = StaticPool
        else:
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(url, **kwargs)
        if url.startswith("sqlite"):
            self._configure_sqlite()
        self.session_maker = async_sessionmaker(
            self.engine,
            expire_on_commit=False,
        )

    def _configure_sqlite(self) -> None:
        @event.listens_for(self.engine.sync_engine, "connect")
        def _on_connect(dbapi_connection, connection_record):
            # SQLAlchemy emits BEGIN itself so SAVEPOINTs nest correctly
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(self.engine.sync_engine, "begin")
        def _on_begin(conn):
            conn.exec_driver_sql("BEGIN")

    async def create_all(self) -> None:
        # Import models so Base metadata is aware of them
        from app.core.db import schemas  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    database: Database = request.app.state.db
    async with database.session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Session rolled back due to error: {e}")
            raise
