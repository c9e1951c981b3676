"""Database utilities for the ReelSync catalog."""

from __future__ import annotations

from sqlalchemy import MetaData, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    """Declarative base with consistent naming conventions."""

    metadata = MetaData()


class Database:
    """Thin wrapper managing the SQLAlchemy async engine and sessions."""

    def __init__(self, database_url: str):
        self._engine: AsyncEngine = create_async_engine(database_url, future=True)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self._engine, expire_on_commit=False
        )

    async def create_all(self) -> None:
        """Create database tables if they do not yet exist."""

        # Imported for its side effect of registering the ORM tables.
        from . import db_models  # noqa: F401

        async with self._engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)
            await connection.run_sync(self._apply_schema_migrations)

    @staticmethod
    def _apply_schema_migrations(sync_connection) -> None:
        """Ensure columns added after the first release exist on old catalogs."""

        inspector = inspect(sync_connection)
        if "movies" not in inspector.get_table_names():
            return

        existing_columns = {
            column["name"] for column in inspector.get_columns("movies")
        }

        def _ensure_column(name: str, ddl: str, init_sql: str | None = None) -> None:
            if name in existing_columns:
                return
            sync_connection.execute(text(ddl))
            if init_sql:
                sync_connection.execute(text(init_sql))
            existing_columns.add(name)

        _ensure_column(
            "votes",
            "ALTER TABLE movies ADD COLUMN votes INTEGER DEFAULT 1",
            "UPDATE movies SET votes = 1 WHERE votes IS NULL",
        )
        _ensure_column(
            "genres",
            "ALTER TABLE movies ADD COLUMN genres TEXT DEFAULT ''",
            "UPDATE movies SET genres = '' WHERE genres IS NULL",
        )
        _ensure_column(
            "duration",
            "ALTER TABLE movies ADD COLUMN duration INTEGER DEFAULT 0",
            "UPDATE movies SET duration = 0 WHERE duration IS NULL",
        )

    async def dispose(self) -> None:
        """Dispose of the underlying database engine."""

        await self._engine.dispose()
