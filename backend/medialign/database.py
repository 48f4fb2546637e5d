"""Database setup with SQLModel and async SQLite."""

import logging
from collections.abc import AsyncGenerator
from enum import Enum

import sqlalchemy
from sqlalchemy import Column
from sqlalchemy import text as sa_text
from sqlalchemy.dialects import sqlite
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlmodel import SQLModel

from medialign.config import settings

# Import all models so their tables are registered with SQLModel.metadata
from medialign.models import (  # noqa: F401
    AudioSegmentRecord,
    CacheEntry,
    Episode,
    MediaFile,
    Series,
    Setting,
)

logger = logging.getLogger(__name__)

# Tables that only hold derived data; dropped and recreated on schema drift.
TRANSIENT_TABLES = ["audio_segments", "cache_entries"]

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
    future=True,
    connect_args={"check_same_thread": False},  # Needed for SQLite
)


@sqlalchemy.event.listens_for(engine.sync_engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


async_session = sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


async def init_db() -> None:
    """Initialize the database, creating all tables."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)

    await _migrate_schema(engine)

    logger.info("Database initialized successfully")


def _get_expected_columns(table_name: str) -> set[str]:
    """Get expected column names from the SQLModel metadata for a table."""
    table = SQLModel.metadata.tables.get(table_name)
    if table is None:
        return set()
    return {col.name for col in table.columns}


async def _get_actual_columns(conn, table_name: str) -> set[str]:
    """Get actual column names from the database for a table."""
    result = await conn.execute(sa_text(f"PRAGMA table_info('{table_name}')"))
    return {row[1] for row in result.fetchall()}  # column name is at index 1


def _column_literal(value) -> str:
    """Render a scalar column default as a SQLite literal."""
    if isinstance(value, Enum):
        # Enum columns hold member names
        value = value.name
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, int | float):
        return repr(value)
    return "'" + str(value).replace("'", "''") + "'"


def _add_column_sql(table_name: str, column: Column) -> str | None:
    """ALTER TABLE statement for a missing column, or None when SQLite can't add it."""
    column_type = column.type.compile(dialect=sqlite.dialect())
    ddl = f'ALTER TABLE {table_name} ADD COLUMN "{column.name}" {column_type}'
    if column.default is not None and column.default.is_scalar:
        return f"{ddl} DEFAULT {_column_literal(column.default.arg)}"
    if column.nullable:
        return ddl
    return None


async def _migrate_schema(target_engine: AsyncEngine | None = None) -> None:
    """Bring tables created by an older release up to the current models.

    - **audio_segments / cache_entries**: derived data, dropped and recreated.
    - **series / episodes / files / settings**: user data. Missing columns are
      added when they are nullable or carry a scalar default; anything else
      is logged and left alone.
    - Idempotent: no-op when schema already matches.
    """
    eng = target_engine or engine

    async with eng.begin() as conn:
        result = await conn.execute(sa_text("SELECT name FROM sqlite_master WHERE type='table'"))
        existing_tables = {row[0] for row in result.fetchall()}

        for table_name in sorted(SQLModel.metadata.tables):
            if table_name not in existing_tables:
                continue
            actual_cols = await _get_actual_columns(conn, table_name)
            expected_cols = _get_expected_columns(table_name)
            if actual_cols == expected_cols:
                continue

            table_obj = SQLModel.metadata.tables[table_name]
            if table_name in TRANSIENT_TABLES:
                logger.info(f"Schema mismatch in {table_name}, dropping and recreating")
                await conn.execute(sa_text(f"DROP TABLE {table_name}"))
                await conn.run_sync(
                    lambda sync_conn, t=table_obj: t.create(sync_conn, checkfirst=True)
                )
                continue

            for column_name in sorted(expected_cols - actual_cols):
                ddl = _add_column_sql(table_name, table_obj.columns[column_name])
                if ddl is None:
                    logger.warning(
                        f"Cannot add required column {table_name}.{column_name} "
                        "without a default; recreate the database to pick it up"
                    )
                    continue
                await conn.execute(sa_text(ddl))
                logger.info(f"Added column {table_name}.{column_name}")

            if actual_cols - expected_cols:
                logger.warning(
                    f"Unused columns in {table_name}: {sorted(actual_cols - expected_cols)}"
                )


async def reset_db() -> None:
    """Drop all tables and recreate them. Development only."""
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.drop_all)
        await conn.run_sync(SQLModel.metadata.create_all)
    logger.info("Database reset complete")


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with async_session() as session:
        yield session
