# esg_builder/database.py
import logging
from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

engine = create_async_engine(DATABASE_URL, echo=settings.sql_echo)

# expire_on_commit=False: Objekte bleiben nach einem Commit lesbar, ohne Lazy-Load
AsyncSessionFactory = async_sessionmaker(
    bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False
)

Base = declarative_base()


def enable_sqlite_foreign_keys(sync_engine) -> None:
    """SQLite prüft Fremdschlüssel nur mit PRAGMA foreign_keys=ON."""

    @event.listens_for(sync_engine, "connect")
    def _set_sqlite_pragma(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


if DATABASE_URL.startswith("sqlite"):
    enable_sqlite_foreign_keys(engine.sync_engine)


async def get_db_session() -> AsyncIterator[AsyncSession]:
    async with AsyncSessionFactory() as session:
        try:
            yield session
            await session.commit()  # Commit am Ende, wenn alles gut ging
        except Exception:
            await session.rollback()  # Rollback bei Fehlern
            raise


async def create_db_and_tables():
    """
    Schema wird von Alembic verwaltet. Für SQLite-Entwicklungsdatenbanken werden
    fehlende Tabellen direkt angelegt, damit die App ohne Migration startet.
    """
    if not DATABASE_URL.startswith("sqlite"):
        logger.info("Database schema is managed by Alembic")
        return
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("SQLite schema ensured at %s", DATABASE_URL)
