from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from adcraft.config import get_database_settings


class Base(DeclarativeBase):
  pass


engine: AsyncEngine | None = None
SessionLocal: async_sessionmaker[AsyncSession] | None = None


def normalize_database_url(raw: str | None) -> str | None:
  """Point plain postgres DSNs at the asyncpg driver."""
  if raw and raw.startswith("postgresql://"):
    return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
  if raw and raw.startswith("postgres://"):
    return raw.replace("postgres://", "postgresql+asyncpg://", 1)
  return raw


def build_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
  return create_async_engine(normalize_database_url(database_url), echo=echo, future=True)


def build_session_factory(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(bind=db_engine, expire_on_commit=False, class_=AsyncSession)


def get_db_engine() -> AsyncEngine | None:
  global engine
  settings = get_database_settings()
  if engine is None and settings.pg_dsn:
    engine = build_engine(settings.pg_dsn, echo=settings.debug)
  return engine


def get_session_factory() -> async_sessionmaker[AsyncSession] | None:
  global SessionLocal
  if SessionLocal is None:
    db_engine = get_db_engine()
    if db_engine:
      SessionLocal = build_session_factory(db_engine)
  return SessionLocal


async def create_schema(db_engine: AsyncEngine) -> None:
  """Create orchestration tables that do not exist yet."""
  # Import models so their tables register on Base.metadata.
  from adcraft.schema import jobs as _jobs  # noqa: F401

  async with db_engine.begin() as connection:
    await connection.run_sync(Base.metadata.create_all)
