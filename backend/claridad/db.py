from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from .config import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str) -> AsyncEngine:
    return create_async_engine(url, pool_pre_ping=True)

def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)

engine = make_engine(settings.database_url)
SessionLocal = make_sessionmaker(engine)

async def init_db(bind: AsyncEngine | None = None):
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
