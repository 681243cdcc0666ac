"""Database setup with async SQLAlchemy."""

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase

from label_engine.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=10,
    max_overflow=20,
)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    """Dependency for FastAPI endpoints."""
    async with async_session() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind=None):
    """Create all tables (dev convenience — use alembic in production)."""
    import label_engine.models  # noqa: F401  registers tables on Base.metadata

    async with (bind or engine).begin() as conn:
        if conn.dialect.name == "postgresql":
            await conn.exec_driver_sql("CREATE EXTENSION IF NOT EXISTS vector")
        await conn.run_sync(Base.metadata.create_all)


def upsert(db: AsyncSession, model):
    """INSERT supporting ON CONFLICT for the session's dialect."""
    if db.bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def is_postgres(db: AsyncSession) -> bool:
    return db.bind.dialect.name == "postgresql"
