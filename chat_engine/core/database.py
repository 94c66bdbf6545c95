from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

# Convert database URL to use an async driver
def _get_async_db_url(sync_url: str) -> str:
    """Convert sync database URL to async URL (asyncpg for PostgreSQL, aiosqlite for SQLite)."""
    if sync_url.startswith("postgresql://"):
        return sync_url.replace("postgresql://", "postgresql+asyncpg://")
    elif sync_url.startswith("postgres://"):
        return sync_url.replace("postgres://", "postgresql+asyncpg://")
    elif sync_url.startswith("postgresql+psycopg2://"):
        return sync_url.replace("postgresql+psycopg2://", "postgresql+asyncpg://")
    elif sync_url.startswith("postgresql+psycopg://"):
        return sync_url.replace("postgresql+psycopg://", "postgresql+asyncpg://")
    elif sync_url.startswith("sqlite://"):
        return sync_url.replace("sqlite://", "sqlite+aiosqlite://")
    else:
        # Assume it's already async or needs no conversion
        return sync_url


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.
    In-memory SQLite shares one connection, otherwise every
    connection would see its own empty database.
    """
    async_url = _get_async_db_url(database_url)
    if async_url.startswith("sqlite") and ":memory:" in async_url:
        return create_async_engine(
            async_url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(async_url, echo=False, future=True)


def build_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


Base = declarative_base()


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on Base."""
    # Import models so their tables are registered
    from chat_engine.models import model_config, chat_session  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
