"""
SQLAlchemy async engines and sessions.

The module-level engine serves the remote storage API (``DATABASE_URL``);
``LocalStore`` builds its own through ``build_engine`` on the device database.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from propositions_backend.config import DATABASE_URL as _CONFIGURED_DATABASE_URL


def normalize_database_url(url: str) -> str:
    """Convert postgres:// and postgresql:// to postgresql+asyncpg:// for SQLAlchemy async."""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


def build_engine(url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(normalize_database_url(url), echo=False, future=True, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


DATABASE_URL = normalize_database_url(_CONFIGURED_DATABASE_URL)

async_engine = build_engine(DATABASE_URL)
AsyncSessionLocal = build_session_factory(async_engine)


async def get_async_session():
    """
    FastAPI dependency: one session per request, committed on success.

        @router.get("/app-state")
        async def get_app_state(db: AsyncSession = Depends(get_async_session)):
            ...
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine = async_engine) -> None:
    """Create missing storage tables on ``engine``."""
    from propositions_backend.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
