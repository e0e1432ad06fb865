"""Database utility functions."""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from marketintel.db.session import async_session_factory, engine
from marketintel.models import Base


async def init_db(target: AsyncEngine = engine) -> None:
    """Create all tables that don't exist yet."""
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def check_database_health() -> dict:
    """Check if database is accessible and responsive.

    Returns:
        dict with 'healthy' boolean and optional 'error' message
    """
    try:
        async with async_session_factory() as session:
            await session.execute(text("SELECT 1"))
            return {"healthy": True}
    except Exception as e:
        return {"healthy": False, "error": str(e)}
