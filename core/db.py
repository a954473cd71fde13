"""
Async database engine and session management.

Purpose:
- Create SQLAlchemy async engine from settings.DATABASE_URL
- Provide async session factory for dependency injection
- Provide Base declarative class for ORM models

Production notes:
- Use connection pooling with appropriate pool_size and max_overflow
- Schema is created on startup; the hosted store owns migrations
"""
from fastapi import HTTPException
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from config.settings import settings
import logging
from typing import AsyncGenerator, Optional

logger = logging.getLogger(__name__)

Base = declarative_base()

# When DATABASE_URL is "disabled", do not create an engine at all.
engine = None
async_session_maker: Optional[async_sessionmaker[AsyncSession]] = None

if settings.DATABASE_URL and settings.DATABASE_URL != "disabled":
	engine = create_async_engine(
		settings.DATABASE_URL,
		echo=settings.DEBUG,
		future=True,
	)
	async_session_maker = async_sessionmaker(
		engine, expire_on_commit=False, class_=AsyncSession
	)
	logger.info("Async DB engine created for %s", engine.url.render_as_string(hide_password=True))
else:
	logger.warning("DATABASE_URL is 'disabled' – DB engine will not be created.")

async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
	"""
	Yield an AsyncSession for request handlers.

	Raises 503 when the database is disabled, since every route here is backed
	by the store.
	"""
	if async_session_maker is None:
		raise HTTPException(status_code=503, detail="Database is not configured")

	async with async_session_maker() as session:
		try:
			yield session
		finally:
			await session.close()

async def init_models() -> None:
	"""Create tables for all registered models (idempotent)."""
	if engine is None:
		return
	from models import db_models  # noqa: F401 ensure models are imported so tables are registered
	async with engine.begin() as conn:
		await conn.run_sync(Base.metadata.create_all)
