import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)

engine = create_async_engine(
    settings.database_url,
    echo=settings.debug,
)

async_session = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncSession:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db():
    # Import models to register them with SQLAlchemy
    from backend.app.models import print_job, printer, user  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    await seed_admin_user()


async def seed_admin_user(session_factory: async_sessionmaker[AsyncSession] = async_session) -> str | None:
    """Create the first admin account when the users table is empty.

    Returns the generated API key (only available at creation time), or None
    if users already exist.
    """
    from backend.app.core.auth import generate_api_key
    from backend.app.models.user import User

    async with session_factory() as db:
        result = await db.execute(select(User.id).limit(1))
        if result.scalar_one_or_none() is not None:
            return None

        full_key, key_hash, key_prefix = generate_api_key()
        admin = User(
            username=settings.bootstrap_admin_username,
            name="Administrator",
            email="",
            is_admin=True,
            api_key_hash=key_hash,
            api_key_prefix=key_prefix,
        )
        db.add(admin)
        await db.commit()

    # Shown once; only the hash is stored
    logger.warning(
        "Created admin user '%s'. API key (store it now, it is not shown again): %s",
        settings.bootstrap_admin_username,
        full_key,
    )
    return full_key
