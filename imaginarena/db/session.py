from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from imaginarena.core.config import settings
from imaginarena.services.realtime import CHANGE_FEED_KEY, ArenaSession, ChangeFeed, change_feed


def make_session_factory(bind: AsyncEngine, feed: ChangeFeed) -> async_sessionmaker[AsyncSession]:
    # Каждая сессия публикует закоммиченные изменения в свою ленту.
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        sync_session_class=ArenaSession,
        expire_on_commit=False,
        info={CHANGE_FEED_KEY: feed},
    )


engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
SessionLocal = make_session_factory(engine, change_feed)


# Зависимость для API роутов.
async def get_db():
    async with SessionLocal() as session:
        yield session


# Фабрика сессий для долгоживущих подписок: каждое обновление открывает свою сессию.
def get_session_factory() -> async_sessionmaker[AsyncSession]:
    return SessionLocal
