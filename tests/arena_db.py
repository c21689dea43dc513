"""Тестовая база: SQLite в памяти или во временном файле, схема через create_all."""

import asyncio
import unittest

from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool, StaticPool

from imaginarena.db.base import Base
from imaginarena.db.session import make_session_factory
from imaginarena.models.tournament import Tournament, TournamentParticipant, TournamentStatus
from imaginarena.models.user import User
from imaginarena.services.realtime import ChangeFeed


def make_engine(path: str | None = None):
    if path is None:
        return create_async_engine(
            "sqlite+aiosqlite://",
            poolclass=StaticPool,
            connect_args={"check_same_thread": False},
        )
    # Отдельное соединение на сессию, чтобы параллельные задачи не делили транзакцию.
    return create_async_engine(f"sqlite+aiosqlite:///{path}", poolclass=NullPool)


class ArenaTestCase(unittest.IsolatedAsyncioTestCase):
    db_path: str | None = None

    async def asyncSetUp(self) -> None:
        self.engine = make_engine(self.db_path)
        async with self.engine.begin() as connection:
            await connection.run_sync(Base.metadata.drop_all)
            await connection.run_sync(Base.metadata.create_all)
        self.feed = ChangeFeed()
        self.session_factory = make_session_factory(self.engine, self.feed)
        self.db = self.session_factory()

    async def asyncTearDown(self) -> None:
        await self.db.close()
        await self.engine.dispose()

    async def add_user(self, username: str, is_admin: bool = False, is_bot: bool = False) -> User:
        user = User(username=username, is_admin=is_admin, is_bot=is_bot)
        self.db.add(user)
        await self.db.commit()
        return user

    async def add_users(self, count: int, prefix: str = "player") -> list[User]:
        users = [User(username=f"{prefix}_{index:02d}") for index in range(count)]
        self.db.add_all(users)
        await self.db.commit()
        return users

    async def add_lobby(self, size: int = 4, members: list[User] | None = None, **fields) -> Tournament:
        # Лобби без автостарта: участники добавляются напрямую.
        fields.setdefault("status", TournamentStatus.LOBBY.value)
        tournament = Tournament(tournament_size=size, language="en", **fields)
        self.db.add(tournament)
        await self.db.flush()
        for user in members or []:
            self.db.add(TournamentParticipant(tournament_id=tournament.id, user_id=user.id))
        await self.db.commit()
        return tournament


async def wait_until(predicate, timeout: float = 3.0) -> None:
    # Ждем, пока наблюдатель догонит изменения.
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("Condition was not reached in time")
        await asyncio.sleep(0.01)
