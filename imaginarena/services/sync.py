"""
Client-side watchers - keep an ArenaState in step with the change feed

A watcher subscribes to the hints for one tournament or one match and, on
every hint, re-fetches the whole affected collection. Rows in the hint are
never merged, so a missed or reordered hint only delays the state until the
next one arrives. The WebSocket routes run one watcher per connection and
push its summary after every refresh.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaginarena.core.errors import NotFound
from imaginarena.db.queries import (
    get_match_submissions,
    get_match_votes,
    get_tournament_matches,
    get_tournament_participants,
)
from imaginarena.models.tournament import Match, Submission, Tournament, Vote
from imaginarena.models.user import User
from imaginarena.services.match import MatchPhase, derive_phase, get_match, get_user_current_match
from imaginarena.services.realtime import ChangeEvent, ChangeFeed, match_filters, tournament_filters
from imaginarena.services.tournament import get_tournament, maybe_auto_start

logger = logging.getLogger(__name__)

UpdateCallback = Callable[[ChangeEvent], Awaitable[None]]


@dataclass
class ArenaState:
    """Снимок того, что видит один клиент."""

    user_id: int | None = None
    tournament: Tournament | None = None
    participants: list[User] = field(default_factory=list)
    matches: list[Match] = field(default_factory=list)
    current_match: Match | None = None
    submissions: list[Submission] = field(default_factory=list)
    votes: list[Vote] = field(default_factory=list)
    phase: MatchPhase | None = None


class _Watcher:
    table_handlers: dict[str, str] = {}

    def __init__(
        self,
        feed: ChangeFeed,
        session_factory: async_sessionmaker[AsyncSession],
        state: ArenaState,
        on_update: UpdateCallback | None = None,
    ):
        self.feed = feed
        self.session_factory = session_factory
        self.state = state
        self.on_update = on_update
        self.ready = asyncio.Event()
        self.updated = asyncio.Event()

    def filters(self):
        raise NotImplementedError

    def summary(self) -> dict[str, Any]:
        raise NotImplementedError

    async def refresh(self, db: AsyncSession) -> None:
        raise NotImplementedError

    async def handle(self, change: ChangeEvent) -> None:
        handler = getattr(self, self.table_handlers.get(change.table, "refresh"))
        try:
            async with self.session_factory() as db:
                await handler(db)
        except Exception:
            # Наблюдатель не падает: следующая подсказка снова все перечитает.
            logger.exception("Failed to re-fetch state after %s %s", change.kind, change.table)
            return
        self.updated.set()
        # Ошибка отправки клиенту останавливает наблюдателя.
        if self.on_update is not None:
            await self.on_update(change)

    async def run(self) -> None:
        async with self.feed.subscribe(*self.filters()) as subscription:
            async with self.session_factory() as db:
                await self.refresh(db)
            self.ready.set()
            async for change in subscription:
                await self.handle(change)

    async def wait_for_update(self, timeout: float = 2.0) -> bool:
        try:
            await asyncio.wait_for(self.updated.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self.updated.clear()
        return True


class TournamentWatcher(_Watcher):
    table_handlers = {
        "tournaments": "refresh_tournament",
        "tournament_participants": "refresh_participants",
        "matches": "refresh_matches",
    }

    def __init__(self, feed, session_factory, state, tournament_id: int, on_update: UpdateCallback | None = None):
        super().__init__(feed, session_factory, state, on_update)
        self.tournament_id = tournament_id

    def filters(self):
        return tournament_filters(self.tournament_id)

    def summary(self) -> dict[str, Any]:
        tournament = self.state.tournament
        return {
            "status": tournament.status if tournament else None,
            "champion_id": tournament.champion_id if tournament else None,
            "participant_count": len(self.state.participants),
            "match_count": len(self.state.matches),
            "current_match_id": self.state.current_match.id if self.state.current_match else None,
        }

    async def refresh(self, db: AsyncSession) -> None:
        await self.refresh_tournament(db)
        self.state.participants = await get_tournament_participants(db, self.tournament_id)
        await self.refresh_matches(db)

    async def refresh_tournament(self, db: AsyncSession) -> None:
        try:
            self.state.tournament = await get_tournament(db, self.tournament_id, fresh=True)
        except NotFound:
            self.state.tournament = None

    async def refresh_participants(self, db: AsyncSession) -> None:
        self.state.participants = await get_tournament_participants(db, self.tournament_id)
        if self.state.tournament is None:
            return
        # Полное лобби запускается любым клиентом, повторный запуск ничего не делает.
        if await maybe_auto_start(db, self.tournament_id):
            await self.refresh_tournament(db)
            await self.refresh_matches(db)

    async def refresh_matches(self, db: AsyncSession) -> None:
        self.state.matches = await get_tournament_matches(db, self.tournament_id)
        if self.state.user_id is not None:
            self.state.current_match = await get_user_current_match(db, self.state.user_id, self.tournament_id)


class MatchWatcher(_Watcher):
    table_handlers = {
        "matches": "refresh_match",
        "submissions": "refresh_submissions",
        "votes": "refresh_votes",
    }

    def __init__(self, feed, session_factory, state, match_id: int, on_update: UpdateCallback | None = None):
        super().__init__(feed, session_factory, state, on_update)
        self.match_id = match_id

    def filters(self):
        return match_filters(self.match_id)

    def summary(self) -> dict[str, Any]:
        match = self.state.current_match
        return {
            "phase": self.state.phase.value if self.state.phase else None,
            "winner_id": match.winner_id if match else None,
            "submission_count": len(self.state.submissions),
            "vote_count": len(self.state.votes),
        }

    def _derive_phase(self) -> None:
        if self.state.current_match is None:
            self.state.phase = None
        else:
            self.state.phase = derive_phase(self.state.current_match, len(self.state.submissions))

    async def refresh(self, db: AsyncSession) -> None:
        await self.refresh_match(db)
        self.state.submissions = await get_match_submissions(db, self.match_id)
        self.state.votes = await get_match_votes(db, self.match_id)
        self._derive_phase()

    async def refresh_match(self, db: AsyncSession) -> None:
        try:
            self.state.current_match = await get_match(db, self.match_id, fresh=True)
        except NotFound:
            # Матч удален сбросом или удалением турнира.
            self.state.current_match = None
        self._derive_phase()

    async def refresh_submissions(self, db: AsyncSession) -> None:
        self.state.submissions = await get_match_submissions(db, self.match_id)
        self._derive_phase()

    async def refresh_votes(self, db: AsyncSession) -> None:
        self.state.votes = await get_match_votes(db, self.match_id)
