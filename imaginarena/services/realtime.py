"""
Change feed - row-level change notifications for live clients

Every committed insert/update/delete of an ORM row is published as a
ChangeEvent. Subscribers register filters like ``tournament_id = 7`` and get
matching events from their own queue. The payload is only a hint: consumers
re-fetch the affected collection instead of merging the row.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from sqlalchemy import event, inspect
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

PENDING_CHANGES_KEY = "pending_changes"
CHANGE_FEED_KEY = "change_feed"

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    table: str
    kind: str
    row: dict[str, Any] = field(default_factory=dict)

    def as_message(self) -> dict[str, Any]:
        return {"table": self.table, "type": self.kind, "row": self.row}


@dataclass(frozen=True)
class ChangeFilter:
    table: str
    column: str
    value: Any

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table or self.column not in change.row:
            return False
        return str(change.row[self.column]) == str(self.value)


def tournament_filters(tournament_id: int) -> list[ChangeFilter]:
    return [
        ChangeFilter("tournaments", "id", tournament_id),
        ChangeFilter("tournament_participants", "tournament_id", tournament_id),
        ChangeFilter("matches", "tournament_id", tournament_id),
    ]


def match_filters(match_id: int) -> list[ChangeFilter]:
    return [
        ChangeFilter("matches", "id", match_id),
        ChangeFilter("submissions", "match_id", match_id),
        ChangeFilter("votes", "match_id", match_id),
    ]


class Subscription:
    """Queue of events matching at least one of the filters"""

    def __init__(self, filters: tuple[ChangeFilter, ...]):
        self.filters = filters
        self._queue: asyncio.Queue[ChangeEvent] = asyncio.Queue()

    def wants(self, change: ChangeEvent) -> bool:
        return any(change_filter.matches(change) for change_filter in self.filters)

    def push(self, change: ChangeEvent) -> None:
        self._queue.put_nowait(change)

    async def get(self, timeout: float | None = None) -> ChangeEvent:
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def pending(self) -> int:
        return self._queue.qsize()

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        return await self._queue.get()


class ChangeFeed:
    def __init__(self):
        self._subscriptions: list[Subscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> None:
        for subscription in list(self._subscriptions):
            if subscription.wants(change):
                subscription.push(change)

    @asynccontextmanager
    async def subscribe(self, *filters: ChangeFilter) -> AsyncIterator[Subscription]:
        subscription = Subscription(filters)
        self._subscriptions.append(subscription)
        try:
            yield subscription
        finally:
            self._subscriptions.remove(subscription)


class ArenaSession(Session):
    """Sync session class behind AsyncSession; its events feed the change feed"""


def _row_snapshot(obj: Any) -> dict[str, Any]:
    # Берем только загруженные атрибуты, чтобы не провоцировать lazy load.
    state = inspect(obj)
    return {attr.key: state.dict[attr.key] for attr in state.mapper.column_attrs if attr.key in state.dict}


def _pending(session: Session) -> list[ChangeEvent]:
    return session.info.setdefault(PENDING_CHANGES_KEY, [])


def record_change(db: AsyncSession, table: str, kind: str, row: dict[str, Any]) -> None:
    """Adds an event for bulk UPDATE/DELETE statements that bypass the unit of work."""
    _pending(db.sync_session).append(ChangeEvent(table=table, kind=kind, row=dict(row)))


@event.listens_for(ArenaSession, "after_flush")
def _collect_flushed_rows(session: Session, _flush_context) -> None:
    pending = _pending(session)
    for kind, objects in ((INSERT, session.new), (UPDATE, session.dirty), (DELETE, session.deleted)):
        for obj in objects:
            table = getattr(obj, "__tablename__", None)
            if table is None:
                continue
            if kind == UPDATE and not session.is_modified(obj, include_collections=False):
                continue
            pending.append(ChangeEvent(table=table, kind=kind, row=_row_snapshot(obj)))


@event.listens_for(ArenaSession, "after_commit")
def _publish_committed_rows(session: Session) -> None:
    changes = session.info.pop(PENDING_CHANGES_KEY, [])
    feed: ChangeFeed | None = session.info.get(CHANGE_FEED_KEY)
    if feed is None or not changes:
        return
    for change in changes:
        feed.publish(change)
    logger.debug("Published %s change events", len(changes))


@event.listens_for(ArenaSession, "after_rollback")
def _drop_rolled_back_rows(session: Session) -> None:
    session.info.pop(PENDING_CHANGES_KEY, None)


# Общая лента изменений процесса.
change_feed = ChangeFeed()
