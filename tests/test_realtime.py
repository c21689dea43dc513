import asyncio

import pytest

import arena_db
from imaginarena.db.queries import get_tournament_matches
from imaginarena.models.tournament import TournamentParticipant
from imaginarena.services.realtime import (
    DELETE,
    INSERT,
    UPDATE,
    ChangeEvent,
    ChangeFeed,
    ChangeFilter,
    match_filters,
    record_change,
    tournament_filters,
)
from imaginarena.services.tournament import maybe_auto_start, reset_to_lobby


def test_change_filter_compares_values_as_text() -> None:
    change = ChangeEvent("matches", UPDATE, {"id": 5, "tournament_id": 7})

    assert ChangeFilter("matches", "tournament_id", 7).matches(change)
    assert ChangeFilter("matches", "tournament_id", "7").matches(change)
    assert not ChangeFilter("matches", "tournament_id", 8).matches(change)
    assert not ChangeFilter("votes", "tournament_id", 7).matches(change)
    assert not ChangeFilter("matches", "match_id", 5).matches(change)


def test_feed_routes_events_to_matching_subscribers() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        async with feed.subscribe(*tournament_filters(1)) as first, feed.subscribe(*match_filters(10)) as second:
            assert feed.subscriber_count == 2
            feed.publish(ChangeEvent("tournament_participants", INSERT, {"tournament_id": 1, "user_id": 3}))
            feed.publish(ChangeEvent("votes", INSERT, {"match_id": 10, "voter_id": 4}))
            feed.publish(ChangeEvent("votes", INSERT, {"match_id": 11, "voter_id": 4}))

            assert (await first.get(timeout=1)).table == "tournament_participants"
            assert (await second.get(timeout=1)).row == {"match_id": 10, "voter_id": 4}
            assert first.pending() == 0
            assert second.pending() == 0
        assert feed.subscriber_count == 0

    asyncio.run(scenario())


def test_subscription_is_released_when_consumer_fails() -> None:
    async def scenario() -> None:
        feed = ChangeFeed()
        with pytest.raises(RuntimeError):
            async with feed.subscribe(*tournament_filters(1)):
                raise RuntimeError("consumer crashed")
        assert feed.subscriber_count == 0

    asyncio.run(scenario())


class SessionChangeCaptureTests(arena_db.ArenaTestCase):
    async def test_insert_is_published_only_after_commit(self) -> None:
        user = await self.add_user("watcher_user")
        lobby = await self.add_lobby(4)

        async with self.feed.subscribe(*tournament_filters(lobby.id)) as subscription:
            self.db.add(TournamentParticipant(tournament_id=lobby.id, user_id=user.id))
            await self.db.flush()
            self.assertEqual(subscription.pending(), 0)

            await self.db.commit()
            change = await subscription.get(timeout=1)

        self.assertEqual(change.table, "tournament_participants")
        self.assertEqual(change.kind, INSERT)
        self.assertEqual(change.row["user_id"], user.id)
        self.assertIn("id", change.row)

    async def test_rollback_drops_captured_rows(self) -> None:
        user = await self.add_user("rolled_back")
        lobby = await self.add_lobby(4)
        lobby_id, user_id = lobby.id, user.id

        async with self.feed.subscribe(*tournament_filters(lobby_id)) as subscription:
            self.db.add(TournamentParticipant(tournament_id=lobby_id, user_id=user_id))
            await self.db.flush()
            await self.db.rollback()
            await self.db.commit()

            self.assertEqual(subscription.pending(), 0)

    async def test_update_and_delete_are_published(self) -> None:
        lobby = await self.add_lobby(4)

        async with self.feed.subscribe(*tournament_filters(lobby.id)) as subscription:
            lobby.anonymous_voting = True
            await self.db.commit()
            updated = await subscription.get(timeout=1)

            await self.db.delete(lobby)
            await self.db.commit()
            deleted = await subscription.get(timeout=1)

        self.assertEqual((updated.kind, updated.row["anonymous_voting"]), (UPDATE, True))
        self.assertEqual(deleted.kind, DELETE)

    async def test_unchanged_rows_are_not_published(self) -> None:
        lobby = await self.add_lobby(4)

        async with self.feed.subscribe(*tournament_filters(lobby.id)) as subscription:
            lobby.language = lobby.language
            await self.db.commit()

            self.assertEqual(subscription.pending(), 0)

    async def test_recorded_bulk_changes_follow_commit(self) -> None:
        async with self.feed.subscribe(*tournament_filters(3)) as subscription:
            record_change(self.db, "matches", DELETE, {"tournament_id": 3})
            self.assertEqual(subscription.pending(), 0)

            await self.db.commit()
            change = await subscription.get(timeout=1)

        self.assertEqual(change.as_message(), {"table": "matches", "type": DELETE, "row": {"tournament_id": 3}})

    async def test_reset_notifies_match_subscribers(self) -> None:
        admin = await self.add_user("arena_admin", is_admin=True)
        players = await self.add_users(2)
        lobby = await self.add_lobby(2, players)
        lobby_id = lobby.id
        await maybe_auto_start(self.db, lobby_id)
        match_id = (await get_tournament_matches(self.db, lobby_id))[0].id

        async with self.feed.subscribe(*match_filters(match_id)) as subscription:
            await reset_to_lobby(self.db, lobby_id, admin.id)
            changes = [await subscription.get(timeout=1) for _ in range(3)]

        self.assertEqual(
            [change.as_message() for change in changes],
            [
                {"table": "votes", "type": DELETE, "row": {"match_id": match_id}},
                {"table": "submissions", "type": DELETE, "row": {"match_id": match_id}},
                {"table": "matches", "type": DELETE, "row": {"id": match_id, "tournament_id": lobby_id}},
            ],
        )
