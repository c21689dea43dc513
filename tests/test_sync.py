import asyncio
import os
import random
import tempfile

import arena_db
from imaginarena.db.queries import get_match_submissions, get_tournament_matches
from imaginarena.models.tournament import TournamentParticipant, TournamentStatus
from imaginarena.services.match import MatchPhase, UploadedImage, assign_winner, submit_image, vote_for_submission
from imaginarena.services.sync import ArenaState, MatchWatcher, TournamentWatcher
from imaginarena.services.tournament import maybe_auto_start, reset_to_lobby

wait_until = arena_db.wait_until


class StaticUploader:
    async def upload(self, path: str, data: bytes, content_type: str) -> str:
        return f"https://cdn.test/{path}"


class WatcherTests(arena_db.ArenaTestCase):
    async def asyncSetUp(self) -> None:
        handle, self.db_path = tempfile.mkstemp(suffix=".db")
        os.close(handle)
        await super().asyncSetUp()
        self.tasks: list[asyncio.Task] = []

    async def asyncTearDown(self) -> None:
        for task in self.tasks:
            task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)
        await super().asyncTearDown()
        os.remove(self.db_path)

    async def _run(self, watcher) -> None:
        self.tasks.append(asyncio.create_task(watcher.run()))
        await asyncio.wait_for(watcher.ready.wait(), timeout=3)

    async def test_tournament_watcher_starts_full_lobby(self) -> None:
        players = await self.add_users(4)
        lobby = await self.add_lobby(4, players[:3])
        lobby_id = lobby.id
        state = ArenaState(user_id=players[3].id)
        watcher = TournamentWatcher(self.feed, self.session_factory, state, lobby_id)
        await self._run(watcher)

        self.assertEqual(state.tournament.status, TournamentStatus.LOBBY.value)
        self.assertEqual(len(state.participants), 3)

        # Последний игрок входит в обход контроллера: старт делает наблюдатель.
        self.db.add(TournamentParticipant(tournament_id=lobby_id, user_id=players[3].id))
        await self.db.commit()

        await wait_until(lambda: state.tournament.status == TournamentStatus.IN_PROGRESS.value and len(state.matches) == 2)
        self.assertEqual(len(state.participants), 4)
        self.assertIsNotNone(state.current_match)
        self.assertIn(players[3].id, state.current_match.player_ids)
        self.assertEqual(len(await get_tournament_matches(self.db, lobby_id)), 2)

    async def test_match_watcher_follows_phases(self) -> None:
        admin = await self.add_user("arena_admin", is_admin=True)
        players = await self.add_users(4)
        viewer = await self.add_user("viewer_one")
        lobby = await self.add_lobby(4, players)
        await maybe_auto_start(self.db, lobby.id, random.Random(5))
        match = (await get_tournament_matches(self.db, lobby.id))[0]

        state = ArenaState(user_id=viewer.id)
        watcher = MatchWatcher(self.feed, self.session_factory, state, match.id)
        await self._run(watcher)
        self.assertEqual(state.phase, MatchPhase.SUBMISSION)

        for player_id in match.player_ids:
            await submit_image(self.db, match.id, player_id, UploadedImage("a.png", "image/png", b"img"), StaticUploader())
        await wait_until(lambda: state.phase == MatchPhase.VOTING)
        self.assertEqual(len(state.submissions), 2)

        submissions = await get_match_submissions(self.db, match.id)
        await vote_for_submission(self.db, match.id, viewer.id, submissions[0].id)
        await wait_until(lambda: len(state.votes) == 1)

        await assign_winner(self.db, match.id, match.player1_id, admin.id)
        await wait_until(lambda: state.phase == MatchPhase.RESULTS)
        self.assertEqual(state.current_match.winner_id, match.player1_id)

    async def test_watcher_survives_refetch_errors(self) -> None:
        players = await self.add_users(4)
        lobby = await self.add_lobby(4, players)
        await maybe_auto_start(self.db, lobby.id, random.Random(5))
        match = (await get_tournament_matches(self.db, lobby.id))[0]

        state = ArenaState()
        watcher = MatchWatcher(self.feed, self.session_factory, state, match.id)
        real_refresh = watcher.refresh_submissions
        failures = []

        async def flaky_refresh(db) -> None:
            if not failures:
                failures.append(True)
                raise RuntimeError("database went away")
            await real_refresh(db)

        watcher.refresh_submissions = flaky_refresh
        await self._run(watcher)

        uploader = StaticUploader()
        with self.assertLogs("imaginarena.services.sync", level="ERROR"):
            await submit_image(self.db, match.id, match.player1_id, UploadedImage("a.png", "image/png", b"1"), uploader)
            await wait_until(lambda: failures)
            await asyncio.sleep(0.05)

        self.assertEqual(state.submissions, [])
        await submit_image(self.db, match.id, match.player2_id, UploadedImage("b.png", "image/png", b"2"), uploader)
        await wait_until(lambda: state.phase == MatchPhase.VOTING)
        self.assertFalse(self.tasks[0].done())

    async def test_match_watcher_drops_match_removed_by_reset(self) -> None:
        admin = await self.add_user("arena_admin", is_admin=True)
        players = await self.add_users(4)
        lobby = await self.add_lobby(4, players)
        await maybe_auto_start(self.db, lobby.id, random.Random(5))
        match = (await get_tournament_matches(self.db, lobby.id))[0]
        await submit_image(self.db, match.id, match.player1_id, UploadedImage("a.png", "image/png", b"1"), StaticUploader())

        state = ArenaState()
        watcher = MatchWatcher(self.feed, self.session_factory, state, match.id)
        await self._run(watcher)
        self.assertEqual(len(state.submissions), 1)

        await reset_to_lobby(self.db, lobby.id, admin.id)

        await wait_until(lambda: state.current_match is None)
        self.assertIsNone(state.phase)
        self.assertEqual(state.submissions, [])
        self.assertEqual(watcher.summary(), {"phase": None, "winner_id": None, "submission_count": 0, "vote_count": 0})
