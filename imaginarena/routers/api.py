import asyncio
import hmac
import logging
from collections import Counter

from fastapi import APIRouter, Depends, File, UploadFile, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from imaginarena.core.config import settings
from imaginarena.core.errors import Unauthorized
from imaginarena.core.session import (
    SESSION_COOKIE,
    SESSION_MAX_AGE,
    create_session_cookie,
    current_user_id,
    read_session_user_id,
)
from imaginarena.db.queries import (
    count_submissions_by_match,
    get_match_submissions,
    get_match_votes,
    get_tournament_matches,
    get_tournament_participants,
)
from imaginarena.db.session import get_db, get_session_factory
from imaginarena.models.tournament import DEFAULT_TOURNAMENT_SIZE, Match, Submission, Tournament
from imaginarena.models.user import User
from imaginarena.services import identity, match as match_service, tournament as tournament_service
from imaginarena.services.blob_store import BlobStore, ImageUploader
from imaginarena.services.bots import display_name
from imaginarena.services.bracket import round_name
from imaginarena.services.match import (
    MatchPhase,
    UploadedImage,
    derive_phase,
    display_sides,
    is_anonymous_view,
    player_display_names,
)
from imaginarena.services.realtime import ChangeEvent, change_feed
from imaginarena.services.sync import ArenaState, MatchWatcher, TournamentWatcher

logger = logging.getLogger(__name__)

router = APIRouter()

SNAPSHOT = "SNAPSHOT"


class SessionIn(BaseModel):
    user_id: int
    provider_key: str


class ProfileIn(BaseModel):
    username: str


class TournamentCreateIn(BaseModel):
    tournament_size: int = DEFAULT_TOURNAMENT_SIZE
    language: str = "en"
    anonymous_voting: bool = False


class ToggleIn(BaseModel):
    enabled: bool


class VoteIn(BaseModel):
    submission_id: int


class WinnerIn(BaseModel):
    winner_id: int


def get_uploader() -> ImageUploader:
    return BlobStore()


def user_out(user: User) -> dict:
    return {
        "id": user.id,
        "username": user.username,
        "display_name": display_name(user),
        "is_admin": user.is_admin,
        "is_bot": user.is_bot,
        "created_at": user.created_at,
    }


def tournament_out(tournament: Tournament, **extra) -> dict:
    return {
        "id": tournament.id,
        "status": tournament.status,
        "tournament_size": tournament.tournament_size,
        "language": tournament.language,
        "anonymous_voting": tournament.anonymous_voting,
        "admin_ended": tournament.admin_ended,
        "champion_id": tournament.champion_id,
        "created_at": tournament.created_at,
        **extra,
    }


def match_out(match: Match, phase: MatchPhase) -> dict:
    return {
        "id": match.id,
        "tournament_id": match.tournament_id,
        "round": match.round,
        "position": match.position,
        "player1_id": match.player1_id,
        "player2_id": match.player2_id,
        "prompt": match.prompt,
        "winner_id": match.winner_id,
        "phase": phase.value,
    }


@router.post("/session")
async def open_session(payload: SessionIn):
    """Привязывает id пользователя от провайдера идентификации к cookie сессии."""
    if not hmac.compare_digest(payload.provider_key, settings.identity_provider_key):
        raise Unauthorized("Unknown identity provider")
    response = JSONResponse({"user_id": payload.user_id})
    response.set_cookie(
        SESSION_COOKIE,
        create_session_cookie(payload.user_id),
        httponly=True,
        samesite="lax",
        max_age=SESSION_MAX_AGE,
    )
    return response


@router.get("/me")
async def me(user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    lookup = await identity.load_profile(db, user_id)
    return {"needs_profile": lookup.needs_profile, "user": user_out(lookup.user) if lookup.user else None}


@router.post("/me/profile", status_code=201)
async def create_profile(payload: ProfileIn, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    user = await identity.create_profile(db, user_id, payload.username)
    return user_out(user)


@router.get("/tournaments")
async def list_tournaments(db: AsyncSession = Depends(get_db)):
    summaries = await tournament_service.list_tournaments(db)
    return [tournament_out(item.tournament, participant_count=item.participant_count) for item in summaries]


@router.post("/tournaments", status_code=201)
async def create_tournament(
    payload: TournamentCreateIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    tournament = await tournament_service.create_tournament(
        db,
        user_id,
        tournament_size=payload.tournament_size,
        language=payload.language,
        anonymous_voting=payload.anonymous_voting,
    )
    return tournament_out(tournament, participant_count=0)


@router.get("/tournaments/current")
async def current_tournament(db: AsyncSession = Depends(get_db)):
    tournament = await tournament_service.get_or_create_current_tournament(db)
    participants = await get_tournament_participants(db, tournament.id)
    return tournament_out(tournament, participant_count=len(participants))


async def _matches_with_phase(db: AsyncSession, tournament_id: int) -> list[dict]:
    submission_counts = await count_submissions_by_match(db, tournament_id)
    matches = await get_tournament_matches(db, tournament_id)
    round_sizes = Counter(match.round for match in matches)
    return [
        {
            **match_out(match, derive_phase(match, submission_counts.get(match.id, 0))),
            "round_name": round_name(match.round, round_sizes[match.round]),
        }
        for match in matches
    ]


@router.get("/tournaments/{tournament_id}")
async def tournament_details(tournament_id: int, db: AsyncSession = Depends(get_db)):
    details = await tournament_service.get_tournament_details(db, tournament_id)
    return tournament_out(
        details.tournament,
        participant_count=len(details.participants),
        participants=[user_out(user) for user in details.participants],
        matches=await _matches_with_phase(db, tournament_id),
    )


@router.get("/tournaments/{tournament_id}/participants")
async def tournament_participants(tournament_id: int, db: AsyncSession = Depends(get_db)):
    await tournament_service.get_tournament(db, tournament_id)
    return [user_out(user) for user in await get_tournament_participants(db, tournament_id)]


@router.get("/tournaments/{tournament_id}/matches")
async def tournament_matches(tournament_id: int, db: AsyncSession = Depends(get_db)):
    await tournament_service.get_tournament(db, tournament_id)
    return await _matches_with_phase(db, tournament_id)


@router.post("/tournaments/{tournament_id}/join")
async def join_tournament(tournament_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    started = await tournament_service.join_tournament(db, tournament_id, user_id)
    return {"joined": True, "started": started}


@router.post("/tournaments/{tournament_id}/bots")
async def fill_with_bots(tournament_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    bots = await tournament_service.fill_with_bots(db, tournament_id, user_id)
    return {"bots": [user_out(bot) for bot in bots]}


@router.post("/tournaments/{tournament_id}/anonymous-voting")
async def set_anonymous_voting(
    tournament_id: int,
    payload: ToggleIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    tournament = await tournament_service.set_anonymous_voting(db, tournament_id, user_id, payload.enabled)
    return tournament_out(tournament)


@router.post("/tournaments/{tournament_id}/force-finish")
async def force_finish(tournament_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    return tournament_out(await tournament_service.force_finish(db, tournament_id, user_id))


@router.post("/tournaments/{tournament_id}/reset")
async def reset_tournament(tournament_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    return tournament_out(await tournament_service.reset_to_lobby(db, tournament_id, user_id))


@router.delete("/tournaments/{tournament_id}", status_code=204)
async def delete_tournament(tournament_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    await tournament_service.delete_tournament(db, tournament_id, user_id)


def _submission_out(submission: Submission, hidden: bool, sides: dict[int, str]) -> dict:
    return {
        "id": submission.id,
        "user_id": None if hidden else submission.user_id,
        "side": sides.get(submission.user_id),
        "image_url": submission.image_url,
    }


@router.get("/matches/{match_id}")
async def match_details(match_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    """Матч с фазой, работами, подсчетом голосов и именами игроков для текущего зрителя."""
    match = await match_service.get_match(db, match_id)
    tournament = await tournament_service.get_tournament(db, match.tournament_id)
    submissions = await get_match_submissions(db, match_id)
    votes = await get_match_votes(db, match_id)
    phase = derive_phase(match, len(submissions))

    viewer = await db.scalar(select(User).where(User.id == user_id))
    players = list((await db.scalars(select(User).where(User.id.in_(match.player_ids)))).all())
    names = player_display_names(match, tournament, viewer, {user.id: user for user in players}, phase)
    hidden = is_anonymous_view(tournament, viewer, phase)

    left, right = display_sides(match)
    sides = {left: "left", right: "right"}
    tally = match_service.tally_votes(submissions, votes)
    return {
        **match_out(match, phase),
        "players": [
            {"side": sides[player_id], "user_id": None if hidden else player_id, "name": names[player_id]}
            for player_id in (left, right)
        ],
        "submissions": [_submission_out(submission, hidden, sides) for submission in submissions],
        "votes": {str(submission_id): count for submission_id, count in tally.items()},
        "has_voted": any(vote.voter_id == user_id for vote in votes),
    }


@router.post("/matches/{match_id}/submissions", status_code=201)
async def submit_image(
    match_id: int,
    image: UploadFile = File(...),
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
    uploader: ImageUploader = Depends(get_uploader),
):
    uploaded = UploadedImage(
        filename=image.filename or "",
        content_type=image.content_type or "application/octet-stream",
        data=await image.read(),
    )
    submission = await match_service.submit_image(db, match_id, user_id, uploaded, uploader)
    return {"id": submission.id, "match_id": submission.match_id, "image_url": submission.image_url}


@router.post("/matches/{match_id}/votes", status_code=201)
async def vote(match_id: int, payload: VoteIn, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    created = await match_service.vote_for_submission(db, match_id, user_id, payload.submission_id)
    return {"id": created.id, "submission_id": created.voted_for_submission_id}


@router.post("/matches/{match_id}/end-voting")
async def end_voting(match_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    result = await match_service.end_voting(db, match_id, user_id)
    return {
        "winner_id": result.winner_id,
        "is_tie": result.is_tie,
        "tally": {str(submission_id): count for submission_id, count in result.tally.items()},
    }


@router.post("/matches/{match_id}/coin-toss")
async def coin_toss(match_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    winner_id = await match_service.resolve_tie(db, match_id, user_id)
    return {"winner_id": winner_id}


@router.post("/matches/{match_id}/winner")
async def assign_winner(
    match_id: int,
    payload: WinnerIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    match = await match_service.assign_winner(db, match_id, payload.winner_id, user_id)
    return match_out(match, MatchPhase.RESULTS)


@router.post("/matches/{match_id}/prompt")
async def change_prompt(match_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    match = await match_service.change_prompt(db, match_id, user_id)
    return {"id": match.id, "prompt": match.prompt}


@router.get("/admin/users")
async def admin_users(user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    return [user_out(user) for user in await identity.list_users(db, user_id)]


@router.post("/admin/users/{target_id}/admin")
async def admin_set_flag(
    target_id: int,
    payload: ToggleIn,
    user_id: int = Depends(current_user_id),
    db: AsyncSession = Depends(get_db),
):
    return user_out(await identity.set_admin_flag(db, user_id, target_id, payload.enabled))


@router.delete("/admin/users/{target_id}", status_code=204)
async def admin_delete_user(target_id: int, user_id: int = Depends(current_user_id), db: AsyncSession = Depends(get_db)):
    await identity.delete_user(db, user_id, target_id)


async def _receive_until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.debug("Change listener disconnected")


async def stream_watcher(websocket: WebSocket, watcher: TournamentWatcher | MatchWatcher) -> None:
    """Первым сообщением уходит снимок, дальше подсказка об изменении и свежая сводка после каждого перечитывания."""

    async def push(change: ChangeEvent) -> None:
        await websocket.send_json(jsonable_encoder({**change.as_message(), "state": watcher.summary()}))

    watcher.on_update = push
    await websocket.accept()
    runner = asyncio.create_task(watcher.run())
    ready = asyncio.create_task(watcher.ready.wait())
    receiver = None
    try:
        await asyncio.wait({runner, ready}, return_when=asyncio.FIRST_COMPLETED)
        if watcher.ready.is_set():
            await websocket.send_json(jsonable_encoder({"type": SNAPSHOT, "state": watcher.summary()}))
            receiver = asyncio.create_task(_receive_until_disconnect(websocket))
            await asyncio.wait({runner, receiver}, return_when=asyncio.FIRST_COMPLETED)

        if runner.done() and not runner.cancelled() and runner.exception() is not None:
            logger.error("Change stream stopped", exc_info=runner.exception())
            if receiver is None or not receiver.done():
                await websocket.close(code=1011)
    finally:
        tasks = [task for task in (runner, ready, receiver) if task is not None]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)


def _socket_state(websocket: WebSocket) -> ArenaState:
    return ArenaState(user_id=read_session_user_id(websocket.cookies.get(SESSION_COOKIE)))


@router.websocket("/ws/tournaments/{tournament_id}")
async def tournament_changes(
    websocket: WebSocket,
    tournament_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    watcher = TournamentWatcher(change_feed, session_factory, _socket_state(websocket), tournament_id)
    await stream_watcher(websocket, watcher)


@router.websocket("/ws/matches/{match_id}")
async def match_changes(
    websocket: WebSocket,
    match_id: int,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
):
    watcher = MatchWatcher(change_feed, session_factory, _socket_state(websocket), match_id)
    await stream_watcher(websocket, watcher)
