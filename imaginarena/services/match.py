"""Жизненный цикл матча: работы, голосование, подсчет, тай-брейк и ручные действия админа."""

import asyncio
import logging
import random
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.core.config import settings
from imaginarena.core.errors import Conflict, InvalidState, NotFound, ValidationError
from imaginarena.db.queries import get_match_submissions, get_match_votes
from imaginarena.models.tournament import Match, Submission, Tournament, Vote
from imaginarena.models.user import User
from imaginarena.services.blob_store import ImageUploader, build_submission_path
from imaginarena.services.bots import display_name
from imaginarena.services.bracket import generate_next_round
from imaginarena.services.identity import require_admin
from imaginarena.services.prompts import random_prompt_excluding
from imaginarena.services.realtime import UPDATE, record_change

logger = logging.getLogger(__name__)

ANONYMOUS_LABELS = ("Player A", "Player B")


class MatchPhase(str, Enum):
    SUBMISSION = "submission"
    VOTING = "voting"
    RESULTS = "results"


@dataclass
class UploadedImage:
    filename: str
    content_type: str
    data: bytes


@dataclass
class EndVotingResult:
    winner_id: int | None
    is_tie: bool
    tally: dict[int, int] = field(default_factory=dict)


def derive_phase(match: Match, submission_count: int) -> MatchPhase:
    # Фаза не хранится: победитель -> результаты, две работы -> голосование.
    if match.winner_id is not None:
        return MatchPhase.RESULTS
    if submission_count == 2:
        return MatchPhase.VOTING
    return MatchPhase.SUBMISSION


async def get_match(db: AsyncSession, match_id: int, *, fresh: bool = False) -> Match:
    query = select(Match).where(Match.id == match_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    match = await db.scalar(query)
    if not match:
        raise NotFound("Match not found")
    return match


async def get_match_phase(db: AsyncSession, match_id: int) -> MatchPhase:
    match = await get_match(db, match_id)
    return derive_phase(match, len(await get_match_submissions(db, match_id)))


async def submit_image(
    db: AsyncSession,
    match_id: int,
    user_id: int,
    image: UploadedImage,
    uploader: ImageUploader,
) -> Submission:
    """Загружает картинку игрока и сохраняет ссылку на нее как работу в матче."""
    match = await get_match(db, match_id)
    if match.winner_id is not None:
        raise InvalidState("Match already has a winner")
    if user_id not in match.player_ids:
        raise ValidationError("Only the two match players can submit")
    if not image.data:
        raise ValidationError("Image file is empty")

    submissions = await get_match_submissions(db, match_id)
    if any(submission.user_id == user_id for submission in submissions):
        raise Conflict("You have already submitted an image for this match")

    path = build_submission_path(match_id, user_id, image.filename)
    image_url = await uploader.upload(path, image.data, image.content_type)

    submission = Submission(match_id=match_id, user_id=user_id, image_url=image_url)
    db.add(submission)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("You have already submitted an image for this match") from exc

    logger.info("User %s submitted to match %s", user_id, match_id)
    return submission


async def vote_for_submission(db: AsyncSession, match_id: int, voter_id: int, submission_id: int) -> Vote:
    match = await get_match(db, match_id)
    submissions = await get_match_submissions(db, match_id)
    if derive_phase(match, len(submissions)) != MatchPhase.VOTING:
        raise InvalidState("Match is not open for voting")
    if voter_id in match.player_ids:
        raise ValidationError("Players cannot vote in their own match")
    if submission_id not in {submission.id for submission in submissions}:
        raise NotFound("Submission not found in this match")
    if await db.scalar(select(Vote.id).where(Vote.match_id == match_id, Vote.voter_id == voter_id)):
        raise Conflict("You have already voted in this match")

    vote = Vote(match_id=match_id, voter_id=voter_id, voted_for_submission_id=submission_id)
    db.add(vote)
    try:
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("You have already voted in this match") from exc
    return vote


def tally_votes(submissions: list[Submission], votes: list[Vote]) -> dict[int, int]:
    counts = Counter(vote.voted_for_submission_id for vote in votes)
    return {submission.id: counts.get(submission.id, 0) for submission in submissions}


def pick_vote_winner(submissions: list[Submission], tally: dict[int, int]) -> int | None:
    """Автор работы со строго большим числом голосов, None при ничьей."""
    ranked = sorted(submissions, key=lambda s: tally.get(s.id, 0), reverse=True)
    if len(ranked) < 2 or tally.get(ranked[0].id, 0) == tally.get(ranked[1].id, 0):
        return None
    return ranked[0].user_id


async def _commit_winner(db: AsyncSession, match: Match, winner_id: int, rng: random.Random | None = None) -> Match:
    # Победитель ставится один раз: обновляем только матч без победителя.
    result = await db.execute(
        update(Match).where(Match.id == match.id, Match.winner_id.is_(None)).values(winner_id=winner_id)
    )
    if result.rowcount == 0:
        await db.commit()
        raise InvalidState("Match already has a winner")

    record_change(db, "matches", UPDATE, {"id": match.id, "tournament_id": match.tournament_id, "winner_id": winner_id})
    await db.commit()
    logger.info("Match %s won by %s", match.id, winner_id)

    await generate_next_round(db, match.tournament_id, rng)
    await db.refresh(match)
    return match


async def _load_voting_state(db: AsyncSession, match_id: int) -> tuple[Match, list[Submission], dict[int, int]]:
    match = await get_match(db, match_id, fresh=True)
    if match.winner_id is not None:
        raise InvalidState("Match already has a winner")
    submissions = await get_match_submissions(db, match_id)
    if len(submissions) != 2:
        raise InvalidState("Match must have exactly 2 submissions to end voting")
    votes = await get_match_votes(db, match_id)
    return match, submissions, tally_votes(submissions, votes)


async def end_voting(
    db: AsyncSession,
    match_id: int,
    actor_id: int,
    rng: random.Random | None = None,
) -> EndVotingResult:
    """Закрывает голосование. При ничьей ничего не пишет, решает вызывающий."""
    await require_admin(db, actor_id)
    match, submissions, tally = await _load_voting_state(db, match_id)

    winner_id = pick_vote_winner(submissions, tally)
    if winner_id is None:
        logger.info("Match %s voting tied: %s", match_id, tally)
        return EndVotingResult(winner_id=None, is_tie=True, tally=tally)

    await _commit_winner(db, match, winner_id, rng)
    return EndVotingResult(winner_id=winner_id, is_tie=False, tally=tally)


def coin_toss(match: Match, rng: random.Random | None = None) -> int:
    return (rng or random).choice(match.player_ids)


async def resolve_tie(
    db: AsyncSession,
    match_id: int,
    actor_id: int,
    rng: random.Random | None = None,
    delay: float | None = None,
) -> int:
    """Подбрасывает монетку после паузы для зрителей и фиксирует победителя."""
    await require_admin(db, actor_id)
    await asyncio.sleep(settings.coin_toss_delay_seconds if delay is None else delay)

    match, submissions, tally = await _load_voting_state(db, match_id)
    if pick_vote_winner(submissions, tally) is not None:
        raise InvalidState("Voting is not tied")

    winner_id = coin_toss(match, rng)
    await _commit_winner(db, match, winner_id, rng)
    return winner_id


async def assign_winner(
    db: AsyncSession,
    match_id: int,
    winner_id: int,
    actor_id: int,
    rng: random.Random | None = None,
) -> Match:
    await require_admin(db, actor_id)
    match = await get_match(db, match_id, fresh=True)
    if winner_id not in match.player_ids:
        raise ValidationError("Winner must be one of the match players")
    if match.winner_id is not None:
        raise InvalidState("Match already has a winner")

    logger.info("Admin %s assigns winner %s to match %s", actor_id, winner_id, match_id)
    return await _commit_winner(db, match, winner_id, rng)


async def change_prompt(
    db: AsyncSession,
    match_id: int,
    actor_id: int,
    rng: random.Random | None = None,
) -> Match:
    await require_admin(db, actor_id)
    match = await get_match(db, match_id)
    submissions = await get_match_submissions(db, match_id)
    if derive_phase(match, len(submissions)) != MatchPhase.SUBMISSION:
        raise InvalidState("Prompt can only be changed during the submission phase")

    language = await db.scalar(select(Tournament.language).where(Tournament.id == match.tournament_id))
    match.prompt = random_prompt_excluding(language, match.prompt, rng)
    await db.commit()
    return match


async def get_user_current_match(db: AsyncSession, user_id: int, tournament_id: int) -> Match | None:
    return await db.scalar(
        select(Match)
        .where(
            Match.tournament_id == tournament_id,
            (Match.player1_id == user_id) | (Match.player2_id == user_id),
            Match.winner_id.is_(None),
        )
        .order_by(Match.round, Match.position)
        .limit(1)
    )


def display_sides(match: Match) -> tuple[int, int]:
    # Одинаково на всех клиентах: порядок зависит только от id матча.
    if random.Random(match.id).random() < 0.5:
        return match.player1_id, match.player2_id
    return match.player2_id, match.player1_id


def is_anonymous_view(tournament: Tournament, viewer: User | None, phase: MatchPhase) -> bool:
    # Админ видит имена всегда, остальные только после результатов.
    return bool(tournament.anonymous_voting and phase != MatchPhase.RESULTS and not (viewer and viewer.is_admin))


def player_display_names(
    match: Match,
    tournament: Tournament,
    viewer: User | None,
    users_by_id: dict[int, User],
    phase: MatchPhase,
) -> dict[int, str]:
    left, right = display_sides(match)
    if is_anonymous_view(tournament, viewer, phase):
        return {left: ANONYMOUS_LABELS[0], right: ANONYMOUS_LABELS[1]}

    names = {}
    for player_id in (left, right):
        user = users_by_id.get(player_id)
        names[player_id] = display_name(user) if user else "Unknown player"
    return names
