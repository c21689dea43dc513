"""Запросы к хранилищу, общие для контроллеров турнира и матчей."""

import random

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.models.tournament import Match, Submission, TournamentParticipant, Vote
from imaginarena.models.user import User
from imaginarena.services.prompts import random_prompt


async def get_tournament_participants(db: AsyncSession, tournament_id: int) -> list[User]:
    # Участники в порядке входа в лобби.
    return list(
        (
            await db.scalars(
                select(User)
                .join(TournamentParticipant, TournamentParticipant.user_id == User.id)
                .where(TournamentParticipant.tournament_id == tournament_id)
                .order_by(TournamentParticipant.joined_at, TournamentParticipant.id)
            )
        ).all()
    )


async def count_tournament_participants(db: AsyncSession, tournament_id: int) -> int:
    count = await db.scalar(
        select(func.count(TournamentParticipant.id)).where(TournamentParticipant.tournament_id == tournament_id)
    )
    return count or 0


async def get_tournament_participant_ids(db: AsyncSession, tournament_id: int) -> list[int]:
    return list(
        (
            await db.scalars(
                select(TournamentParticipant.user_id)
                .where(TournamentParticipant.tournament_id == tournament_id)
                .order_by(TournamentParticipant.joined_at, TournamentParticipant.id)
            )
        ).all()
    )


async def create_tournament_matches(
    db: AsyncSession,
    tournament_id: int,
    ordered_participant_ids: list[int],
    language: str,
    rng: random.Random | None = None,
) -> list[Match]:
    """Добавляет пары первого раунда (0&1, 2&3, ...) одним flush; коммит делает вызывающий."""
    matches = []
    pairs = zip(ordered_participant_ids[0::2], ordered_participant_ids[1::2])
    for position, (player1_id, player2_id) in enumerate(pairs):
        match = Match(
            tournament_id=tournament_id,
            round=1,
            position=position,
            player1_id=player1_id,
            player2_id=player2_id,
            prompt=random_prompt(language, rng),
        )
        db.add(match)
        matches.append(match)
    await db.flush()
    return matches


async def get_tournament_matches(db: AsyncSession, tournament_id: int) -> list[Match]:
    return list(
        (
            await db.scalars(
                select(Match)
                .where(Match.tournament_id == tournament_id)
                .order_by(Match.round, Match.position, Match.id)
            )
        ).all()
    )


async def get_match_submissions(db: AsyncSession, match_id: int) -> list[Submission]:
    return list(
        (
            await db.scalars(
                select(Submission).where(Submission.match_id == match_id).order_by(Submission.created_at, Submission.id)
            )
        ).all()
    )


async def get_match_votes(db: AsyncSession, match_id: int) -> list[Vote]:
    return list((await db.scalars(select(Vote).where(Vote.match_id == match_id).order_by(Vote.id))).all())


async def count_submissions_by_match(db: AsyncSession, tournament_id: int) -> dict[int, int]:
    # Сколько работ у каждого матча турнира, нужно для вычисления фазы.
    rows = (
        await db.execute(
            select(Submission.match_id, func.count(Submission.id))
            .join(Match, Match.id == Submission.match_id)
            .where(Match.tournament_id == tournament_id)
            .group_by(Submission.match_id)
        )
    ).all()
    return {match_id: count for match_id, count in rows}
