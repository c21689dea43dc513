"""Сетка на выбывание: пары первого раунда и переход победителей в следующий раунд."""

import logging
import random
from enum import Enum

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.core.errors import NotFound, ValidationError
from imaginarena.db.queries import create_tournament_matches, get_tournament_matches
from imaginarena.models.tournament import Match, Tournament, TournamentStatus
from imaginarena.services.prompts import random_prompt
from imaginarena.services.realtime import UPDATE, record_change

logger = logging.getLogger(__name__)


class NextRoundOutcome(str, Enum):
    PENDING = "pending"
    CREATED = "created"
    # Раунд или итог турнира уже записан другим вызовом.
    ALREADY_GENERATED = "already_generated"
    FINISHED = "finished"
    # Турнир не идет: лобби, завершен или остановлен админом.
    INACTIVE = "inactive"


def pair_first_round(
    participant_ids: list[int],
    tournament_size: int,
    rng: random.Random | None = None,
) -> list[tuple[int, int]]:
    """Перемешивает участников и разбивает на пары по соседям."""
    if len(participant_ids) != tournament_size:
        raise ValidationError(f"Tournament needs exactly {tournament_size} participants, got {len(participant_ids)}")
    if len(set(participant_ids)) != len(participant_ids):
        raise ValidationError("Participants must be unique")

    shuffled = list(participant_ids)
    (rng or random).shuffle(shuffled)
    return list(zip(shuffled[0::2], shuffled[1::2]))


async def generate_first_round(
    db: AsyncSession,
    tournament: Tournament,
    participant_ids: list[int],
    rng: random.Random | None = None,
) -> list[Match]:
    pairs = pair_first_round(participant_ids, tournament.tournament_size, rng)
    ordered_ids = [player_id for pair in pairs for player_id in pair]
    return await create_tournament_matches(db, tournament.id, ordered_ids, tournament.language, rng)


def completed_round_winners(matches: list[Match]) -> tuple[int | None, list[int]]:
    """Возвращает последний полностью сыгранный раунд и его победителей в порядке матчей."""
    completed = [match for match in matches if match.winner_id is not None]
    if not completed:
        return None, []

    latest_round = max(match.round for match in completed)
    round_matches = [match for match in matches if match.round == latest_round]
    if any(match.winner_id is None for match in round_matches):
        return None, []

    round_matches.sort(key=lambda m: (m.position, m.id))
    return latest_round, [match.winner_id for match in round_matches]


async def _finish_with_champion(db: AsyncSession, tournament_id: int, champion_id: int) -> NextRoundOutcome:
    result = await db.execute(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status == TournamentStatus.IN_PROGRESS.value)
        .values(status=TournamentStatus.FINISHED.value, champion_id=champion_id)
    )
    if result.rowcount == 0:
        await db.commit()
        return NextRoundOutcome.ALREADY_GENERATED

    record_change(
        db,
        "tournaments",
        UPDATE,
        {"id": tournament_id, "status": TournamentStatus.FINISHED.value, "champion_id": champion_id},
    )
    await db.commit()
    logger.info("Tournament %s finished, champion %s", tournament_id, champion_id)
    return NextRoundOutcome.FINISHED


async def generate_next_round(
    db: AsyncSession,
    tournament_id: int,
    rng: random.Random | None = None,
) -> NextRoundOutcome:
    """
    Creates the next round once every match of the latest round has a winner.

    Safe to call repeatedly: an existing next round (or a lost insert race)
    is reported as ALREADY_GENERATED, a single remaining winner finishes the
    tournament. A tournament that is not running is left alone (INACTIVE).
    """
    tournament = await db.scalar(
        select(Tournament).where(Tournament.id == tournament_id).execution_options(populate_existing=True)
    )
    if not tournament:
        raise NotFound("Tournament not found")
    if tournament.status != TournamentStatus.IN_PROGRESS.value:
        return NextRoundOutcome.INACTIVE

    matches = await get_tournament_matches(db, tournament_id)
    latest_round, winners = completed_round_winners(matches)
    if latest_round is None:
        return NextRoundOutcome.PENDING

    if len(winners) == 1:
        return await _finish_with_champion(db, tournament_id, winners[0])

    next_round = latest_round + 1
    existing = await db.scalar(
        select(Match.id)
        .where(
            Match.tournament_id == tournament_id,
            Match.round == next_round,
            or_(Match.player1_id.in_(winners), Match.player2_id.in_(winners)),
        )
        .limit(1)
    )
    if existing:
        return NextRoundOutcome.ALREADY_GENERATED

    if len(winners) % 2:
        logger.warning("Round %s of tournament %s has odd winner count %s", latest_round, tournament_id, len(winners))

    pairs = zip(winners[0::2], winners[1::2])
    for position, (player1_id, player2_id) in enumerate(pairs):
        db.add(
            Match(
                tournament_id=tournament_id,
                round=next_round,
                position=position,
                player1_id=player1_id,
                player2_id=player2_id,
                prompt=random_prompt(tournament.language, rng),
            )
        )

    try:
        await db.commit()
    except IntegrityError:
        # Параллельный вызов уже создал этот раунд.
        await db.rollback()
        logger.warning("Round %s of tournament %s already created by a concurrent call", next_round, tournament_id)
        return NextRoundOutcome.ALREADY_GENERATED

    logger.info("Tournament %s: created round %s with %s matches", tournament_id, next_round, len(winners) // 2)
    return NextRoundOutcome.CREATED


def round_name(round_number: int, match_count: int) -> str:
    if match_count == 1:
        return "Final"
    if match_count == 2:
        return "Semifinals"
    if match_count == 4:
        return "Quarterfinals"
    return f"Round {round_number}"
