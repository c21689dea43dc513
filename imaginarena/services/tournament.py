import logging
import random
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import delete, func, insert, literal, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.core.errors import Conflict, InvalidState, NotFound, ValidationError
from imaginarena.db.queries import (
    count_tournament_participants,
    get_tournament_matches,
    get_tournament_participant_ids,
    get_tournament_participants,
)
from imaginarena.models.tournament import (
    DEFAULT_TOURNAMENT_SIZE,
    LANGUAGES,
    TOURNAMENT_SIZES,
    Match,
    Submission,
    Tournament,
    TournamentParticipant,
    TournamentStatus,
    Vote,
)
from imaginarena.models.user import User
from imaginarena.services.bots import create_bot_users
from imaginarena.services.bracket import generate_first_round
from imaginarena.services.identity import require_admin
from imaginarena.services.realtime import DELETE, INSERT, UPDATE, record_change

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (TournamentStatus.LOBBY.value, TournamentStatus.IN_PROGRESS.value)


@dataclass
class TournamentSummary:
    tournament: Tournament
    participant_count: int


@dataclass
class TournamentDetails:
    tournament: Tournament
    participants: list[User]
    matches: list[Match]


def validate_tournament_options(tournament_size: int, language: str) -> None:
    if tournament_size not in TOURNAMENT_SIZES:
        raise ValidationError(f"Tournament size must be one of {', '.join(map(str, TOURNAMENT_SIZES))}")
    if language not in LANGUAGES:
        raise ValidationError(f"Language must be one of {', '.join(LANGUAGES)}")


async def get_tournament(db: AsyncSession, tournament_id: int, *, fresh: bool = False) -> Tournament:
    query = select(Tournament).where(Tournament.id == tournament_id)
    if fresh:
        query = query.execution_options(populate_existing=True)
    tournament = await db.scalar(query)
    if not tournament:
        raise NotFound("Tournament not found")
    return tournament


async def create_tournament(
    db: AsyncSession,
    actor_id: int,
    tournament_size: int = DEFAULT_TOURNAMENT_SIZE,
    language: str = "en",
    anonymous_voting: bool = False,
) -> Tournament:
    """Создает лобби нужного размера. Основной сценарий, доступен только админу."""
    await require_admin(db, actor_id)
    validate_tournament_options(tournament_size, language)

    tournament = Tournament(
        status=TournamentStatus.LOBBY.value,
        tournament_size=tournament_size,
        language=language,
        anonymous_voting=anonymous_voting,
        created_by=actor_id,
    )
    db.add(tournament)
    await db.commit()
    logger.info("Admin %s created %s-player tournament %s (%s)", actor_id, tournament_size, tournament.id, language)
    return tournament


async def get_current_tournament(db: AsyncSession) -> Tournament | None:
    # Самый свежий незавершенный турнир.
    return await db.scalar(
        select(Tournament)
        .where(Tournament.status.in_(ACTIVE_STATUSES))
        .order_by(Tournament.created_at.desc(), Tournament.id.desc())
        .limit(1)
    )


async def get_or_create_current_tournament(db: AsyncSession) -> Tournament:
    """Упрощенный сценарий: всегда есть текущее лобби на 16 игроков."""
    tournament = await get_current_tournament(db)
    if tournament:
        return tournament

    tournament = Tournament(status=TournamentStatus.LOBBY.value, tournament_size=DEFAULT_TOURNAMENT_SIZE, language="en")
    db.add(tournament)
    await db.commit()
    logger.info("Auto-created tournament %s", tournament.id)
    return tournament


async def list_tournaments(db: AsyncSession) -> list[TournamentSummary]:
    counts = (
        select(TournamentParticipant.tournament_id, func.count(TournamentParticipant.id).label("participant_count"))
        .group_by(TournamentParticipant.tournament_id)
        .subquery()
    )
    rows = (
        await db.execute(
            select(Tournament, func.coalesce(counts.c.participant_count, 0))
            .outerjoin(counts, counts.c.tournament_id == Tournament.id)
            .order_by(Tournament.created_at.desc(), Tournament.id.desc())
        )
    ).all()
    return [TournamentSummary(tournament=tournament, participant_count=count) for tournament, count in rows]


async def get_tournament_details(db: AsyncSession, tournament_id: int) -> TournamentDetails:
    tournament = await get_tournament(db, tournament_id)
    return TournamentDetails(
        tournament=tournament,
        participants=await get_tournament_participants(db, tournament_id),
        matches=await get_tournament_matches(db, tournament_id),
    )


async def maybe_auto_start(db: AsyncSession, tournament_id: int, rng: random.Random | None = None) -> bool:
    """
    Starts the tournament once the lobby is full.

    Only the caller whose status update still sees ``lobby`` creates round 1;
    every later or concurrent caller gets False and writes nothing. Players
    beyond the size (a lobby overfilled around ``join_tournament``) stay out
    of the bracket, the first ``tournament_size`` by join order play.
    """
    tournament = await get_tournament(db, tournament_id, fresh=True)
    if tournament.status != TournamentStatus.LOBBY.value:
        return False

    participant_ids = await get_tournament_participant_ids(db, tournament_id)
    if len(participant_ids) < tournament.tournament_size:
        return False
    if len(participant_ids) > tournament.tournament_size:
        logger.warning(
            "Tournament %s has %s players for %s seats, latest joins sit out",
            tournament_id,
            len(participant_ids),
            tournament.tournament_size,
        )
    seated_ids = participant_ids[: tournament.tournament_size]

    result = await db.execute(
        update(Tournament)
        .where(Tournament.id == tournament_id, Tournament.status == TournamentStatus.LOBBY.value)
        .values(status=TournamentStatus.IN_PROGRESS.value)
    )
    if result.rowcount == 0:
        await db.commit()
        return False

    try:
        await generate_first_round(db, tournament, seated_ids, rng)
        record_change(db, "tournaments", UPDATE, {"id": tournament_id, "status": TournamentStatus.IN_PROGRESS.value})
        await db.commit()
    except IntegrityError:
        # Первый раунд уже создан конкурентным стартом.
        await db.rollback()
        logger.warning("Tournament %s was started concurrently", tournament_id)
        return False

    await db.refresh(tournament)
    logger.info("Tournament %s started with %s players", tournament_id, len(seated_ids))
    return True


def _claim_seat(tournament_id: int, user_id: int):
    # Вставка пройдет, только если в лобби еще есть место: проверка и запись в одном выражении.
    seats_taken = (
        select(func.count(TournamentParticipant.id))
        .where(TournamentParticipant.tournament_id == tournament_id)
        .correlate(None)
        .scalar_subquery()
    )
    return insert(TournamentParticipant).from_select(
        ["tournament_id", "user_id", "joined_at"],
        select(Tournament.id, literal(user_id), literal(datetime.utcnow())).where(
            Tournament.id == tournament_id,
            Tournament.status == TournamentStatus.LOBBY.value,
            seats_taken < Tournament.tournament_size,
        ),
    )


async def join_tournament(
    db: AsyncSession,
    tournament_id: int,
    user_id: int,
    rng: random.Random | None = None,
) -> bool:
    """Добавляет игрока в лобби и возвращает True, если турнир после этого стартовал."""
    # На Postgres строка турнира блокируется до коммита, SQLite и так пишет по одному.
    tournament = await db.scalar(
        select(Tournament)
        .where(Tournament.id == tournament_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    if not tournament:
        raise NotFound("Tournament not found")
    if tournament.status != TournamentStatus.LOBBY.value:
        raise InvalidState("Tournament is not accepting players")
    if not await db.scalar(select(User.id).where(User.id == user_id)):
        raise NotFound("User not found")
    if await count_tournament_participants(db, tournament_id) >= tournament.tournament_size:
        raise InvalidState("Tournament is full")

    try:
        result = await db.execute(_claim_seat(tournament_id, user_id))
        if result.rowcount == 0:
            await db.rollback()
            raise InvalidState("Tournament is full")
        record_change(db, "tournament_participants", INSERT, {"tournament_id": tournament_id, "user_id": user_id})
        await db.commit()
    except IntegrityError as exc:
        await db.rollback()
        raise Conflict("You have already joined this tournament") from exc

    logger.info("User %s joined tournament %s", user_id, tournament_id)
    return await maybe_auto_start(db, tournament_id, rng)


async def fill_with_bots(
    db: AsyncSession,
    tournament_id: int,
    actor_id: int,
    rng: random.Random | None = None,
) -> list[User]:
    await require_admin(db, actor_id)
    tournament = await get_tournament(db, tournament_id, fresh=True)
    if tournament.status != TournamentStatus.LOBBY.value:
        raise InvalidState("Only a lobby can be filled with bots")

    missing = tournament.tournament_size - await count_tournament_participants(db, tournament_id)
    if missing <= 0:
        return []

    bots = await create_bot_users(db, missing, rng)
    for bot in bots:
        db.add(TournamentParticipant(tournament_id=tournament_id, user_id=bot.id))
    await db.commit()
    logger.info("Admin %s filled tournament %s with %s bots", actor_id, tournament_id, len(bots))

    await maybe_auto_start(db, tournament_id, rng)
    return bots


async def set_anonymous_voting(db: AsyncSession, tournament_id: int, actor_id: int, enabled: bool) -> Tournament:
    await require_admin(db, actor_id)
    tournament = await get_tournament(db, tournament_id)
    tournament.anonymous_voting = enabled
    await db.commit()
    return tournament


async def force_finish(db: AsyncSession, tournament_id: int, actor_id: int) -> Tournament:
    await require_admin(db, actor_id)
    tournament = await get_tournament(db, tournament_id, fresh=True)
    if tournament.status != TournamentStatus.IN_PROGRESS.value:
        raise InvalidState("Only a running tournament can be force finished")

    tournament.status = TournamentStatus.FINISHED.value
    tournament.admin_ended = True
    await db.commit()
    logger.info("Admin %s force finished tournament %s", actor_id, tournament_id)
    return tournament


async def _delete_tournament_matches(db: AsyncSession, tournament_id: int) -> None:
    match_ids = list((await db.scalars(select(Match.id).where(Match.tournament_id == tournament_id))).all())
    if not match_ids:
        return

    await db.execute(delete(Vote).where(Vote.match_id.in_(match_ids)))
    await db.execute(delete(Submission).where(Submission.match_id.in_(match_ids)))
    await db.execute(delete(Match).where(Match.id.in_(match_ids)))
    # Массовое удаление идет мимо сессии, поэтому подсказки пишем на каждый матч.
    for match_id in match_ids:
        record_change(db, "votes", DELETE, {"match_id": match_id})
        record_change(db, "submissions", DELETE, {"match_id": match_id})
        record_change(db, "matches", DELETE, {"id": match_id, "tournament_id": tournament_id})


async def reset_to_lobby(db: AsyncSession, tournament_id: int, actor_id: int) -> Tournament:
    """Удаляет все матчи и возвращает турнир в лобби. Участники остаются."""
    await require_admin(db, actor_id)
    tournament = await get_tournament(db, tournament_id)

    await _delete_tournament_matches(db, tournament_id)
    tournament.status = TournamentStatus.LOBBY.value
    tournament.champion_id = None
    tournament.admin_ended = False
    await db.commit()
    logger.info("Admin %s reset tournament %s to lobby", actor_id, tournament_id)
    return tournament


async def delete_tournament(db: AsyncSession, tournament_id: int, actor_id: int) -> None:
    await require_admin(db, actor_id)
    await get_tournament(db, tournament_id)

    await _delete_tournament_matches(db, tournament_id)
    await db.execute(delete(TournamentParticipant).where(TournamentParticipant.tournament_id == tournament_id))
    await db.execute(delete(Tournament).where(Tournament.id == tournament_id))
    record_change(db, "tournaments", DELETE, {"id": tournament_id})
    await db.commit()
    logger.info("Admin %s deleted tournament %s", actor_id, tournament_id)
