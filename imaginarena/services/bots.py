"""Боты для добора лобби до размера турнира."""

import logging
import random

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from imaginarena.models.tournament import Tournament, TournamentParticipant, TournamentStatus
from imaginarena.models.user import User

logger = logging.getLogger(__name__)

BOT_ICON = "\N{ROBOT FACE}"
BOT_NAMES = [
    "AI_Artist_Alpha",
    "CreativeBot_Beta",
    "PixelMaster_3000",
    "ArtificialMuse",
    "DigitalDreamer",
    "SynthCreator",
    "VirtualVincent",
    "CyberPicasso",
    "RoboRembrandt",
    "NeuralNinja",
    "AlgoArtist",
    "BinaryBrush",
    "CodeCanvas",
    "DataDaVinci",
    "ElectroEasel",
    "FusionFramer",
    "GigaGraphic",
    "HyperHue",
    "InfiniteInk",
    "KineticKolor",
    "LaserLine",
    "MegaMosaic",
    "NanoNoir",
    "OmegaOpus",
    "PixelPioneer",
    "QuantumQuill",
    "RenderRanger",
    "SiliconSketcher",
    "TechnoTint",
    "VectorVirtuoso",
    "WaveformWizard",
    "ZenithZoom",
]


def generate_bot_username(rng: random.Random | None = None) -> str:
    rng = rng or random
    return f"{rng.choice(BOT_NAMES)}_{rng.randint(0, 9999):04d}"


def display_name(user: User) -> str:
    return f"{BOT_ICON} {user.username}" if user.is_bot else user.username


async def create_bot_users(db: AsyncSession, count: int, rng: random.Random | None = None) -> list[User]:
    """Создает ботов с уникальными именами; коммит делает вызывающий."""
    taken = set((await db.scalars(select(User.username).where(User.is_bot.is_(True)))).all())
    bots: list[User] = []
    while len(bots) < count:
        username = generate_bot_username(rng)
        if username in taken:
            continue
        taken.add(username)
        bot = User(username=username, is_admin=False, is_bot=True)
        db.add(bot)
        bots.append(bot)
    await db.flush()
    return bots


async def cleanup_inactive_bots(db: AsyncSession) -> int:
    """Удаляет ботов вне активных турниров. Ошибки логируются, очистка best effort."""
    try:
        active_bot_ids = select(TournamentParticipant.user_id).join(
            Tournament, Tournament.id == TournamentParticipant.tournament_id
        ).where(Tournament.status.in_([TournamentStatus.LOBBY.value, TournamentStatus.IN_PROGRESS.value]))
        inactive_ids = list(
            (
                await db.scalars(select(User.id).where(User.is_bot.is_(True), User.id.not_in(active_bot_ids)))
            ).all()
        )
        if not inactive_ids:
            return 0
        await db.execute(delete(TournamentParticipant).where(TournamentParticipant.user_id.in_(inactive_ids)))
        await db.execute(delete(User).where(User.id.in_(inactive_ids)))
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Bot cleanup failed")
        return 0

    logger.info("Cleaned up %s inactive bots", len(inactive_ids))
    return len(inactive_ids)
