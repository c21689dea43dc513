"""Регистрирует ORM-модели в метаданных SQLAlchemy."""

from imaginarena.models.base import Base
from imaginarena.models.tournament import Match, Submission, Tournament, TournamentParticipant, Vote
from imaginarena.models.user import User

__all__ = [
    "Base",
    "User",
    "Tournament",
    "TournamentParticipant",
    "Match",
    "Submission",
    "Vote",
]
