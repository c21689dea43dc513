from datetime import datetime
from enum import Enum

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from imaginarena.models.base import Base
from imaginarena.models.user import User

TOURNAMENT_SIZES = (2, 4, 8, 16, 32)
LANGUAGES = ("en", "it")
DEFAULT_TOURNAMENT_SIZE = 16


class TournamentStatus(str, Enum):
    LOBBY = "lobby"
    IN_PROGRESS = "in_progress"
    FINISHED = "finished"


class Tournament(Base):
    __tablename__ = "tournaments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    status: Mapped[str] = mapped_column(String(20), default=TournamentStatus.LOBBY.value, index=True)
    tournament_size: Mapped[int] = mapped_column(Integer, default=DEFAULT_TOURNAMENT_SIZE)
    language: Mapped[str] = mapped_column(String(8), default="en")
    anonymous_voting: Mapped[bool] = mapped_column(Boolean, default=False)
    admin_ended: Mapped[bool] = mapped_column(Boolean, default=False)
    champion_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_by: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)

    participants: Mapped[list["TournamentParticipant"]] = relationship(
        "TournamentParticipant",
        back_populates="tournament",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )
    matches: Mapped[list["Match"]] = relationship(
        "Match",
        back_populates="tournament",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )


class TournamentParticipant(Base):
    __tablename__ = "tournament_participants"
    __table_args__ = (UniqueConstraint("tournament_id", "user_id", name="uq_tournament_participant"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    tournament: Mapped[Tournament] = relationship("Tournament", back_populates="participants")
    user: Mapped[User] = relationship("User")


class Match(Base):
    __tablename__ = "matches"
    # Игрок встречается не больше одного раза за раунд, дубль следующего раунда падает целиком.
    __table_args__ = (
        UniqueConstraint("tournament_id", "round", "player1_id", name="uq_match_round_player1"),
        UniqueConstraint("tournament_id", "round", "player2_id", name="uq_match_round_player2"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    tournament_id: Mapped[int] = mapped_column(ForeignKey("tournaments.id", ondelete="CASCADE"), index=True)
    round: Mapped[int] = mapped_column(Integer, default=1, index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    player1_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    player2_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    prompt: Mapped[str] = mapped_column(Text, default="")
    winner_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    tournament: Mapped[Tournament] = relationship("Tournament", back_populates="matches")
    submissions: Mapped[list["Submission"]] = relationship(
        "Submission",
        back_populates="match",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @property
    def player_ids(self) -> tuple[int, int]:
        return self.player1_id, self.player2_id


class Submission(Base):
    __tablename__ = "submissions"
    __table_args__ = (UniqueConstraint("match_id", "user_id", name="uq_submission_match_user"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    match_id: Mapped[int] = mapped_column(ForeignKey("matches.id", ondelete="CASCADE"), index=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    image_url: Mapped[str] = mapped_column(String(1024), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)

    match: Mapped[Match] = relationship("Match", back_populates="submissions")


class Vote(Base):
    __tablename__ = "votes"
    __table_args__ = (UniqueConstraint("match_id", "voter_id", name="uq_vote_match_voter"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    match_id: Mapped[int] = mapped_column(ForeignKey("matches.id", ondelete="CASCADE"), index=True)
    voter_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True)
    voted_for_submission_id: Mapped[int] = mapped_column(ForeignKey("submissions.id", ondelete="CASCADE"), index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
