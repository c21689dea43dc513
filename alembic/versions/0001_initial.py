"""initial

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17
"""

from alembic import op
import sqlalchemy as sa


revision = "0001_initial"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Создаем таблицу пользователей (игроки, админы и боты).
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=64), nullable=False),
        sa.Column("is_admin", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("is_bot", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_users_id", "users", ["id"], unique=False)
    op.create_index("ix_users_username", "users", ["username"], unique=True)
    op.create_index("ix_users_is_bot", "users", ["is_bot"], unique=False)

    # Создаем таблицу турниров.
    op.create_table(
        "tournaments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="lobby"),
        sa.Column("tournament_size", sa.Integer(), nullable=False, server_default="16"),
        sa.Column("language", sa.String(length=8), nullable=False, server_default="en"),
        sa.Column("anonymous_voting", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("admin_ended", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("champion_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_by", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_tournaments_status", "tournaments", ["status"], unique=False)
    op.create_index("ix_tournaments_created_at", "tournaments", ["created_at"], unique=False)

    # Создаем таблицу участников лобби.
    op.create_table(
        "tournament_participants",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tournament_id", sa.Integer(), sa.ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("joined_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tournament_id", "user_id", name="uq_tournament_participant"),
    )
    op.create_index("ix_tournament_participants_tournament_id", "tournament_participants", ["tournament_id"])
    op.create_index("ix_tournament_participants_user_id", "tournament_participants", ["user_id"])

    # Создаем таблицу матчей; игрок попадает в раунд не больше одного раза.
    op.create_table(
        "matches",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("tournament_id", sa.Integer(), sa.ForeignKey("tournaments.id", ondelete="CASCADE"), nullable=False),
        sa.Column("round", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("position", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("player1_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("player2_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False, server_default=""),
        sa.Column("winner_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="SET NULL"), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("tournament_id", "round", "player1_id", name="uq_match_round_player1"),
        sa.UniqueConstraint("tournament_id", "round", "player2_id", name="uq_match_round_player2"),
    )
    op.create_index("ix_matches_tournament_id", "matches", ["tournament_id"])
    op.create_index("ix_matches_round", "matches", ["round"])
    op.create_index("ix_matches_player1_id", "matches", ["player1_id"])
    op.create_index("ix_matches_player2_id", "matches", ["player2_id"])

    # Создаем таблицу работ игроков.
    op.create_table(
        "submissions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("match_id", sa.Integer(), sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column("image_url", sa.String(length=1024), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("match_id", "user_id", name="uq_submission_match_user"),
    )
    op.create_index("ix_submissions_match_id", "submissions", ["match_id"])
    op.create_index("ix_submissions_user_id", "submissions", ["user_id"])

    # Создаем таблицу голосов зрителей.
    op.create_table(
        "votes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("match_id", sa.Integer(), sa.ForeignKey("matches.id", ondelete="CASCADE"), nullable=False),
        sa.Column("voter_id", sa.Integer(), sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "voted_for_submission_id",
            sa.Integer(),
            sa.ForeignKey("submissions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("match_id", "voter_id", name="uq_vote_match_voter"),
    )
    op.create_index("ix_votes_match_id", "votes", ["match_id"])
    op.create_index("ix_votes_voter_id", "votes", ["voter_id"])
    op.create_index("ix_votes_voted_for_submission_id", "votes", ["voted_for_submission_id"])


def downgrade() -> None:
    # Откатываем схему до пустого состояния.
    op.drop_table("votes")
    op.drop_table("submissions")
    op.drop_table("matches")
    op.drop_table("tournament_participants")
    op.drop_table("tournaments")
    op.drop_index("ix_users_is_bot", table_name="users")
    op.drop_index("ix_users_username", table_name="users")
    op.drop_index("ix_users_id", table_name="users")
    op.drop_table("users")
