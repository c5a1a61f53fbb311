"""Initial schema: users, rounds, challenges, group challenges, guess ledger.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    ]


def upgrade() -> None:
    # Users (mirrored from the account service)
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("username", sa.Text(), nullable=False, unique=True),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("status IN ('active','suspended','banned')", name="ck_user_status"),
    )

    # Rounds
    op.create_table(
        "rounds",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("image_url", sa.Text(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ended_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.CheckConstraint("status IN ('pending','active','completed')", name="ck_round_status"),
    )
    op.create_index(
        "uq_rounds_single_active",
        "rounds",
        ["status"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )
    op.create_index("idx_rounds_status_ended", "rounds", ["status", "ended_at"])

    # 1:1 challenges
    op.create_table(
        "challenges",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "challenger_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column(
            "challenged_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("challenger_score", sa.Integer(), nullable=True),
        sa.Column("challenger_guess", sa.Text(), nullable=True),
        sa.Column("challenged_score", sa.Integer(), nullable=True),
        sa.Column("challenged_guess", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending','active','guessed','completed','declined','expired')",
            name="ck_challenge_status",
        ),
        sa.CheckConstraint("challenger_id <> challenged_id", name="ck_challenge_distinct_users"),
        sa.CheckConstraint(
            "challenger_score IS NULL OR (challenger_score BETWEEN 0 AND 100)",
            name="ck_challenge_challenger_score",
        ),
        sa.CheckConstraint(
            "challenged_score IS NULL OR (challenged_score BETWEEN 0 AND 100)",
            name="ck_challenge_challenged_score",
        ),
    )
    op.create_index(
        "idx_challenges_challenged_status", "challenges", ["challenged_id", "status"]
    )
    op.create_index(
        "idx_challenges_challenger_created", "challenges", ["challenger_id", "created_at"]
    )

    # Group challenges (top-level status is derived, not stored)
    op.create_table(
        "group_challenges",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "creator_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("image_url", sa.Text(), nullable=True),
        sa.Column("activated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("idx_group_challenges_creator", "group_challenges", ["creator_id"])

    op.create_table(
        "group_challenge_participants",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "group_challenge_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("group_challenges.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("username", sa.Text(), nullable=False),
        sa.Column("position", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("guess_text", sa.Text(), nullable=True),
        sa.Column("score", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("group_challenge_id", "user_id", name="uq_group_participant"),
        sa.CheckConstraint(
            "status IN ('pending','joined','guessed','declined')",
            name="ck_group_participant_status",
        ),
        sa.CheckConstraint(
            "score IS NULL OR (score BETWEEN 0 AND 100)", name="ck_group_participant_score"
        ),
    )
    op.create_index("idx_group_participants_user", "group_challenge_participants", ["user_id"])

    # Guess ledger: the unique constraint is the admission gate
    op.create_table(
        "guesses",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("instance_type", sa.Text(), nullable=False),
        sa.Column("instance_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column(
            "user_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("users.id"),
            nullable=False,
        ),
        sa.Column("guess_text", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="claimed"),
        sa.Column("claim_token", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("score", sa.Integer(), nullable=True),
        sa.Column("breakdown", postgresql.JSONB(), nullable=True),
        sa.Column("scored_at", sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint("instance_type", "instance_id", "user_id", name="uq_guess_once"),
        sa.CheckConstraint(
            "instance_type IN ('round','challenge','group')", name="ck_guess_instance_type"
        ),
        sa.CheckConstraint("status IN ('claimed','scored')", name="ck_guess_status"),
        sa.CheckConstraint("score IS NULL OR (score BETWEEN 0 AND 100)", name="ck_guess_score"),
    )
    op.create_index(
        "idx_guesses_instance_score", "guesses", ["instance_type", "instance_id", "score"]
    )


def downgrade() -> None:
    op.drop_table("guesses")
    op.drop_table("group_challenge_participants")
    op.drop_table("group_challenges")
    op.drop_table("challenges")
    op.drop_index("uq_rounds_single_active", table_name="rounds")
    op.drop_table("rounds")
    op.drop_table("users")
