"""SQLAlchemy ORM models for rounds, challenges, group challenges and the guess ledger."""

from datetime import datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import DateTime, Integer

JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


# ---------------------------------------------------------------------------
# Users (managed by the account service, read-only here)
# ---------------------------------------------------------------------------


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("status IN ('active','suspended','banned')", name="ck_user_status"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    username: Mapped[str] = mapped_column(Text, unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'active'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# Rounds (shared daily instance)
# ---------------------------------------------------------------------------


class Round(Base):
    __tablename__ = "rounds"
    __table_args__ = (
        CheckConstraint("status IN ('pending','active','completed')", name="ck_round_status"),
        # At most one active round system-wide
        Index(
            "uq_rounds_single_active",
            "status",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("idx_rounds_status_ended", "status", "ended_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    image_url: Mapped[str] = mapped_column(Text, nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# 1:1 challenges
# ---------------------------------------------------------------------------


class Challenge(Base):
    __tablename__ = "challenges"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending','active','guessed','completed','declined','expired')",
            name="ck_challenge_status",
        ),
        CheckConstraint("challenger_id <> challenged_id", name="ck_challenge_distinct_users"),
        CheckConstraint(
            "challenger_score IS NULL OR (challenger_score BETWEEN 0 AND 100)",
            name="ck_challenge_challenger_score",
        ),
        CheckConstraint(
            "challenged_score IS NULL OR (challenged_score BETWEEN 0 AND 100)",
            name="ck_challenge_challenged_score",
        ),
        Index("idx_challenges_challenged_status", "challenged_id", "status"),
        Index("idx_challenges_challenger_created", "challenger_id", "created_at"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    challenger_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    challenged_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text)
    challenger_score: Mapped[int | None] = mapped_column(Integer)
    challenger_guess: Mapped[str | None] = mapped_column(Text)
    challenged_score: Mapped[int | None] = mapped_column(Integer)
    challenged_guess: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# Group challenges (status is derived from participants, never stored)
# ---------------------------------------------------------------------------


class GroupChallenge(Base):
    __tablename__ = "group_challenges"
    __table_args__ = (Index("idx_group_challenges_creator", "creator_id"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    creator_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    image_url: Mapped[str | None] = mapped_column(Text)
    activated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


class GroupChallengeParticipant(Base):
    __tablename__ = "group_challenge_participants"
    __table_args__ = (
        UniqueConstraint("group_challenge_id", "user_id", name="uq_group_participant"),
        CheckConstraint(
            "status IN ('pending','joined','guessed','declined')",
            name="ck_group_participant_status",
        ),
        CheckConstraint(
            "score IS NULL OR (score BETWEEN 0 AND 100)", name="ck_group_participant_score"
        ),
        Index("idx_group_participants_user", "user_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    group_challenge_id: Mapped[UUID] = mapped_column(
        ForeignKey("group_challenges.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    username: Mapped[str] = mapped_column(Text, nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'pending'"))
    guess_text: Mapped[str | None] = mapped_column(Text)
    score: Mapped[int | None] = mapped_column(Integer)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )


# ---------------------------------------------------------------------------
# Guess ledger: one row per (instance, user), claimed before scoring
# ---------------------------------------------------------------------------


class Guess(Base):
    __tablename__ = "guesses"
    __table_args__ = (
        UniqueConstraint("instance_type", "instance_id", "user_id", name="uq_guess_once"),
        CheckConstraint(
            "instance_type IN ('round','challenge','group')", name="ck_guess_instance_type"
        ),
        CheckConstraint("status IN ('claimed','scored')", name="ck_guess_status"),
        CheckConstraint("score IS NULL OR (score BETWEEN 0 AND 100)", name="ck_guess_score"),
        Index("idx_guesses_instance_score", "instance_type", "instance_id", "score"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    instance_type: Mapped[str] = mapped_column(Text, nullable=False)
    instance_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    user_id: Mapped[UUID] = mapped_column(ForeignKey("users.id"), nullable=False)
    guess_text: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(Text, nullable=False, server_default=text("'claimed'"))
    claim_token: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    score: Mapped[int | None] = mapped_column(Integer)
    breakdown: Mapped[dict[str, Any] | None] = mapped_column(JSONType)
    scored_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
