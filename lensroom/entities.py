# lensroom/entities.py
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, declarative_base, mapped_column

from typing import TypeAlias
UUID: TypeAlias = str
Base = declarative_base()

# JSONB on Postgres, plain JSON elsewhere (SQLite in tests / local runs)
JsonColumn = JSON().with_variant(JSONB(), "postgresql")

GENERATION_STATUSES = ("pending", "processing", "success", "failed")
TERMINAL_STATUSES = ("success", "failed")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
        onupdate=_utcnow,
    )


class Credits(Base, TimestampMixin):
    __tablename__ = "credits"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False, unique=True)
    amount: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    __table_args__ = (
        CheckConstraint("amount >= 0", name="ck_credits_amount_non_negative"),
        Index("idx_credits_user_id", "user_id"),
    )


class CreditTransaction(Base):
    """Append-only: rows are inserted by LedgerClient.adjust and never updated."""

    __tablename__ = "credit_transactions"

    id: Mapped[UUID] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid4()))
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    # NOTE: attribute is metadata_json, "metadata" is reserved by declarative
    metadata_json: Mapped[dict[str, object]] = mapped_column("metadata", JsonColumn, nullable=False, default=dict)
    generation_id: Mapped[str | None] = mapped_column(String(64))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )

    __table_args__ = (
        Index("idx_credit_transactions_user_id", "user_id", "created_at"),
        Index("idx_credit_transactions_generation_id", "generation_id"),
    )


class Generation(Base, TimestampMixin):
    __tablename__ = "generations"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    type: Mapped[str] = mapped_column(String(16), nullable=False)
    model: Mapped[str] = mapped_column(String(64), nullable=False)
    prompt: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    result_urls: Mapped[list[str]] = mapped_column(JsonColumn, nullable=False, default=list)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    metadata_json: Mapped[dict[str, object]] = mapped_column("metadata", JsonColumn, nullable=False, default=dict)

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed')",
            name="ck_generations_status",
        ),
        Index("idx_generations_user_id", "user_id", "created_at"),
        Index("idx_generations_status", "status"),
    )


class UserSession(Base):
    __tablename__ = "user_sessions"

    # sha256 hex of the opaque session token; the raw token is never stored
    token_hash: Mapped[str] = mapped_column(String(64), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(String(36), nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    revoked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
        default=_utcnow,
        server_default=func.now(),
    )
