from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from .db import utcnow


class Base(DeclarativeBase):
    pass


# ---------- Collaborators (read by the engine, written by seeding) ----------


class UserORM(Base):
    __tablename__ = "users"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    permission: Mapped[str] = mapped_column(String(32), default="MEMBER", nullable=False)

    company_roles: Mapped[list[UserCompanyRoleORM]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )


class UserCompanyRoleORM(Base):
    __tablename__ = "user_company_roles"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role_name: Mapped[str] = mapped_column(String(255), nullable=False)

    __table_args__ = (UniqueConstraint("user_id", "role_name", name="uq_user_company_role"),)

    user: Mapped[UserORM] = relationship(back_populates="company_roles")


class BoardORM(Base):
    __tablename__ = "boards"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    cards: Mapped[list[CardORM]] = relationship(back_populates="board")


class CardORM(Base):
    __tablename__ = "cards"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    board_id: Mapped[int] = mapped_column(
        ForeignKey("boards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title: Mapped[str] = mapped_column(String(500), nullable=False)
    card_type: Mapped[str] = mapped_column(String(32), default="TASK", nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    phase: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    archived_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    board: Mapped[BoardORM] = relationship(back_populates="cards")
    review_cycles: Mapped[list[ReviewCycleORM]] = relationship(
        back_populates="card", cascade="all, delete-orphan"
    )
    assignees: Mapped[list[CardAssigneeORM]] = relationship(
        back_populates="card", cascade="all, delete-orphan"
    )


class CardAssigneeORM(Base):
    __tablename__ = "card_assignees"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    card_id: Mapped[int] = mapped_column(
        ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )

    __table_args__ = (UniqueConstraint("card_id", "user_id", name="uq_card_assignee"),)

    card: Mapped[CardORM] = relationship(back_populates="assignees")


# ---------- Review engine ----------


class ReviewDimensionORM(Base):
    __tablename__ = "review_dimensions"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    position: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    unit_types: Mapped[list[str] | None] = mapped_column(JSON, nullable=True)
    required_flag: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )

    roles: Mapped[list[DimensionRoleORM]] = relationship(
        back_populates="dimension", cascade="all, delete-orphan"
    )


class DimensionRoleORM(Base):
    __tablename__ = "dimension_roles"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    dimension_id: Mapped[int] = mapped_column(
        ForeignKey("review_dimensions.id", ondelete="CASCADE"), nullable=False, index=True
    )
    role: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (UniqueConstraint("dimension_id", "role", name="uq_dimension_role"),)

    dimension: Mapped[ReviewDimensionORM] = relationship(back_populates="roles")


class ReviewCycleORM(Base):
    __tablename__ = "review_cycles"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    card_id: Mapped[int] = mapped_column(
        ForeignKey("cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    cycle_number: Mapped[int] = mapped_column(Integer, nullable=False)
    opened_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)
    is_final: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    __table_args__ = (UniqueConstraint("card_id", "cycle_number", name="uq_cycle_card_number"),)

    card: Mapped[CardORM] = relationship(back_populates="review_cycles")
    evaluations: Mapped[list[EvaluationORM]] = relationship(
        back_populates="cycle", cascade="all, delete-orphan"
    )


class EvaluationORM(Base):
    __tablename__ = "evaluations"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    review_cycle_id: Mapped[int] = mapped_column(
        ForeignKey("review_cycles.id", ondelete="CASCADE"), nullable=False, index=True
    )
    reviewer_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    submitted_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=False), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("review_cycle_id", "reviewer_id", name="uq_evaluation_cycle_reviewer"),
    )

    cycle: Mapped[ReviewCycleORM] = relationship(back_populates="evaluations")
    scores: Mapped[list[EvaluationScoreORM]] = relationship(
        back_populates="evaluation", cascade="all, delete-orphan"
    )


class EvaluationScoreORM(Base):
    __tablename__ = "evaluation_scores"
    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    evaluation_id: Mapped[int] = mapped_column(
        ForeignKey("evaluations.id", ondelete="CASCADE"), nullable=False, index=True
    )
    dimension_id: Mapped[int] = mapped_column(
        ForeignKey("review_dimensions.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    score: Mapped[str] = mapped_column(String(32), nullable=False)

    __table_args__ = (
        UniqueConstraint("evaluation_id", "dimension_id", name="uq_score_evaluation_dimension"),
    )

    evaluation: Mapped[EvaluationORM] = relationship(back_populates="scores")
