"""Core SQLAlchemy models (2.x style) for the anamnesis schema.

Questions are locale-independent concepts identified by ``key``; their
display texts and answer options live in child tables keyed by locale.
"""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum

from sqlalchemy import ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _uuid() -> str:
    return str(uuid.uuid4())


class QuestionType(str, Enum):
    """Answer type of a question concept."""
    SINGLE_CHOICE = "single_choice"
    MULTIPLE_CHOICE = "multiple_choice"
    TEXT = "text"
    NUMBER = "number"

    @property
    def is_choice(self) -> bool:
        return self in (QuestionType.SINGLE_CHOICE, QuestionType.MULTIPLE_CHOICE)


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class AnamnesisQuestionConcept(Base):
    """Question concepts table."""
    __tablename__ = "anamnesis_question_concept"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    key: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)
    type: Mapped[str] = mapped_column(String(32), nullable=False, default=QuestionType.SINGLE_CHOICE.value)
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )
    deleted_at: Mapped[datetime | None] = mapped_column(default=None, index=True)

    # Relationships
    texts: Mapped[list[AnamnesisQuestionText]] = relationship(
        "AnamnesisQuestionText",
        back_populates="question_concept",
        cascade="all, delete-orphan",
    )
    answer_options: Mapped[list[AnamnesisAnswerOption]] = relationship(
        "AnamnesisAnswerOption",
        back_populates="question_concept",
        cascade="all, delete-orphan",
        order_by="AnamnesisAnswerOption.order",
    )

    __table_args__ = (
        Index("ix_anamnesis_question_concept_created_at", "created_at"),
    )


class AnamnesisQuestionText(Base):
    """Localized question texts."""
    __tablename__ = "anamnesis_question_text"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question_concept_id: Mapped[str] = mapped_column(
        ForeignKey("anamnesis_question_concept.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    locale: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationship
    question_concept: Mapped[AnamnesisQuestionConcept] = relationship(
        "AnamnesisQuestionConcept",
        back_populates="texts",
    )

    __table_args__ = (
        Index("ix_anamnesis_question_text_question_locale", "question_concept_id", "locale"),
    )


class AnamnesisAnswerOption(Base):
    """Answer options; ``value`` holds the option's numeric score as text."""
    __tablename__ = "anamnesis_answer_option"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    question_concept_id: Mapped[str] = mapped_column(
        ForeignKey("anamnesis_question_concept.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(String(64), nullable=False, default="0")
    order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)

    # Relationships
    question_concept: Mapped[AnamnesisQuestionConcept] = relationship(
        "AnamnesisQuestionConcept",
        back_populates="answer_options",
    )
    texts: Mapped[list[AnamnesisAnswerOptionText]] = relationship(
        "AnamnesisAnswerOptionText",
        back_populates="answer_option",
        cascade="all, delete-orphan",
    )


class AnamnesisAnswerOptionText(Base):
    """Localized answer option labels."""
    __tablename__ = "anamnesis_answer_option_text"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    answer_option_id: Mapped[str] = mapped_column(
        ForeignKey("anamnesis_answer_option.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    locale: Mapped[str] = mapped_column(String(16), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    # Relationship
    answer_option: Mapped[AnamnesisAnswerOption] = relationship(
        "AnamnesisAnswerOption",
        back_populates="texts",
    )


class AnamnesisUserAnswer(Base):
    """One answer per (user, question concept)."""
    __tablename__ = "anamnesis_user_answer"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    question_concept_id: Mapped[str] = mapped_column(
        ForeignKey("anamnesis_question_concept.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    answer_option_id: Mapped[str | None] = mapped_column(
        ForeignKey("anamnesis_answer_option.id", ondelete="SET NULL"),
    )
    answer_text: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=datetime.utcnow,
        onupdate=datetime.utcnow,
        nullable=False,
    )

    # Relationships
    question_concept: Mapped[AnamnesisQuestionConcept] = relationship("AnamnesisQuestionConcept")
    answer_option: Mapped[AnamnesisAnswerOption | None] = relationship("AnamnesisAnswerOption")

    __table_args__ = (
        UniqueConstraint("user_id", "question_concept_id", name="uq_anamnesis_user_answer_user_question"),
    )
