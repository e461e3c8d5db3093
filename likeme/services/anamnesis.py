"""Anamnesis question catalog and user answers.

Questions are read in a single locale; answers are upserted per
(user, question concept) after validation against the question type.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from likeme import models
from likeme.models import QuestionType
from scoring.markers import question_domain

logger = logging.getLogger(__name__)


class QuestionNotFoundError(Exception):
    """Raised when a question concept does not exist or is deleted."""
    pass


class AnswerValidationError(Exception):
    """Raised when an answer does not fit its question."""
    pass


@dataclass
class AnswerOptionView:
    """Answer option with its text in the requested locale."""
    id: str
    key: str
    order: int
    text: str | None


@dataclass
class QuestionView:
    """Question with its text and options in the requested locale."""
    id: str
    key: str
    domain: str
    answer_type: str
    text: str | None
    answer_options: list[AnswerOptionView] = field(default_factory=list)


@dataclass
class LocalizedText:
    locale: str
    value: str


@dataclass
class AnswerOptionDetail:
    id: str
    key: str
    value: str
    order: int
    texts: list[LocalizedText] = field(default_factory=list)


@dataclass
class QuestionDetail:
    """Full question record used by the complete-anamnesis export."""
    id: str
    key: str
    type: str
    order: int
    created_at: datetime
    texts: list[LocalizedText] = field(default_factory=list)
    answer_options: list[AnswerOptionDetail] = field(default_factory=list)


@dataclass
class PrefixSummary:
    """How many questions share a key prefix."""
    prefix: str
    count: int
    sample_keys: list[str] = field(default_factory=list)


@dataclass
class UserAnswerView:
    """A user's answer with the keys of its question and option."""
    id: str
    user_id: str
    question_concept_id: str
    question_key: str
    answer_option_id: str | None
    answer_option_key: str | None
    answer_text: str | None
    created_at: datetime
    updated_at: datetime
    question_text: str | None = None
    answer_option_text: str | None = None


def _first_text(texts) -> str | None:
    return texts[0].value if texts else None


def _localized_question_query(locale: str):
    """Non-deleted questions with texts and options restricted to ``locale``."""
    Q = models.AnamnesisQuestionConcept
    return (
        select(Q)
        .where(Q.deleted_at.is_(None))
        .options(
            selectinload(Q.texts.and_(models.AnamnesisQuestionText.locale == locale)),
            selectinload(Q.answer_options).selectinload(
                models.AnamnesisAnswerOption.texts.and_(
                    models.AnamnesisAnswerOptionText.locale == locale
                )
            ),
        )
        .execution_options(populate_existing=True)
    )


def _to_view(question: models.AnamnesisQuestionConcept) -> QuestionView:
    return QuestionView(
        id=question.id,
        key=question.key,
        domain=question_domain(question.key),
        answer_type=question.type,
        text=_first_text(question.texts),
        answer_options=[
            AnswerOptionView(
                id=option.id,
                key=option.key,
                order=option.order,
                text=_first_text(option.texts),
            )
            for option in question.answer_options
        ],
    )


async def list_questions(
    session: AsyncSession,
    locale: str,
    key_prefix: str | None = None,
) -> list[QuestionView]:
    """List non-deleted questions, optionally restricted to a key prefix.

    Args:
        session: Database session
        locale: Locale of the returned texts (e.g. ``pt-BR``)
        key_prefix: Only keys starting with this prefix

    Returns:
        Questions in creation order
    """
    Q = models.AnamnesisQuestionConcept
    query = _localized_question_query(locale).order_by(Q.created_at, Q.order, Q.key)
    if key_prefix:
        query = query.where(Q.key.startswith(key_prefix, autoescape=True))

    result = await session.execute(query)
    questions = result.scalars().all()

    logger.debug(f"Listed {len(questions)} questions (locale={locale}, prefix={key_prefix})")
    return [_to_view(q) for q in questions]


async def get_question_by_key(session: AsyncSession, key: str, locale: str) -> QuestionView:
    """Fetch one question by key.

    Raises:
        QuestionNotFoundError: If the key is unknown or the question is deleted
    """
    Q = models.AnamnesisQuestionConcept
    result = await session.execute(_localized_question_query(locale).where(Q.key == key))
    question = result.scalar_one_or_none()
    if question is None:
        raise QuestionNotFoundError(f"Question {key!r} not found")
    return _to_view(question)


async def get_complete_anamnesis(session: AsyncSession, locale: str) -> list[QuestionDetail]:
    """Every non-deleted question with all its texts and options in ``locale``."""
    Q = models.AnamnesisQuestionConcept
    result = await session.execute(_localized_question_query(locale).order_by(Q.created_at, Q.order, Q.key))

    return [
        QuestionDetail(
            id=q.id,
            key=q.key,
            type=q.type,
            order=q.order,
            created_at=q.created_at,
            texts=[LocalizedText(locale=t.locale, value=t.value) for t in q.texts],
            answer_options=[
                AnswerOptionDetail(
                    id=o.id,
                    key=o.key,
                    value=o.value,
                    order=o.order,
                    texts=[LocalizedText(locale=t.locale, value=t.value) for t in o.texts],
                )
                for o in q.answer_options
            ],
        )
        for q in result.scalars().all()
    ]


async def summarize_key_prefixes(session: AsyncSession, samples: int = 2) -> list[PrefixSummary]:
    """Group non-deleted question keys by the text before their first ``_``."""
    Q = models.AnamnesisQuestionConcept
    result = await session.execute(
        select(Q.key).where(Q.deleted_at.is_(None)).order_by(Q.key)
    )

    groups: dict[str, list[str]] = {}
    for key in result.scalars().all():
        prefix = key.split("_")[0] or key[:20]
        groups.setdefault(prefix, []).append(key)

    return [
        PrefixSummary(prefix=prefix, count=len(keys), sample_keys=keys[:samples])
        for prefix, keys in sorted(groups.items())
    ]


async def _validate_answer(
    session: AsyncSession,
    question_concept_id: str,
    answer_option_id: str | None,
    answer_text: str | None,
) -> None:
    Q = models.AnamnesisQuestionConcept
    question = (
        await session.execute(
            select(Q).where(Q.id == question_concept_id, Q.deleted_at.is_(None))
        )
    ).scalar_one_or_none()
    if question is None:
        raise QuestionNotFoundError("Question concept not found")

    if answer_option_id:
        O = models.AnamnesisAnswerOption
        option = (
            await session.execute(
                select(O.id).where(O.id == answer_option_id, O.question_concept_id == question_concept_id)
            )
        ).scalar_one_or_none()
        if option is None:
            raise AnswerValidationError("Answer option not found or does not belong to the question")

    try:
        question_type = QuestionType(question.type)
    except ValueError:
        # Unknown stored type: only the option ownership check applies
        logger.warning(f"Question {question.key} has unknown type {question.type!r}, skipping type checks")
        return

    if question_type.is_choice:
        if not answer_option_id:
            raise AnswerValidationError("Answer option is required for choice questions")
        if answer_text:
            raise AnswerValidationError("Answer text should not be provided for choice questions")
    else:
        if not answer_text:
            raise AnswerValidationError("Answer text is required for text/number questions")
        if answer_option_id:
            raise AnswerValidationError("Answer option should not be provided for text/number questions")


async def _find_answer(
    session: AsyncSession,
    user_id: str,
    question_concept_id: str,
) -> models.AnamnesisUserAnswer | None:
    A = models.AnamnesisUserAnswer
    result = await session.execute(
        select(A).where(A.user_id == user_id, A.question_concept_id == question_concept_id)
    )
    return result.scalar_one_or_none()


async def create_or_update_answer(
    session: AsyncSession,
    *,
    user_id: str,
    question_concept_id: str,
    answer_option_id: str | None = None,
    answer_text: str | None = None,
) -> models.AnamnesisUserAnswer:
    """Validate and upsert a user's answer to one question.

    Args:
        session: Database session
        user_id: Answering user
        question_concept_id: Answered question
        answer_option_id: Chosen option (choice questions)
        answer_text: Free text (text/number questions)

    Returns:
        The stored answer

    Raises:
        QuestionNotFoundError: If the question does not exist
        AnswerValidationError: If the answer does not fit the question
    """
    answer_option_id = answer_option_id or None
    answer_text = answer_text or None

    await _validate_answer(session, question_concept_id, answer_option_id, answer_text)

    try:
        answer = await _upsert_answer(session, user_id, question_concept_id, answer_option_id, answer_text)
    except IntegrityError:
        # A concurrent request inserted the same (user, question) pair
        await session.rollback()
        logger.warning(f"Answer upsert conflict for user {user_id}, retrying as update")
        try:
            answer = await _upsert_answer(session, user_id, question_concept_id, answer_option_id, answer_text)
        except Exception:
            await session.rollback()
            raise
    except Exception:
        await session.rollback()
        raise

    logger.info(f"Stored answer of user {user_id} to question {question_concept_id}")
    return answer


async def _upsert_answer(
    session: AsyncSession,
    user_id: str,
    question_concept_id: str,
    answer_option_id: str | None,
    answer_text: str | None,
) -> models.AnamnesisUserAnswer:
    answer = await _find_answer(session, user_id, question_concept_id)
    if answer is None:
        answer = models.AnamnesisUserAnswer(
            user_id=user_id,
            question_concept_id=question_concept_id,
            answer_option_id=answer_option_id,
            answer_text=answer_text,
        )
        session.add(answer)
    else:
        answer.answer_option_id = answer_option_id
        answer.answer_text = answer_text
        answer.updated_at = datetime.utcnow()

    await session.commit()
    return answer


def _answers_query(locale: str | None):
    A = models.AnamnesisUserAnswer
    question_loader = selectinload(A.question_concept)
    option_loader = selectinload(A.answer_option)
    if locale:
        question_loader = question_loader.selectinload(
            models.AnamnesisQuestionConcept.texts.and_(models.AnamnesisQuestionText.locale == locale)
        )
        option_loader = option_loader.selectinload(
            models.AnamnesisAnswerOption.texts.and_(models.AnamnesisAnswerOptionText.locale == locale)
        )
    return select(A).options(question_loader, option_loader).execution_options(populate_existing=True)


def _answer_view(answer: models.AnamnesisUserAnswer, with_texts: bool) -> UserAnswerView:
    option = answer.answer_option
    return UserAnswerView(
        id=answer.id,
        user_id=answer.user_id,
        question_concept_id=answer.question_concept_id,
        question_key=answer.question_concept.key,
        answer_option_id=answer.answer_option_id,
        answer_option_key=option.key if option else None,
        answer_text=answer.answer_text,
        created_at=answer.created_at,
        updated_at=answer.updated_at,
        question_text=_first_text(answer.question_concept.texts) if with_texts else None,
        answer_option_text=_first_text(option.texts) if (with_texts and option) else None,
    )


async def list_user_answers(
    session: AsyncSession,
    user_id: str,
    locale: str | None = None,
) -> list[UserAnswerView]:
    """All answers of a user, newest first; texts are filled when ``locale`` is given."""
    A = models.AnamnesisUserAnswer
    result = await session.execute(
        _answers_query(locale).where(A.user_id == user_id).order_by(A.created_at.desc())
    )
    return [_answer_view(a, with_texts=bool(locale)) for a in result.scalars().all()]


async def get_user_answer(
    session: AsyncSession,
    user_id: str,
    question_concept_id: str,
) -> UserAnswerView | None:
    """The user's answer to one question, or None."""
    A = models.AnamnesisUserAnswer
    result = await session.execute(
        _answers_query(None).where(A.user_id == user_id, A.question_concept_id == question_concept_id)
    )
    answer = result.scalar_one_or_none()
    return _answer_view(answer, with_texts=False) if answer else None
