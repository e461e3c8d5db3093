"""Score pipeline: load questionnaire rows, reduce them with the score engine.

Global maxima are shared by every user and cached; user answers are always
read fresh.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.marker_taxonomy import HABITS_KEY_PREFIX, MENTAL_KEY_PREFIXES, PHYSICAL_KEY_PREFIXES
from likeme import models
from likeme.config import settings
from scoring.cache import ScoreCache
from scoring.engine import (
    AnswerScoreInput,
    GlobalMaxima,
    QuestionScoreInput,
    ScoreBreakdown,
    ScoreEngine,
    option_value,
)
from scoring.markers import Category

logger = logging.getLogger(__name__)

GLOBAL_MAXIMA_KEY = "global_maxima"

score_cache = ScoreCache(ttl_seconds=settings.scoring.cache_ttl_seconds)


class ScoringError(Exception):
    """Raised when scores cannot be computed."""
    pass


@dataclass
class UserScores:
    """Mental and physical scores of one user."""
    user_id: str
    mental: ScoreBreakdown
    physical: ScoreBreakdown
    maxima_computed_at: datetime
    computed_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class UserMarkers:
    """Per-marker scores of one user."""
    user_id: str
    markers: list[ScoreBreakdown]
    maxima_computed_at: datetime
    computed_at: datetime = field(default_factory=datetime.utcnow)


async def load_scorable_questions(session: AsyncSession) -> list[QuestionScoreInput]:
    """Non-deleted questions whose key can contribute to a score, with option values."""
    Q = models.AnamnesisQuestionConcept
    O = models.AnamnesisAnswerOption

    lowered = func.lower(Q.key)
    prefixes = (*MENTAL_KEY_PREFIXES, *PHYSICAL_KEY_PREFIXES, HABITS_KEY_PREFIX)
    query = (
        select(Q.id, Q.key, O.value)
        .outerjoin(O, O.question_concept_id == Q.id)
        .where(
            Q.deleted_at.is_(None),
            or_(*(lowered.startswith(p, autoescape=True) for p in prefixes)),
        )
        .order_by(Q.key)
    )
    result = await session.execute(query)

    questions: dict[str, QuestionScoreInput] = {}
    for question_id, key, value in result.all():
        question = questions.setdefault(question_id, QuestionScoreInput(question_id=question_id, key=key))
        if value is not None:
            question.option_values.append(value)

    return list(questions.values())


async def load_user_answers(session: AsyncSession, user_id: str) -> list[AnswerScoreInput]:
    """The user's answers with question key and chosen option value."""
    A = models.AnamnesisUserAnswer
    Q = models.AnamnesisQuestionConcept
    O = models.AnamnesisAnswerOption

    query = (
        select(A.question_concept_id, Q.key, O.value)
        .join(Q, Q.id == A.question_concept_id)
        .outerjoin(O, O.id == A.answer_option_id)
        .where(A.user_id == user_id, Q.deleted_at.is_(None))
    )
    result = await session.execute(query)
    return [
        AnswerScoreInput(question_id=question_id, key=key, option_value=value)
        for question_id, key, value in result.all()
    ]


async def load_global_maxima(session: AsyncSession, engine: ScoreEngine | None = None) -> GlobalMaxima:
    """Global maxima for every category and marker, served from the score cache."""
    engine = engine or ScoreEngine()

    async def _compute() -> GlobalMaxima:
        questions = await load_scorable_questions(session)
        return engine.compute_global_maxima(questions)

    return await score_cache.get_or_compute(GLOBAL_MAXIMA_KEY, _compute)


def invalidate_score_cache() -> None:
    """Drop cached aggregates after the question catalog changed."""
    score_cache.invalidate()


async def get_user_scores(session: AsyncSession, user_id: str) -> UserScores:
    """Mental and physical percentage scores of a user.

    Raises:
        ScoringError: If the aggregation fails
    """
    engine = ScoreEngine()
    try:
        maxima = await load_global_maxima(session, engine)
        answers = await load_user_answers(session, user_id)
    except Exception as e:
        logger.error(f"Score computation failed for user {user_id}: {e}", exc_info=True)
        raise ScoringError(f"Failed to compute scores: {e}") from e

    breakdown = engine.score_categories(answers, maxima)
    logger.info(
        f"Scores for user {user_id}: mental={breakdown[Category.MENTAL].percentage}%, "
        f"physical={breakdown[Category.PHYSICAL].percentage}%"
    )
    return UserScores(
        user_id=user_id,
        mental=breakdown[Category.MENTAL],
        physical=breakdown[Category.PHYSICAL],
        maxima_computed_at=maxima.computed_at,
    )


async def get_user_markers(session: AsyncSession, user_id: str) -> UserMarkers:
    """Percentage score of a user in each of the ten markers.

    Raises:
        ScoringError: If the aggregation fails
    """
    engine = ScoreEngine()
    try:
        maxima = await load_global_maxima(session, engine)
        answers = await load_user_answers(session, user_id)
    except Exception as e:
        logger.error(f"Marker computation failed for user {user_id}: {e}", exc_info=True)
        raise ScoringError(f"Failed to compute markers: {e}") from e

    return UserMarkers(
        user_id=user_id,
        markers=engine.score_markers(answers, maxima),
        maxima_computed_at=maxima.computed_at,
    )


@dataclass
class AnswerAuditLine:
    """One answer as seen by the score engine."""
    question_key: str
    option_key: str | None
    value: float | None
    max_value: float | None
    category: str | None
    marker: str | None


@dataclass
class UserScoreAudit:
    """Per-answer detail behind a user's scores."""
    user_id: str
    lines: list[AnswerAuditLine]
    categories: dict[Category, ScoreBreakdown]
    markers: list[ScoreBreakdown]


async def list_answering_users(session: AsyncSession) -> list[str]:
    """Ids of every user with at least one stored answer."""
    A = models.AnamnesisUserAnswer
    result = await session.execute(select(A.user_id).distinct().order_by(A.user_id))
    return list(result.scalars().all())


async def audit_user_scores(
    session: AsyncSession,
    user_id: str,
    engine: ScoreEngine | None = None,
) -> UserScoreAudit:
    """Score a user and keep the value and maximum of every answer.

    Answers to deleted or unscored questions are listed with no maximum.
    """
    engine = engine or ScoreEngine()
    maxima = await load_global_maxima(session, engine)

    A = models.AnamnesisUserAnswer
    Q = models.AnamnesisQuestionConcept
    O = models.AnamnesisAnswerOption
    result = await session.execute(
        select(Q.id, Q.key, O.key, O.value)
        .select_from(A)
        .join(Q, Q.id == A.question_concept_id)
        .outerjoin(O, O.id == A.answer_option_id)
        .where(A.user_id == user_id)
        .order_by(Q.key)
    )

    lines = []
    for question_id, question_key, option_key, raw_value in result.all():
        category = engine.resolver.question_category(question_key)
        lines.append(
            AnswerAuditLine(
                question_key=question_key,
                option_key=option_key,
                value=option_value(raw_value),
                max_value=maxima.question_maxima.get(question_id),
                category=category.value if category else None,
                marker=engine.resolver.resolve_marker(question_key),
            )
        )

    answers = await load_user_answers(session, user_id)
    return UserScoreAudit(
        user_id=user_id,
        lines=lines,
        categories=engine.score_categories(answers, maxima),
        markers=engine.score_markers(answers, maxima),
    )
