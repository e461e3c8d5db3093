"""Anamnesis score engine: global maxima and per-user percentage scores.

Pure computation over rows already fetched from the database. Every
scorable question contributes the highest value among its answer options
to the global maximum of its category (mental/physical) and, for
``habits_*`` questions, of its marker. A user's score in a group is the sum
of the option values they picked, reported as a percentage of that maximum.
"""
from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable

from scoring.markers import Category, MarkerResolver, get_marker_resolver

logger = logging.getLogger(__name__)


@dataclass
class QuestionScoreInput:
    """A scorable question and the raw values of its answer options."""
    question_id: str
    key: str
    option_values: list[str | None] = field(default_factory=list)


@dataclass
class AnswerScoreInput:
    """A user's answer reduced to what scoring needs."""
    question_id: str
    key: str
    option_value: str | None


@dataclass
class GroupMaximum:
    """Global maximum of one category or marker."""
    max_score: float = 0.0
    total_questions: int = 0


@dataclass
class GlobalMaxima:
    """Maxima across all scorable questions, computed in one pass."""
    categories: dict[Category, GroupMaximum]
    markers: dict[str, GroupMaximum]
    question_maxima: dict[str, float]
    computed_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class ScoreBreakdown:
    """Score of one user in one category or marker."""
    name: str
    score: float
    max_score: float
    percentage: int
    answered_questions: int
    total_questions: int
    answered_max_score: float
    answered_percentage: int


def option_value(raw: str | float | int | None) -> float | None:
    """Parse an answer option value; None when empty or not numeric."""
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = raw.strip().replace(",", ".")
        if not text:
            return None
        try:
            value = float(text)
        except ValueError:
            return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def question_max(values: Iterable[str | float | int | None]) -> float:
    """Highest parsable option value of a question (0 when there is none)."""
    parsed = [v for v in (option_value(raw) for raw in values) if v is not None]
    return max(parsed) if parsed else 0.0


def percentage(score: float, max_score: float) -> int:
    """Integer percentage of ``score`` over ``max_score``, rounded half-up, clamped to 0-100."""
    if max_score <= 0:
        return 0
    ratio = score / max_score * 100
    return max(0, min(100, math.floor(ratio + 0.5)))


@dataclass
class _Accumulator:
    score: float = 0.0
    answered: int = 0
    answered_max: float = 0.0

    def add(self, value: float, max_value: float) -> None:
        self.score += value
        self.answered += 1
        self.answered_max += max_value


class ScoreEngine:
    """Computes global maxima and user score breakdowns.

    Questions are routed to groups by their key only, so the same engine
    handles legacy Portuguese and standardized English keys.
    """

    def __init__(self, resolver: MarkerResolver | None = None):
        self.resolver = resolver or get_marker_resolver()

    def compute_global_maxima(self, questions: Iterable[QuestionScoreInput]) -> GlobalMaxima:
        """Sum per-question maxima per category and per marker.

        Args:
            questions: Non-deleted questions with their option values

        Returns:
            GlobalMaxima covering every category and marker (zero when empty)
        """
        categories = {category: GroupMaximum() for category in Category}
        markers = {marker: GroupMaximum() for marker in self.resolver.markers}
        question_maxima: dict[str, float] = {}

        for question in questions:
            category = self.resolver.question_category(question.key)
            if category is None:
                continue

            max_value = question_max(question.option_values)
            question_maxima[question.question_id] = max_value

            categories[category].max_score += max_value
            categories[category].total_questions += 1

            marker = self.resolver.resolve_marker(question.key)
            if marker is not None:
                markers[marker].max_score += max_value
                markers[marker].total_questions += 1

        logger.info(
            "Computed global maxima: "
            + ", ".join(
                f"{c.value}={m.max_score:g} ({m.total_questions} questions)"
                for c, m in categories.items()
            )
        )
        return GlobalMaxima(categories=categories, markers=markers, question_maxima=question_maxima)

    def _accumulate(
        self,
        answers: Iterable[AnswerScoreInput],
        maxima: GlobalMaxima,
    ) -> tuple[dict[Category, _Accumulator], dict[str, _Accumulator]]:
        by_category = {category: _Accumulator() for category in Category}
        by_marker = {marker: _Accumulator() for marker in self.resolver.markers}

        for answer in answers:
            if answer.question_id not in maxima.question_maxima:
                # Deleted or unscored question
                continue

            value = option_value(answer.option_value)
            if value is None:
                continue

            category = self.resolver.question_category(answer.key)
            if category is None:
                continue

            max_value = maxima.question_maxima[answer.question_id]
            by_category[category].add(value, max_value)

            marker = self.resolver.resolve_marker(answer.key)
            if marker is not None:
                by_marker[marker].add(value, max_value)

        return by_category, by_marker

    @staticmethod
    def _breakdown(name: str, acc: _Accumulator, group: GroupMaximum) -> ScoreBreakdown:
        return ScoreBreakdown(
            name=name,
            score=acc.score,
            max_score=group.max_score,
            percentage=percentage(acc.score, group.max_score),
            answered_questions=acc.answered,
            total_questions=group.total_questions,
            answered_max_score=acc.answered_max,
            answered_percentage=percentage(acc.score, acc.answered_max),
        )

    def score_categories(
        self,
        answers: Iterable[AnswerScoreInput],
        maxima: GlobalMaxima,
    ) -> dict[Category, ScoreBreakdown]:
        """Mental and physical breakdowns for one user's answers."""
        by_category, _ = self._accumulate(answers, maxima)
        return {
            category: self._breakdown(category.value, by_category[category], maxima.categories[category])
            for category in Category
        }

    def score_markers(
        self,
        answers: Iterable[AnswerScoreInput],
        maxima: GlobalMaxima,
    ) -> list[ScoreBreakdown]:
        """One breakdown per marker, in taxonomy order."""
        _, by_marker = self._accumulate(answers, maxima)
        return [
            self._breakdown(
                marker,
                by_marker[marker],
                maxima.markers.get(marker, GroupMaximum()),
            )
            for marker in self.resolver.markers
        ]
