"""Standardize legacy Portuguese ``habits_*`` question keys to marker names.

``habits_movimento_frequencia`` becomes ``habits_activity_frequencia``;
question ids do not change, so stored answers stay attached.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.marker_taxonomy import HABITS_KEY_PREFIX
from likeme import models
from likeme.services.scores import invalidate_score_cache
from scoring.markers import MarkerResolver, get_marker_resolver

logger = logging.getLogger(__name__)


class KeyMigrationError(Exception):
    """Raised when the key rewrite cannot be committed."""
    pass


@dataclass
class KeyUpdate:
    question_id: str
    old_key: str
    new_key: str


@dataclass
class KeyConflict:
    """A rewrite skipped because the target key is already taken."""
    question_id: str
    old_key: str
    new_key: str


@dataclass
class KeyMigrationReport:
    dry_run: bool
    scanned: int = 0
    updated: list[KeyUpdate] = field(default_factory=list)
    already_standard: int = 0
    unmapped: list[str] = field(default_factory=list)
    conflicts: list[KeyConflict] = field(default_factory=list)


async def standardize_marker_keys(
    session: AsyncSession,
    *,
    dry_run: bool = False,
    resolver: MarkerResolver | None = None,
) -> KeyMigrationReport:
    """Rewrite every legacy ``habits_*`` key in place.

    Args:
        session: Database session
        dry_run: Only report what would change
        resolver: Marker resolver (default taxonomy if None)

    Returns:
        KeyMigrationReport with updates, unmapped keys and conflicts

    Raises:
        KeyMigrationError: If the commit fails
    """
    resolver = resolver or get_marker_resolver()
    report = KeyMigrationReport(dry_run=dry_run)

    Q = models.AnamnesisQuestionConcept
    result = await session.execute(
        select(Q).where(Q.key.startswith(HABITS_KEY_PREFIX, autoescape=True)).order_by(Q.key)
    )
    questions = result.scalars().all()
    report.scanned = len(questions)

    # Includes soft-deleted rows, the unique index covers them too
    taken = set((await session.execute(select(Q.key))).scalars().all())

    for question in questions:
        if resolver.resolve_marker(question.key) is None:
            report.unmapped.append(question.key)
            continue

        new_key = resolver.standardize_key(question.key)
        if new_key == question.key:
            report.already_standard += 1
            continue

        if new_key in taken:
            logger.warning(f"Skipping {question.key!r}: target key {new_key!r} already exists")
            report.conflicts.append(KeyConflict(question_id=question.id, old_key=question.key, new_key=new_key))
            continue

        report.updated.append(KeyUpdate(question_id=question.id, old_key=question.key, new_key=new_key))
        taken.discard(question.key)
        taken.add(new_key)
        if not dry_run:
            question.key = new_key

    if dry_run:
        logger.info(f"Dry run: {len(report.updated)} keys would be standardized")
        return report

    if report.updated:
        try:
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Key standardization failed: {e}", exc_info=True)
            raise KeyMigrationError(f"Failed to standardize keys: {e}") from e
        invalidate_score_cache()

    logger.info(
        f"Standardized {len(report.updated)} keys "
        f"({report.already_standard} already standard, {len(report.unmapped)} unmapped, "
        f"{len(report.conflicts)} conflicts)"
    )
    return report
