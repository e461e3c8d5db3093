"""Shared fixtures: in-memory SQLite database and question factory."""

import os

os.environ.setdefault("DB_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("LOG_FORMAT", "text")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from likeme import models
from likeme.models import Base
from likeme.services.scores import score_cache


# ============================================
# DATABASE
# ============================================

@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
async def session(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture(autouse=True)
def clear_score_cache():
    """Cached maxima must not leak between databases."""
    score_cache.invalidate()
    yield
    score_cache.invalidate()


# ============================================
# FACTORIES
# ============================================

@pytest.fixture
def make_question(session):
    """Create a question with localized texts and (key, value) options.

    Option labels are ``"<key> (<locale>)"`` in every locale of ``texts``.
    """

    async def _make(
        key: str,
        options: list[tuple[str, str]] | None = None,
        type: str = "single_choice",
        order: int = 0,
        texts: dict[str, str] | None = None,
    ) -> models.AnamnesisQuestionConcept:
        texts = texts if texts is not None else {"pt-BR": f"Pergunta {key}", "en-US": f"Question {key}"}
        question = models.AnamnesisQuestionConcept(key=key, type=type, order=order)
        question.texts = [
            models.AnamnesisQuestionText(locale=locale, value=value) for locale, value in texts.items()
        ]
        question.answer_options = [
            models.AnamnesisAnswerOption(
                key=option_key,
                value=value,
                order=index,
                texts=[
                    models.AnamnesisAnswerOptionText(locale=locale, value=f"{option_key} ({locale})")
                    for locale in texts
                ],
            )
            for index, (option_key, value) in enumerate(options or [])
        ]
        session.add(question)
        await session.commit()
        return question

    return _make


@pytest.fixture
def answer(session):
    """Store an answer row directly, bypassing validation."""

    async def _answer(user_id: str, question, option_key: str | None = None, text: str | None = None):
        option_id = None
        if option_key is not None:
            option_id = next(o.id for o in question.answer_options if o.key == option_key)
        row = models.AnamnesisUserAnswer(
            user_id=user_id,
            question_concept_id=question.id,
            answer_option_id=option_id,
            answer_text=text,
        )
        session.add(row)
        await session.commit()
        return row

    return _answer
