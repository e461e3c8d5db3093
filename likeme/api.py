"""FastAPI app with anamnesis, scoring, import and payment endpoints.

Service errors are mapped to JSON ``ErrorResponse`` bodies by one exception
handler per error type.
"""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import Depends, FastAPI, File, HTTPException, Query, UploadFile, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from .clients.pagarme import PagarmeClient, PaymentError, build_order_payload
from .config import settings
from .db import get_session
from .logging_config import setup_logging
from .services import anamnesis
from .services.anamnesis import AnswerValidationError, QuestionNotFoundError
from .services.importer import AnamnesisImporter, AnamnesisImportError, import_template
from .services.payment_split import calculate_split
from .services.scores import ScoringError, get_user_markers, get_user_scores

logger = logging.getLogger(__name__)


# Pydantic response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str
    detail: str | None = None


class AnswerOptionDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    order: int
    text: str | None = None


class QuestionDTO(BaseModel):
    """Question in a single locale."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    domain: str
    answer_type: str
    text: str | None = None
    answer_options: list[AnswerOptionDTO] = Field(default_factory=list)


class LocalizedTextDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    locale: str
    value: str


class AnswerOptionDetailDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    value: str
    order: int
    texts: list[LocalizedTextDTO] = Field(default_factory=list)


class QuestionDetailDTO(BaseModel):
    """Question with every text and option, as stored."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    type: str
    order: int
    created_at: datetime
    texts: list[LocalizedTextDTO] = Field(default_factory=list)
    answer_options: list[AnswerOptionDetailDTO] = Field(default_factory=list)


class PrefixSummaryDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    prefix: str
    count: int
    sample_keys: list[str]


class PrefixesResponse(BaseModel):
    total_questions: int
    prefixes: list[PrefixSummaryDTO]


class CreateAnswerRequest(BaseModel):
    """Create or update answer request."""
    user_id: str = Field(min_length=1, max_length=64)
    question_concept_id: str = Field(min_length=1)
    answer_option_id: str | None = None
    answer_text: str | None = None


class AnswerDTO(BaseModel):
    """Stored answer."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    question_concept_id: str
    answer_option_id: str | None = None
    answer_text: str | None = None
    created_at: datetime
    updated_at: datetime


class UserAnswerDTO(BaseModel):
    """Answer with its question and option keys (and texts when a locale is given)."""
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    question_concept_id: str
    question_key: str
    answer_option_id: str | None = None
    answer_option_key: str | None = None
    answer_text: str | None = None
    created_at: datetime
    updated_at: datetime
    question_text: str | None = None
    answer_option_text: str | None = None


class ScoreBreakdownDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    name: str
    score: float
    max_score: float
    percentage: int
    answered_questions: int
    total_questions: int
    answered_max_score: float
    answered_percentage: int


class UserScoresResponse(BaseModel):
    """Mental and physical scores."""
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    mental: ScoreBreakdownDTO
    physical: ScoreBreakdownDTO
    maxima_computed_at: datetime
    computed_at: datetime


class UserMarkersResponse(BaseModel):
    """Scores of the ten markers."""
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    markers: list[ScoreBreakdownDTO]
    maxima_computed_at: datetime
    computed_at: datetime


class ImportedQuestionDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    key: str
    type: str
    order: int
    marker: str | None = None


class ImportRowErrorDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row: int
    data: dict[str, str]
    error: str


class ImportWarningDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row: int
    key: str
    message: str


class ImportResponse(BaseModel):
    """CSV import outcome."""
    model_config = ConfigDict(from_attributes=True)

    success: bool
    total_rows: int
    success_count: int
    error_count: int
    errors: list[ImportRowErrorDTO]
    warnings: list[ImportWarningDTO]
    created: list[ImportedQuestionDTO]
    updated: list[ImportedQuestionDTO]


class SplitPreviewRequest(BaseModel):
    amount_cents: int = Field(ge=1)


class SplitOptionsDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    charge_processing_fee: bool
    charge_remainder_fee: bool
    liable: bool


class SplitRuleDTO(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    type: str
    amount: float
    recipient_id: str
    options: SplitOptionsDTO


class SplitPreviewResponse(BaseModel):
    amount_cents: int
    split_applied: bool
    rules: list[SplitRuleDTO] = Field(default_factory=list)


class OrderItem(BaseModel):
    """Order line; amount is the unit price in cents."""
    model_config = ConfigDict(extra="allow")

    amount: int = Field(ge=0)
    quantity: int = Field(default=1, ge=1)


class CreateOrderRequest(BaseModel):
    """Pagarme order body; unknown fields are forwarded untouched."""
    model_config = ConfigDict(extra="allow")

    customer: dict
    items: list[OrderItem] = Field(min_length=1)
    payments: list[dict] = Field(min_length=1)
    code: str | None = None
    metadata: dict | None = None


class CreateOrderResponse(BaseModel):
    status: str
    order_id: str | None = None
    order_status: str | None = None
    split_applied: bool
    order: dict


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown logic."""
    # Startup
    setup_logging()
    logger.info(f"{settings.app_name} starting up ({settings.environment.value})")

    yield

    # Shutdown
    logger.info("Application shutting down")


app = FastAPI(
    title=settings.app_name,
    version=settings.version,
    description="Anamnesis questionnaire, wellness scores and marketplace payments",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _error_response(status_code: int, error: str, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=str(exc)).model_dump(),
    )


# Exception handlers
@app.exception_handler(QuestionNotFoundError)
async def question_not_found_handler(request, exc: QuestionNotFoundError):
    """Handle unknown or deleted questions."""
    logger.warning(f"Question not found: {exc}")
    return _error_response(status.HTTP_404_NOT_FOUND, "question_not_found", exc)


@app.exception_handler(AnswerValidationError)
async def answer_validation_error_handler(request, exc: AnswerValidationError):
    """Handle answers that do not fit their question."""
    logger.warning(f"Answer validation error: {exc}")
    return _error_response(status.HTTP_400_BAD_REQUEST, "answer_validation_error", exc)


@app.exception_handler(AnamnesisImportError)
async def import_error_handler(request, exc: AnamnesisImportError):
    """Handle unreadable import files."""
    logger.error(f"Import error: {exc}")
    return _error_response(status.HTTP_400_BAD_REQUEST, "import_error", exc)


@app.exception_handler(ScoringError)
async def scoring_error_handler(request, exc: ScoringError):
    """Handle score computation failures."""
    logger.error(f"Scoring error: {exc}")
    return _error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, "scoring_error", exc)


@app.exception_handler(PaymentError)
async def payment_error_handler(request, exc: PaymentError):
    """Handle payment gateway failures."""
    logger.error(f"Payment error: {exc} (status={exc.status_code})")
    return _error_response(status.HTTP_502_BAD_GATEWAY, "payment_error", exc)


def get_pagarme_client() -> PagarmeClient:
    """Pagarme client dependency."""
    return PagarmeClient()


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    """Health check endpoint."""
    return HealthResponse(status="ok", version=settings.version)


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "app": settings.app_name,
        "version": settings.version,
        "endpoints": {
            "health": "/health",
            "questions": "/anamnesis/questions?locale=pt-BR",
            "question_prefixes": "/anamnesis/questions/prefixes",
            "question_by_key": "/anamnesis/questions/{key}?locale=pt-BR",
            "complete_anamnesis": "/anamnesis/complete?locale=pt-BR",
            "answers": "/anamnesis/answers",
            "user_answers": "/anamnesis/answers/user/{user_id}",
            "user_scores": "/anamnesis/scores/user/{user_id}",
            "user_markers": "/anamnesis/markers/user/{user_id}",
            "import_csv": "/anamnesis/import/csv",
            "import_template": "/anamnesis/import/template",
            "split_preview": "/payments/split/preview",
            "orders": "/payments/orders",
            "docs": "/docs",
        },
    }


@app.get("/anamnesis/questions", response_model=list[QuestionDTO])
async def list_questions(
    locale: str = Query(..., min_length=2, description="Locale of the texts, e.g. pt-BR"),
    key_prefix: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> list[QuestionDTO]:
    """List questions with texts and options in one locale."""
    questions = await anamnesis.list_questions(session, locale, key_prefix)
    return [QuestionDTO.model_validate(q) for q in questions]


@app.get("/anamnesis/questions/prefixes", response_model=PrefixesResponse)
async def question_prefixes(session: AsyncSession = Depends(get_session)) -> PrefixesResponse:
    """Question counts grouped by key prefix."""
    summaries = await anamnesis.summarize_key_prefixes(session)
    return PrefixesResponse(
        total_questions=sum(s.count for s in summaries),
        prefixes=[PrefixSummaryDTO.model_validate(s) for s in summaries],
    )


@app.get("/anamnesis/questions/{key}", response_model=QuestionDTO)
async def get_question(
    key: str,
    locale: str = Query(..., min_length=2),
    session: AsyncSession = Depends(get_session),
) -> QuestionDTO:
    """Fetch one question by key."""
    question = await anamnesis.get_question_by_key(session, key, locale)
    return QuestionDTO.model_validate(question)


@app.get("/anamnesis/complete", response_model=list[QuestionDetailDTO])
async def complete_anamnesis(
    locale: str = Query(..., min_length=2),
    session: AsyncSession = Depends(get_session),
) -> list[QuestionDetailDTO]:
    """Every question with all its texts and options."""
    questions = await anamnesis.get_complete_anamnesis(session, locale)
    return [QuestionDetailDTO.model_validate(q) for q in questions]


@app.post("/anamnesis/answers", response_model=AnswerDTO)
async def create_or_update_answer(
    request: CreateAnswerRequest,
    session: AsyncSession = Depends(get_session),
) -> AnswerDTO:
    """Create or replace a user's answer to a question."""
    answer = await anamnesis.create_or_update_answer(
        session,
        user_id=request.user_id,
        question_concept_id=request.question_concept_id,
        answer_option_id=request.answer_option_id,
        answer_text=request.answer_text,
    )
    return AnswerDTO.model_validate(answer)


@app.get("/anamnesis/answers/user/{user_id}", response_model=list[UserAnswerDTO])
async def list_user_answers(
    user_id: str,
    locale: str | None = Query(default=None),
    session: AsyncSession = Depends(get_session),
) -> list[UserAnswerDTO]:
    """All answers of a user, newest first."""
    answers = await anamnesis.list_user_answers(session, user_id, locale)
    return [UserAnswerDTO.model_validate(a) for a in answers]


@app.get(
    "/anamnesis/answers/user/{user_id}/question/{question_concept_id}",
    response_model=UserAnswerDTO,
)
async def get_user_answer(
    user_id: str,
    question_concept_id: str,
    session: AsyncSession = Depends(get_session),
) -> UserAnswerDTO:
    """A user's answer to one question."""
    answer = await anamnesis.get_user_answer(session, user_id, question_concept_id)
    if answer is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Answer not found",
        )
    return UserAnswerDTO.model_validate(answer)


@app.get("/anamnesis/scores/user/{user_id}", response_model=UserScoresResponse)
async def user_scores(
    user_id: str,
    session: AsyncSession = Depends(get_session),
) -> UserScoresResponse:
    """Mental and physical percentage scores of a user."""
    scores = await get_user_scores(session, user_id)
    return UserScoresResponse.model_validate(scores)


@app.get("/anamnesis/markers/user/{user_id}", response_model=UserMarkersResponse)
async def user_markers(
    user_id: str,
    session: AsyncSession = Depends(get_session),
) -> UserMarkersResponse:
    """Percentage scores of a user per marker."""
    markers = await get_user_markers(session, user_id)
    return UserMarkersResponse.model_validate(markers)


@app.post(
    "/anamnesis/import/csv",
    response_model=ImportResponse,
    status_code=status.HTTP_201_CREATED,
    responses={207: {"model": ImportResponse}, 400: {"model": ErrorResponse}},
)
async def import_csv(
    file: UploadFile = File(..., description="Semicolon-delimited UTF-8 CSV"),
    session: AsyncSession = Depends(get_session),
) -> JSONResponse:
    """Import questions from a CSV file.

    Answers 201 when every row was imported and 207 when some rows failed;
    the body lists the failed rows either way.
    """
    filename = file.filename or ""
    is_csv = filename.lower().endswith(".csv") or (file.content_type or "").startswith("text/csv")
    if not is_csv:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only CSV files are accepted",
        )

    logger.info(f"Received anamnesis import: {filename}")

    try:
        content = await file.read()
        if len(content) > settings.importer.max_file_size_bytes:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"File exceeds {settings.importer.max_file_size_bytes} bytes",
            )

        result = await AnamnesisImporter(session).import_csv(content)

    except (HTTPException, AnamnesisImportError):
        raise
    except Exception as e:
        logger.error(f"Unexpected error importing {filename}: {e}", exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Internal server error: {str(e)}",
        )
    finally:
        await file.close()

    body = ImportResponse.model_validate(result)
    return JSONResponse(
        status_code=status.HTTP_201_CREATED if result.success else status.HTTP_207_MULTI_STATUS,
        content=body.model_dump(mode="json"),
    )


@app.get("/anamnesis/import/template")
async def download_import_template() -> Response:
    """Sample CSV for the import endpoint."""
    return Response(
        content=import_template().encode("utf-8"),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": 'attachment; filename="anamnesis_template.csv"'},
    )


@app.post("/payments/split/preview", response_model=SplitPreviewResponse)
async def split_preview(request: SplitPreviewRequest) -> SplitPreviewResponse:
    """Split rules that would be attached to an order of this amount."""
    rules = calculate_split(request.amount_cents) or []
    return SplitPreviewResponse(
        amount_cents=request.amount_cents,
        split_applied=bool(rules),
        rules=[SplitRuleDTO.model_validate(r) for r in rules],
    )


@app.post(
    "/payments/orders",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_order(
    request: CreateOrderRequest,
    client: PagarmeClient = Depends(get_pagarme_client),
) -> CreateOrderResponse:
    """Create a Pagarme order with the marketplace split attached."""
    order_body = request.model_dump(exclude_none=True)
    amount_cents = sum(item.amount * item.quantity for item in request.items)

    split = calculate_split(amount_cents)
    payload = build_order_payload(order_body, split)

    logger.info(f"Creating Pagarme order for {amount_cents} cents (split={'on' if split else 'off'})")
    order = await client.create_order(payload)

    return CreateOrderResponse(
        status="success",
        order_id=order.get("id"),
        order_status=order.get("status"),
        split_applied=bool(split),
        order=order,
    )
