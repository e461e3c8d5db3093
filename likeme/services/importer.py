"""CSV import of anamnesis questions, texts and answer options.

One question per row. Options are packed in a single cell, separated by
``|``; each option is ``key:value[:label]`` (a single pt-BR label) or
``key:value:pt-BR:en-US[:es-ES]``.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field

import pandas as pd
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from likeme import models
from likeme.config import settings
from likeme.models import QuestionType
from likeme.services.normalization import clean_cell, normalize_question_type
from likeme.services.scores import invalidate_score_cache
from scoring.markers import MarkerResolver, get_marker_resolver

logger = logging.getLogger(__name__)

LOCALES = ("pt-BR", "en-US", "es-ES")

# Accepted header spellings per logical column
COLUMN_ALIASES: dict[str, list[str]] = {
    "domain": ["domain", "Domain", "marker", "Marker"],
    "section": ["section", "Section", "seção", "Seção"],
    "key": ["key", "Key", "KEY"],
    "type": ["type", "Type", "TYPE", "answerType", "answer_type"],
    "order": ["order", "Order", "ORDER"],
    "text_pt-BR": ["text_pt-BR", "text_ptBR", "pt-BR", "ptBR", "portugues", "texto"],
    "text_en-US": ["text_en-US", "text_enUS", "en-US", "enUS", "english"],
    "text_es-ES": ["text_es-ES", "text_esES", "es-ES", "esES", "espanhol"],
    "options": ["options", "Options", "OPTIONS", "opções", "Opções"],
}

_QUESTION_TYPE_ALIASES = {
    "single_choice": QuestionType.SINGLE_CHOICE,
    "singlechoice": QuestionType.SINGLE_CHOICE,
    "single": QuestionType.SINGLE_CHOICE,
    "multiple_choice": QuestionType.MULTIPLE_CHOICE,
    "multiplechoice": QuestionType.MULTIPLE_CHOICE,
    "multiple": QuestionType.MULTIPLE_CHOICE,
    "text": QuestionType.TEXT,
    "string": QuestionType.TEXT,
    "number": QuestionType.NUMBER,
    "numeric": QuestionType.NUMBER,
}

IMPORT_TEMPLATE = """domain;section;key;type;order;text_pt-BR;text_en-US;text_es-ES;options
MENTAL;Mente;mental_focus;single_choice;1;Com que facilidade você mantém o foco?;How easily do you stay focused?;¿Con qué facilidad mantiene la concentración?;never:1:Nunca:Never:Nunca|sometimes:2:Às vezes:Sometimes:A veces|often:3:Frequentemente:Often:Frecuentemente|always:4:Sempre:Always:Siempre
CORPO;Corpo;physical_energy;single_choice;2;Como está sua energia durante o dia?;How is your energy during the day?;¿Cómo está su energía durante el día?;low:1:Baixa:Low:Baja|moderate:2:Moderada:Moderate:Moderada|high:3:Alta:High:Alta
MOVIMENTO;Hábitos;habits_activity_weekly_exercise;single_choice;3;Quantos dias por semana você se exercita?;How many days a week do you exercise?;¿Cuántos días por semana hace ejercicio?;none:0:Nenhum:None:Ninguno|one_two:1:1 a 2:1 to 2:1 a 2|three_four:2:3 a 4:3 to 4:3 a 4|five_plus:3:5 ou mais:5 or more:5 o más
SONO;Hábitos;habits_sleep_quality;single_choice;4;Como você avalia a qualidade do seu sono?;How do you rate your sleep quality?;¿Cómo evalúa la calidad de su sueño?;poor:1:Ruim:Poor:Mala|regular:2:Regular:Regular:Regular|good:3:Boa:Good:Buena|excellent:4:Excelente:Excellent:Excelente
ESTRESSE;Hábitos;habits_stress_level;single_choice;5;Qual seu nível de estresse atualmente?;What is your current stress level?;¿Cuál es su nivel de estrés actual?;very_high:1:Muito alto:Very high:Muy alto|high:2:Alto:High:Alto|moderate:3:Moderado:Moderate:Moderado|low:4:Baixo:Low:Bajo
;Geral;general_allergies;text;6;Você possui alguma alergia? Se sim, quais?;Do you have any allergies? If so, which ones?;¿Tiene alguna alergia? Si es así, ¿cuáles?;
"""


class AnamnesisImportError(Exception):
    """Raised when an import file cannot be read at all."""
    pass


@dataclass
class CSVAnamnesisRow:
    """One question row, with header aliases already resolved."""
    domain: str
    section: str
    key: str
    type: str
    order: str
    texts: dict[str, str]
    options: str


@dataclass
class ParsedOption:
    key: str
    value: str
    texts: list[tuple[str, str]] = field(default_factory=list)  # (locale, label)


@dataclass
class ImportedQuestion:
    id: str
    key: str
    type: str
    order: int
    marker: str | None = None


@dataclass
class ImportRowError:
    row: int
    data: dict[str, str]
    error: str


@dataclass
class ImportWarning:
    row: int
    key: str
    message: str


@dataclass
class ImportResult:
    """Outcome of one CSV import."""
    success: bool = True
    total_rows: int = 0
    success_count: int = 0
    error_count: int = 0
    errors: list[ImportRowError] = field(default_factory=list)
    warnings: list[ImportWarning] = field(default_factory=list)
    created: list[ImportedQuestion] = field(default_factory=list)
    updated: list[ImportedQuestion] = field(default_factory=list)


def parse_question_type(type_str: str) -> QuestionType:
    """Map a free-form type label to a QuestionType (single choice when unknown)."""
    return _QUESTION_TYPE_ALIASES.get(normalize_question_type(type_str), QuestionType.SINGLE_CHOICE)


def parse_options(options_str: str) -> list[ParsedOption]:
    """Parse the packed options cell.

    ``key:value:Label`` yields one pt-BR label (the label may not contain
    ``:``); four or more segments are read as pt-BR, en-US and es-ES labels.
    Options without any label fall back to their key as pt-BR label.
    """
    if not options_str or not options_str.strip():
        return []

    options: list[ParsedOption] = []
    for part in options_str.split("|"):
        segments = part.split(":")
        if len(segments) < 2:
            continue

        key = segments[0].strip()
        value = segments[1].strip() or "0"

        texts: list[tuple[str, str]] = []
        if len(segments) == 3:
            label = segments[2].strip()
            if label:
                texts.append(("pt-BR", label))
        elif len(segments) >= 4:
            for locale, label in zip(LOCALES, segments[2:5]):
                if label.strip():
                    texts.append((locale, label.strip()))

        if not texts:
            texts.append(("pt-BR", key))

        options.append(ParsedOption(key=key, value=value, texts=texts))

    return options


def _get_field(row: dict[str, str], column: str) -> str:
    for alias in COLUMN_ALIASES[column]:
        if alias in row:
            return clean_cell(row[alias])
    return ""


def map_row(row: dict[str, str]) -> CSVAnamnesisRow:
    """Resolve header aliases of one raw CSV record."""
    return CSVAnamnesisRow(
        domain=_get_field(row, "domain"),
        section=_get_field(row, "section"),
        key=_get_field(row, "key"),
        type=_get_field(row, "type"),
        order=_get_field(row, "order"),
        texts={locale: _get_field(row, f"text_{locale}") for locale in LOCALES},
        options=_get_field(row, "options"),
    )


def is_header_or_empty_row(row: dict[str, str]) -> bool:
    """Rows with every cell empty, or without a key, carry no question."""
    if all(not clean_cell(v) for v in row.values()):
        return True
    return not _get_field(row, "key")


def read_csv_records(content: bytes, delimiter: str | None = None) -> list[dict[str, str]]:
    """Decode and split an import file into raw records (header -> cell).

    Raises:
        AnamnesisImportError: If the file is not UTF-8 or has no header
    """
    delimiter = delimiter or settings.importer.delimiter
    try:
        text = content.decode("utf-8-sig")
    except UnicodeDecodeError as e:
        raise AnamnesisImportError(f"CSV file must be UTF-8 encoded: {e}") from e

    if not text.strip():
        raise AnamnesisImportError("CSV file is empty")

    try:
        header = pd.read_csv(io.StringIO(text), sep=delimiter, nrows=0, dtype=str).columns
        frame = pd.read_csv(
            io.StringIO(text),
            sep=delimiter,
            dtype=str,
            keep_default_na=False,
            skip_blank_lines=True,
            engine="python",
            # Tolerate rows with extra cells, as spreadsheets often emit them
            on_bad_lines=lambda fields: fields[: len(header)],
        )
    except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise AnamnesisImportError(f"Error processing CSV file: {e}") from e

    frame.columns = [str(c).strip() for c in frame.columns]
    return frame.to_dict(orient="records")


class AnamnesisImporter:
    """Upserts question rows one by one, collecting per-row failures."""

    def __init__(self, session: AsyncSession, resolver: MarkerResolver | None = None):
        self.session = session
        self.resolver = resolver or get_marker_resolver()

    async def import_csv(self, content: bytes) -> ImportResult:
        """Import a CSV file.

        Args:
            content: Raw file bytes

        Returns:
            ImportResult with created/updated questions and row errors

        Raises:
            AnamnesisImportError: If the file cannot be parsed
        """
        records = read_csv_records(content)
        result = ImportResult()

        for row_number, record in enumerate(records, start=1):
            if is_header_or_empty_row(record):
                logger.debug(f"Skipping row {row_number} - header or empty")
                continue

            result.total_rows += 1
            csv_row = map_row(record)

            try:
                imported, is_update = await self._process_row(csv_row)
                await self.session.commit()
            except Exception as e:
                await self.session.rollback()
                logger.error(f"Error processing row {row_number} ({csv_row.key}): {e}")
                result.error_count += 1
                result.errors.append(
                    ImportRowError(
                        row=row_number,
                        data={k: clean_cell(v) for k, v in record.items()},
                        error=str(e) or type(e).__name__,
                    )
                )
                continue

            imported.marker, warning = self._resolve_marker(csv_row, row_number)
            if warning is not None:
                result.warnings.append(warning)

            (result.updated if is_update else result.created).append(imported)
            result.success_count += 1

        result.success = result.error_count == 0
        if result.success_count:
            invalidate_score_cache()

        logger.info(
            f"Import finished: {result.total_rows} rows, {result.success_count} ok, "
            f"{result.error_count} errors, {len(result.created)} created, {len(result.updated)} updated"
        )
        return result

    def _resolve_marker(self, row: CSVAnamnesisRow, row_number: int) -> tuple[str | None, ImportWarning | None]:
        """Marker from the key, falling back to the ``domain`` column label."""
        key_marker = self.resolver.resolve_marker(row.key)
        label_marker = self.resolver.match_label(row.domain) if row.domain else None

        if key_marker and label_marker and key_marker != label_marker:
            return key_marker, ImportWarning(
                row=row_number,
                key=row.key,
                message=(
                    f"Domain column {row.domain!r} maps to marker {label_marker!r} "
                    f"but the key maps to {key_marker!r}"
                ),
            )
        return key_marker or label_marker, None

    async def _process_row(self, row: CSVAnamnesisRow) -> tuple[ImportedQuestion, bool]:
        if not row.key:
            raise ValueError("Question key is required")

        question_type = parse_question_type(row.type)
        try:
            order = int(float(row.order)) if row.order else 0
        except ValueError:
            order = 0

        Q = models.AnamnesisQuestionConcept
        question = (
            await self.session.execute(
                select(Q)
                .where(Q.key == row.key)
                .options(selectinload(Q.answer_options))
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        is_update = question is not None
        if question is None:
            question = Q(key=row.key, type=question_type.value, order=order)
            self.session.add(question)
            await self.session.flush()
            existing_options: dict[str, list[models.AnamnesisAnswerOption]] = {}
            logger.info(f"Created question: {row.key}")
        else:
            question.type = question_type.value
            question.order = order
            question.deleted_at = None
            await self.session.execute(
                delete(models.AnamnesisQuestionText).where(
                    models.AnamnesisQuestionText.question_concept_id == question.id
                )
            )
            existing_options = {}
            for option in sorted(question.answer_options, key=lambda o: o.order):
                existing_options.setdefault(option.key, []).append(option)
            logger.info(f"Updated question: {row.key}")

        for locale in LOCALES:
            value = row.texts.get(locale)
            if value:
                self.session.add(
                    models.AnamnesisQuestionText(question_concept_id=question.id, locale=locale, value=value)
                )

        await self._sync_options(question.id, existing_options, parse_options(row.options))

        return (
            ImportedQuestion(id=question.id, key=question.key, type=question.type, order=question.order),
            is_update,
        )

    async def _sync_options(
        self,
        question_id: str,
        existing: dict[str, list[models.AnamnesisAnswerOption]],
        parsed: list[ParsedOption],
    ) -> None:
        """Reconcile stored options with the parsed ones by option key.

        Options that keep their key keep their id, so stored answers stay
        linked; options missing from the file are removed. A key repeated in
        the file reuses the stored options with that key in their order.
        """
        O = models.AnamnesisAnswerOption
        OT = models.AnamnesisAnswerOptionText

        existing_ids = [o.id for options in existing.values() for o in options]
        if existing_ids:
            await self.session.execute(delete(OT).where(OT.answer_option_id.in_(existing_ids)))

        available = {key: list(options) for key, options in existing.items()}
        reused: set[str] = set()
        for index, opt in enumerate(parsed):
            candidates = available.get(opt.key)
            if candidates:
                option = candidates.pop(0)
                option.value = opt.value
                option.order = index
                reused.add(option.id)
            else:
                option = O(question_concept_id=question_id, key=opt.key, value=opt.value, order=index)
                self.session.add(option)
                await self.session.flush()

            for locale, label in opt.texts:
                self.session.add(OT(answer_option_id=option.id, locale=locale, value=label))

        stale = [option_id for option_id in existing_ids if option_id not in reused]
        if stale:
            await self.session.execute(delete(O).where(O.id.in_(stale)))


def import_template() -> str:
    """Sample import file, BOM-prefixed so spreadsheet tools detect UTF-8."""
    return "\ufeff" + IMPORT_TEMPLATE
