"""Text normalization for questionnaire keys, labels and CSV cells.

Handles whitespace, Portuguese/Spanish diacritics and separator variants.
"""
from __future__ import annotations

import re
import unicodedata


def normalize_whitespace(text: str) -> str:
    """Normalize whitespace: collapse multiple spaces, remove leading/trailing."""
    text = re.sub(r'\s+', ' ', text)
    return text.strip()


def strip_diacritics(text: str) -> str:
    """Remove combining marks (``saúde`` -> ``saude``, ``nutrição`` -> ``nutricao``)."""
    text = unicodedata.normalize('NFD', text)
    text = ''.join(c for c in text if unicodedata.category(c) != 'Mn')
    return unicodedata.normalize('NFC', text)


def clean_cell(value: object) -> str:
    """Coerce a spreadsheet cell to a trimmed string ('' for missing values)."""
    if value is None:
        return ""
    text = str(value)
    if text.lower() == "nan":
        return ""
    return text.strip()


def normalize_label(text: str, *, separator: str = "-") -> str:
    """Normalize a free-form marker label for lookup.

    ``"Saúde Bucal"`` -> ``"saude-bucal"``, ``"  MOVIMENTO "`` -> ``"movimento"``.

    Args:
        text: Input label
        separator: Character that replaces runs of spaces, ``_`` and ``-``

    Returns:
        Lower-case, accent-free label
    """
    if not text or not text.strip():
        return ""

    text = strip_diacritics(normalize_whitespace(text)).lower()
    text = re.sub(r'[\s_\-]+', separator, text)
    return text.strip(separator)


def normalize_question_type(text: str) -> str:
    """Lower-case a type label and turn spaces/dashes into underscores."""
    return re.sub(r'[-\s]', '_', text.lower().strip())
