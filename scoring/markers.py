"""Question key classification: domains, mental/physical categories and markers.

Implements prefix matching across the legacy Portuguese and the current
English ``habits_*`` key schemes, plus rapidfuzz matching of free-form
marker labels (for example the ``domain`` column of an import CSV).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import lru_cache

from rapidfuzz import fuzz, process

from config.marker_taxonomy import (
    HABITS_KEY_PREFIX,
    MARKER_TAXONOMY,
    MENTAL_KEY_PREFIXES,
    PHYSICAL_KEY_PREFIXES,
    QUESTION_DOMAINS,
)
from likeme.config import settings
from likeme.services.normalization import normalize_label

logger = logging.getLogger(__name__)

UNKNOWN_DOMAIN = "unknown"


class Category(str, Enum):
    """Score categories."""
    MENTAL = "mental"
    PHYSICAL = "physical"


@dataclass
class MarkerDefinition:
    """A behavioral marker with its legacy aliases."""
    marker: str
    category: Category
    aliases: list[str] = field(default_factory=list)


class MarkerResolver:
    """Maps question keys and labels to markers and categories.

    Supports:
    - Longest-prefix matching of ``habits_*`` keys (aliases and canonical names)
    - Exact label lookup after normalization
    - Fuzzy label matching via rapidfuzz
    - Legacy key standardization
    """

    def __init__(self, taxonomy: list[MarkerDefinition] | None = None) -> None:
        """Initialize marker resolver.

        Args:
            taxonomy: List of MarkerDefinition objects. If None, loads the default taxonomy.
        """
        self.taxonomy = taxonomy or self._load_default_taxonomy()

        # Build lookup structures
        self._definitions: dict[str, MarkerDefinition] = {}
        self._prefixes: list[tuple[str, str]] = []  # (prefix, canonical), longest first
        self._labels: dict[str, str] = {}  # normalized label -> canonical

        self._build_indices()

        logger.debug(f"Loaded {len(self.taxonomy)} markers with {len(self._prefixes)} key prefixes")

    @staticmethod
    def _load_default_taxonomy() -> list[MarkerDefinition]:
        return [
            MarkerDefinition(
                marker=entry["marker"],
                category=Category(entry["category"]),
                aliases=list(entry["aliases"]),
            )
            for entry in MARKER_TAXONOMY
        ]

    def _build_indices(self) -> None:
        """Build internal lookup structures."""
        for definition in self.taxonomy:
            canonical = definition.marker
            self._definitions[canonical] = definition

            for prefix in [canonical, *definition.aliases]:
                self._prefixes.append((prefix.lower(), canonical))
                self._labels[normalize_label(prefix)] = canonical

        # Compound legacy prefixes ("sonovoce") must win over their stems ("sono").
        self._prefixes.sort(key=lambda item: len(item[0]), reverse=True)

    @property
    def markers(self) -> list[str]:
        """Canonical marker names in taxonomy order."""
        return [d.marker for d in self.taxonomy]

    def category_of(self, marker: str) -> Category:
        return self._definitions[marker].category

    def _match_prefix(self, key: str) -> tuple[str, str] | None:
        """Return (matched prefix, canonical marker) for a habits key, if any."""
        lower = key.lower()
        if not lower.startswith(HABITS_KEY_PREFIX):
            return None

        remainder = lower[len(HABITS_KEY_PREFIX):]
        for prefix, canonical in self._prefixes:
            if remainder.startswith(prefix):
                return prefix, canonical
        return None

    def resolve_marker(self, key: str) -> str | None:
        """Resolve the canonical marker of a ``habits_*`` question key."""
        match = self._match_prefix(key)
        return match[1] if match else None

    def question_category(self, key: str) -> Category | None:
        """Classify a question key as mental, physical, or unscored (None)."""
        lower = key.lower()
        if lower.startswith(MENTAL_KEY_PREFIXES):
            return Category.MENTAL
        if lower.startswith(PHYSICAL_KEY_PREFIXES):
            return Category.PHYSICAL
        if lower.startswith(HABITS_KEY_PREFIX):
            marker = self.resolve_marker(lower)
            if marker is None:
                return Category.PHYSICAL
            return self.category_of(marker)
        return None

    def match_label(self, label: str, *, threshold: int | None = None) -> str | None:
        """Resolve a free-form marker label ("MOVIMENTO", "Saúde Bucal").

        Args:
            label: Label to resolve
            threshold: Minimum rapidfuzz score (uses config default if None)

        Returns:
            Canonical marker name, or None when nothing is close enough
        """
        normalized = normalize_label(label)
        if not normalized:
            return None

        if normalized in self._labels:
            return self._labels[normalized]

        cutoff = settings.scoring.fuzzy_threshold if threshold is None else threshold
        match = process.extractOne(
            normalized,
            list(self._labels.keys()),
            scorer=fuzz.ratio,
            score_cutoff=cutoff,
        )
        if match is None:
            logger.debug(f"No marker matches label {label!r}")
            return None

        best_label, score, _ = match
        logger.debug(f"Fuzzy-matched label {label!r} to {best_label!r} ({score:.0f})")
        return self._labels[best_label]

    def standardize_key(self, key: str) -> str:
        """Rewrite a legacy ``habits_<alias><rest>`` key to ``habits_<marker><rest>``.

        Keys that are already standardized or do not resolve are returned unchanged.
        """
        match = self._match_prefix(key)
        if match is None:
            return key

        prefix, canonical = match
        if prefix == canonical:
            return key

        rest = key[len(HABITS_KEY_PREFIX) + len(prefix):]
        if not rest:
            return f"{HABITS_KEY_PREFIX}{canonical}"
        if rest.startswith("_"):
            return f"{HABITS_KEY_PREFIX}{canonical}{rest}"
        return f"{HABITS_KEY_PREFIX}{canonical}_{rest}"


def question_domain(key: str) -> str:
    """Questionnaire domain from the first key segment (``unknown`` if unlisted)."""
    prefix = key.split("_")[0].lower()
    return prefix if prefix in QUESTION_DOMAINS else UNKNOWN_DOMAIN


@lru_cache(maxsize=1)
def get_marker_resolver() -> MarkerResolver:
    """Cached resolver built from the default taxonomy."""
    return MarkerResolver()
