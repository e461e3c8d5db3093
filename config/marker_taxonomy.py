"""Behavioral marker taxonomy for ``habits_*`` anamnesis questions.

Question keys were first written with Portuguese marker names
(``habits_movimento_...``) and later standardized to English
(``habits_activity_...``). Both schemes are still found in the database, so
every marker lists its legacy aliases.
"""

MARKER_TAXONOMY = [
    {
        "marker": "activity",
        "category": "physical",
        "aliases": ["movimento"],
    },
    {
        "marker": "connection",
        "category": "physical",
        "aliases": ["relacionamentos"],
    },
    {
        "marker": "environment",
        "category": "physical",
        "aliases": ["ambiente"],
    },
    {
        "marker": "nutrition",
        "category": "physical",
        "aliases": ["nutricao"],
    },
    {
        "marker": "purpose-vision",
        "category": "mental",
        "aliases": ["proposito", "purpose"],
    },
    {
        "marker": "self-esteem",
        "category": "mental",
        "aliases": ["autoestima", "autoestimavoce"],
    },
    {
        "marker": "sleep",
        "category": "physical",
        "aliases": ["sono", "sonovoce"],
    },
    {
        "marker": "smile",
        "category": "physical",
        "aliases": ["saude-bucal", "saude_bucal", "sorriso"],
    },
    {
        "marker": "spirituality",
        "category": "mental",
        "aliases": ["espiritualidade"],
    },
    {
        "marker": "stress",
        "category": "mental",
        "aliases": ["estresse"],
    },
]

# First segment of a question key -> questionnaire domain.
QUESTION_DOMAINS = [
    "body",
    "mind",
    "habits",
    "movement",
    "sleep",
    "nutrition",
    "stress",
    "spirituality",
]

# Key prefixes scored outside the habits section.
MENTAL_KEY_PREFIXES = ("mind_", "mental")
PHYSICAL_KEY_PREFIXES = ("body_", "physical")
HABITS_KEY_PREFIX = "habits_"
