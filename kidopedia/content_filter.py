"""
Age-appropriateness classification for words, definitions and search queries.

Everything here is a pure function of (text, age): no state, no I/O.
"""
import re
from dataclasses import dataclass
from typing import Dict, List, Optional

from .structured import Definition, Meaning, WordRecord

INAPPROPRIATE_WORDS: List[str] = [
    "sex", "sexy", "porn", "xxx", "nude", "naked", "dick", "cock", "pussy", "vagina", "penis",
    "fuck", "shit", "damn", "hell", "ass", "bitch", "bastard", "crap", "piss", "slut", "whore",
    "drug", "cocaine", "heroin", "meth", "weed", "marijuana", "alcohol", "beer", "wine", "vodka",
    "kill", "murder", "suicide", "death", "die", "gun", "weapon", "bomb", "terrorist",
    "rape", "abuse", "violence", "blood", "gore", "horror",
]

ADULT_CONTENT_PATTERNS = [
    re.compile(r"\b(sex|sexual|sexually)\b", re.I),
    re.compile(r"\b(porn|pornography|pornographic)\b", re.I),
    re.compile(r"\b(nude|naked|nudity)\b", re.I),
    re.compile(r"\b(erotic|erotica)\b", re.I),
    re.compile(r"\b(adult\s+content|mature\s+content)\b", re.I),
    re.compile(r"\b(explicit|nsfw)\b", re.I),
    re.compile(r"\b(genitals?|genitalia)\b", re.I),
    re.compile(r"\b(intercourse|copulation)\b", re.I),
    re.compile(r"\b(masturbat(e|ion|ing))\b", re.I),
    re.compile(r"\b(orgasm|climax)\b", re.I),
    re.compile(r"\b(fetish|kink)\b", re.I),
]

VIOLENCE_PATTERNS = [
    re.compile(r"\b(kill(ing|ed)?|murder(ed|ing)?|assassination)\b", re.I),
    re.compile(r"\b(suicide|suicidal)\b", re.I),
    re.compile(r"\b(weapon|gun|rifle|pistol|firearm)\b", re.I),
    re.compile(r"\b(bomb|explosive|grenade)\b", re.I),
    re.compile(r"\b(terrorist|terrorism)\b", re.I),
    re.compile(r"\b(torture|torturing|tortured)\b", re.I),
    re.compile(r"\b(gore|gory|bloody)\b", re.I),
]

DRUG_PATTERNS = [
    re.compile(r"\b(drug|narcotic|substance\s+abuse)\b", re.I),
    re.compile(r"\b(cocaine|heroin|methamphetamine|ecstasy)\b", re.I),
    re.compile(r"\b(marijuana|cannabis|weed|pot)\b", re.I),
    re.compile(r"\b(alcohol|alcoholic|intoxicated|drunk)\b", re.I),
    re.compile(r"\b(smoking|cigarette|tobacco)\b", re.I),
    re.compile(r"\b(injection|needle|syringe)\b", re.I),
]

# (patterns, reason when matched as a word, reason when matched inside a definition)
_CATEGORIES = [
    (ADULT_CONTENT_PATTERNS, "Adult content detected", "Adult content in definition"),
    (VIOLENCE_PATTERNS, "Violent content detected", "Violent content in definition"),
    (DRUG_PATTERNS, "Drug-related content detected", "Drug-related content in definition"),
]

AGE_GROUPS: Dict[str, Dict[str, object]] = {
    "2-5": {"max_complexity": 3, "blocked_words": frozenset(INAPPROPRIATE_WORDS)},
    "6-8": {"max_complexity": 5, "blocked_words": frozenset(INAPPROPRIATE_WORDS)},
    "9-12": {"max_complexity": 7, "blocked_words": frozenset(INAPPROPRIATE_WORDS)},
    "13+": {"max_complexity": 10, "blocked_words": frozenset(INAPPROPRIATE_WORDS[:20])},
}

RESTRICTED_MIN_AGE = 16
ALL_MEANINGS_FILTERED = "All definitions contain inappropriate content"

HIGH = "high"
MEDIUM = "medium"
LOW = "low"

_TOKEN_RE = re.compile(r"[a-z]+")


@dataclass(frozen=True)
class FilterResult:
    is_appropriate: bool
    reason: Optional[str] = None
    severity: Optional[str] = None


@dataclass(frozen=True)
class SanitizedQuery:
    sanitized: str
    is_blocked: bool


APPROPRIATE = FilterResult(True)


def get_age_group(age: int) -> str:
    if 2 <= age <= 5:
        return "2-5"
    if 6 <= age <= 8:
        return "6-8"
    if 9 <= age <= 12:
        return "9-12"
    return "13+"


def get_max_complexity_for_age(age: int) -> int:
    return int(AGE_GROUPS[get_age_group(age)]["max_complexity"])  # type: ignore[call-overload]


def _blocked_words(age: int) -> frozenset:
    return AGE_GROUPS[get_age_group(age)]["blocked_words"]  # type: ignore[return-value]


def is_word_appropriate(word: str, age: int) -> FilterResult:
    """Classify a single word for a viewer of the given age."""
    normalized = word.lower().strip()
    if len(normalized) < 2:
        return FilterResult(False, "Word too short", LOW)

    if normalized in _blocked_words(age):
        return FilterResult(False, "Inappropriate word for age group", HIGH)

    for patterns, reason, _ in _CATEGORIES:
        if any(p.search(normalized) for p in patterns):
            return FilterResult(False, reason, HIGH)

    return APPROPRIATE


def filter_definition(text: str, age: int) -> FilterResult:
    """Classify a free-text span (definition or example sentence)."""
    normalized = text.lower()
    for patterns, _, reason in _CATEGORIES:
        if any(p.search(normalized) for p in patterns):
            return FilterResult(False, reason, HIGH)

    # whole-token match, so "shell" does not trip on "hell"
    tokens = set(_TOKEN_RE.findall(normalized))
    if tokens & _blocked_words(age):
        return FilterResult(False, "Inappropriate content in definition", MEDIUM)

    return APPROPRIATE


def filter_example(text: str, age: int) -> FilterResult:
    return filter_definition(text, age)


def sanitize_search_query(query: str, age: int) -> SanitizedQuery:
    """
    Drop blocked tokens from a multi-word query.

    The whole query is blocked when any token is high severity, or when no
    token survives.
    """
    normalized = query.strip()
    if len(normalized) < 2:
        return SanitizedQuery("", True)

    kept: List[str] = []
    has_blocked = False
    for token in normalized.split():
        result = is_word_appropriate(token, age)
        if result.is_appropriate:
            kept.append(token)
        elif result.severity == HIGH:
            has_blocked = True

    return SanitizedQuery(" ".join(kept), has_blocked or not kept)


def filter_meanings(meanings: List[Meaning], age: int) -> List[Meaning]:
    """
    Drop definitions that fail the filter, blank failing examples and prune
    synonyms/antonyms. Meanings left without definitions are dropped.
    """
    filtered: List[Meaning] = []
    for meaning in meanings:
        kept: List[Definition] = []
        for d in meaning.definitions:
            if not filter_definition(d.definition, age).is_appropriate:
                continue
            example = d.example
            if example and not filter_example(example, age).is_appropriate:
                example = ""
            kept.append(Definition(
                definition=d.definition,
                example=example,
                synonyms=[s for s in d.synonyms if is_word_appropriate(s, age).is_appropriate],
                antonyms=[a for a in d.antonyms if is_word_appropriate(a, age).is_appropriate],
            ))
        if kept:
            filtered.append(Meaning(part_of_speech=meaning.part_of_speech, definitions=kept))
    return filtered


def classify_entry(record: WordRecord, age: int) -> WordRecord:
    """
    One-time classification of a freshly fetched entry.

    The result is meant to be stored; later reads only re-check
    ``is_age_appropriate`` and ``min_age`` against the viewer.
    """
    flags = list(record.content_flags)
    is_appropriate = True
    min_age = record.min_age

    word_check = is_word_appropriate(record.word, age)
    if not word_check.is_appropriate:
        flags.append(word_check.reason or "inappropriate")
        is_appropriate = False
        min_age = RESTRICTED_MIN_AGE

    meanings = filter_meanings(record.meanings, age)
    if not meanings and record.meanings:
        flags.append(ALL_MEANINGS_FILTERED)
        is_appropriate = False
        min_age = RESTRICTED_MIN_AGE

    classified = record.with_meanings(meanings)
    classified.content_flags = flags
    classified.is_age_appropriate = is_appropriate
    classified.min_age = min_age
    return classified


def get_blocked_message(age: int) -> str:
    if age <= 8:
        return "Oops! That word isn't in our kid-friendly dictionary. Try searching for something else!"
    return "This word may not be appropriate for your age. Please try a different word."
