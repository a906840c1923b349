"""Local heuristic matcher that locates a focus institution in an ordered brand list.

Strategies run as a cascade. Each one scans the whole list before the next one
is tried, so a stricter match later in the list beats a looser match earlier
in the list.
"""
from __future__ import annotations

import math
import re
from difflib import SequenceMatcher
from typing import Callable, Sequence

from visibility.models.analysis import MatchResult, MatchStrategy

CITY_NAMES: tuple[str, ...] = (
    "delhi",
    "mumbai",
    "bangalore",
    "chennai",
    "kolkata",
    "hyderabad",
    "pune",
    "ahmedabad",
    "jaipur",
    "lucknow",
    "bhubaneswar",
    "bhubaneshwar",
    "noida",
    "gurgaon",
    "gurugram",
    "chandigarh",
    "indore",
    "nagpur",
    "patna",
    "bengaluru",
    "calcutta",
    "bombay",
    "madras",
)

CITY_SIMILARITY_THRESHOLD = 0.85
FALLBACK_SIMILARITY_THRESHOLD = 0.65
SIGNIFICANT_WORD_RATIO = 0.7
SHORT_FORM_MAX_LEN = 6

_PUNCT_RE = re.compile(r"[^\w\s]")
_SPACE_RE = re.compile(r"\s+")
_NON_ALNUM_RE = re.compile(r"[^0-9a-z]", re.IGNORECASE)
_PAREN_RE = re.compile(r"^(.*?)\s*\(([^()]+)\)\s*$")
_CITY_RE = re.compile(
    r"\b(?:" + "|".join(re.escape(city) for city in CITY_NAMES) + r")\b",
    re.IGNORECASE,
)
_CITY_SET = frozenset(CITY_NAMES)


def normalize(name: str) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    return _SPACE_RE.sub(" ", _PUNCT_RE.sub("", (name or "").lower())).strip()


def strip_cities(name: str) -> str:
    """Remove known city tokens while keeping the original casing of the rest."""
    stripped = _CITY_RE.sub(" ", name or "")
    return _SPACE_RE.sub(" ", stripped).strip(" ,-–()")


def acronym(name: str) -> str:
    """First letters of capitalized, non-city words; empty when shorter than two letters."""
    letters: list[str] = []
    for raw_word in (name or "").split():
        word = raw_word.strip("()[]{}.,;:'\"-–&/")
        if not word or word.lower() in _CITY_SET:
            continue
        if word[0].isupper():
            letters.append(word[0])
    result = "".join(letters)
    return result if len(result) >= 2 else ""


def similarity(a: str, b: str) -> float:
    """Edit-based similarity in [0, 1] on lowercase strings."""
    left = (a or "").lower().strip()
    right = (b or "").lower().strip()
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def _compact(text: str) -> str:
    return _NON_ALNUM_RE.sub("", text or "").upper()


def _short_form_matches(short: str, long_form: str) -> bool:
    compact = _compact(short)
    if not compact or len(short.strip()) > SHORT_FORM_MAX_LEN:
        return False
    derived = acronym(long_form)
    return bool(derived) and compact == derived.upper()


def _significant_words(name: str) -> list[str]:
    return [word for word in normalize(name).split() if len(word) > 2]


def _words_overlap(source: str, target: str) -> bool:
    words = _significant_words(source)
    if len(words) < 2:
        return False
    target_norm = normalize(target)
    hits = sum(1 for word in words if word in target_norm)
    return hits >= math.ceil(len(words) * SIGNIFICANT_WORD_RATIO)


def _exact(brand: str, focus: str) -> bool:
    brand_norm = normalize(brand)
    return bool(brand_norm) and brand_norm == normalize(focus)


def _substring(brand: str, focus: str) -> bool:
    brand_lower = brand.lower().strip()
    focus_lower = focus.lower().strip()
    if brand_lower and (brand_lower in focus_lower or focus_lower in brand_lower):
        return True

    brand_norm = normalize(brand)
    focus_norm = normalize(focus)
    if brand_norm and focus_norm and (brand_norm in focus_norm or focus_norm in brand_norm):
        return True

    # "Full Name (ABBR)" on either side
    for candidate, other in ((brand, focus), (focus, brand)):
        match = _PAREN_RE.match(candidate.strip())
        if not match:
            continue
        full_name, short_name = match.group(1), match.group(2)
        other_norm = normalize(other)
        if other_norm and other_norm in (normalize(full_name), normalize(short_name)):
            return True
    return False


def _city_stripped(brand: str, focus: str) -> bool:
    brand_core = strip_cities(brand)
    focus_core = strip_cities(focus)
    if not brand_core or not focus_core:
        return False
    if _short_form_matches(focus_core, brand_core):
        return True
    if _short_form_matches(brand_core, focus_core):
        return True
    return similarity(brand_core, focus_core) >= CITY_SIMILARITY_THRESHOLD


def _acronym_or_overlap(brand: str, focus: str) -> bool:
    brand_acr = acronym(brand)
    focus_acr = acronym(focus)
    if brand_acr and brand_acr == focus_acr:
        return True
    if _short_form_matches(focus, brand) or _short_form_matches(brand, focus):
        return True
    return _words_overlap(focus, brand) or _words_overlap(brand, focus)


_CASCADE: tuple[tuple[MatchStrategy, Callable[[str, str], bool]], ...] = (
    (MatchStrategy.EXACT, _exact),
    (MatchStrategy.SUBSTRING, _substring),
    (MatchStrategy.CITY_STRIPPED, _city_stripped),
    (MatchStrategy.ACRONYM, _acronym_or_overlap),
)


def match_brand(brands_mentioned: Sequence[str], focus_name: str) -> MatchResult:
    """Return the 1-based rank of the focus institution, or rank 0 when absent."""
    if not brands_mentioned or not (focus_name or "").strip():
        return MatchResult(rank=0)

    brands = [brand if isinstance(brand, str) else str(brand) for brand in brands_mentioned]

    for strategy, predicate in _CASCADE:
        for index, brand in enumerate(brands):
            if brand.strip() and predicate(brand, focus_name):
                return MatchResult(rank=index + 1, strategy=strategy, matched_name=brand)

    best_index = -1
    best_score = 0.0
    for index, brand in enumerate(brands):
        score = similarity(brand, focus_name)
        if score > best_score:
            best_index, best_score = index, score
    if best_index >= 0 and best_score >= FALLBACK_SIMILARITY_THRESHOLD:
        return MatchResult(
            rank=best_index + 1,
            strategy=MatchStrategy.SIMILARITY,
            matched_name=brands[best_index],
        )

    return MatchResult(rank=0)
