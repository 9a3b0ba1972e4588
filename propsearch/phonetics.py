"""Utilities for query folding, tokenization and phonetic encoding.

Pipeline used by the normalizer, the in-memory index and the suggester:

    1) :func:`fold_text` lowercases the user text, strips Vietnamese tone marks
       and other diacritics with ``unidecode`` (``"Hà Nội"`` -> ``"ha noi"``,
       ``"Đà Nẵng"`` -> ``"da nang"``), drops punctuation and collapses spaces.
    2) :func:`tokenize` splits folded text into tokens using the rules of the
       declared language and removes that language's stop words. Unknown
       languages go through a plain whitespace tokenizer.
    3) :func:`phonetic_codes` emits double metaphone codes per token so that
       misspellings like ``"hanoy"`` still land next to ``"hanoi"``.

Documents are folded with exactly the same functions at index time, so query
and document tokens are always comparable.
"""
from __future__ import annotations

import logging
import re

from metaphone import doublemetaphone
from unidecode import unidecode

logger = logging.getLogger(__name__)

# After folding we keep only ASCII letters/digits/spaces.
_ASCII_ALNUM_SPACE_RE = re.compile(r"[^0-9a-z ]+")
# Characters that make a query "special": anything outside letters, digits,
# whitespace and the separators people type inside names.
_SPECIAL_CHAR_RE = re.compile(r"[^\w\s\-'.,&]", re.UNICODE)

# Folded stop words. Short syllables that double as place-name parts
# ("da", "ha", "hoi", "an") stay out of these lists.
STOP_WORDS: dict[str, frozenset[str]] = {
    "vi": frozenset(
        {
            "va", "cua", "cac", "trong", "voi", "cho", "den", "mot", "la",
            "duoc", "khong", "nay", "nhung", "nhu", "se", "ve", "tai",
            "hoac", "neu", "khi", "theo", "tren", "duoi", "giua", "o", "gan",
        }
    ),
    "en": frozenset(
        {
            "a", "the", "and", "or", "of", "in", "at", "on", "to",
            "for", "with", "near", "by", "from", "is",
        }
    ),
}


def fold_text(text: str | None) -> str:
    """Lowercase, strip diacritics and punctuation, collapse whitespace."""

    if not text:
        return ""
    lowered = text.strip().lower()
    # unidecode maps "đ" -> "d" and removes combining tone marks.
    ascii_text = unidecode(lowered).lower()
    cleaned = _ASCII_ALNUM_SPACE_RE.sub(" ", ascii_text)
    return " ".join(cleaned.split())


def city_key(text: str | None) -> str:
    """Folded city name without spaces, so "Hà Nội", "Ha Noi" and "Hanoi" agree."""

    return fold_text(text).replace(" ", "")


def has_special_characters(text: str | None) -> bool:
    return bool(text) and bool(_SPECIAL_CHAR_RE.search(text))


def tokenize(folded: str, language: str) -> list[str]:
    """Split folded text into search tokens for ``language``.

    Stop-word removal never empties a query: if every token is a stop word the
    raw tokens are returned instead.
    """

    if not folded:
        return []
    tokens = folded.split()
    stop_words = STOP_WORDS.get(language)
    if stop_words is None:
        logger.debug("tokenize fallback tokenizer language=%r tokens=%s", language, tokens)
        return tokens
    kept = [token for token in tokens if token not in stop_words]
    return kept or tokens


def phonetic_codes(token: str) -> set[str]:
    if not token or not token.isalpha():
        return set()
    return {code for code in doublemetaphone(token) if code}


def edit_distance(left: str, right: str, limit: int) -> int:
    """Levenshtein distance, cut short once it exceeds ``limit``."""

    if abs(len(left) - len(right)) > limit:
        return limit + 1
    previous = list(range(len(right) + 1))
    for i, lch in enumerate(left, start=1):
        current = [i]
        row_min = i
        for j, rch in enumerate(right, start=1):
            cost = 0 if lch == rch else 1
            value = min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost)
            current.append(value)
            row_min = min(row_min, value)
        if row_min > limit:
            return limit + 1
        previous = current
    return previous[-1]


def auto_fuzziness(token: str) -> int:
    """Allowed edits for a token, following Elasticsearch ``AUTO`` fuzziness."""

    if len(token) <= 2:
        return 0
    if len(token) <= 5:
        return 1
    return 2
