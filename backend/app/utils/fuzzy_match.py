"""Fuzzy item-name matching for inventory deduplication.

Used by the sourcing phase to decide whether a generated material or tool name
refers to something the user already owns. Names are normalized first, then
scored by exact match, substring containment, or a blend of token overlap and
bigram Dice similarity.
"""

from __future__ import annotations

import re

DEFAULT_THRESHOLD = 0.75

# Order matters: "1/2" must be rewritten before "/" is treated as a separator
_FRACTIONS: tuple[tuple[str, str], ...] = (
    ("1/2", "0.5"),
    ("1/4", "0.25"),
    ("3/4", "0.75"),
    ("3/8", "0.375"),
    ("1/8", "0.125"),
)

_FILLER_RE = re.compile(r"\b(set of|pack of|box of|pair of|piece|pcs?|ea|each)\b")
_SEPARATOR_RE = re.compile(r"[-_/\\]+")
_WHITESPACE_RE = re.compile(r"\s+")

# Plural stripping only touches words with a 4+ character stem ("bus" stays "bus")
_PLURAL_IES_RE = re.compile(r"\b(\w{4,})ies\b")
_PLURAL_ES_RE = re.compile(r"\b(\w{4,})es\b")
_PLURAL_S_RE = re.compile(r"\b(\w{4,})s\b")


def _collapse(text: str) -> str:
    return _WHITESPACE_RE.sub(" ", text).strip()


def normalize_item_name(name: str) -> str:
    """Normalize an item name for comparison.

    "  Set of Screwdrivers  " -> "screwdriver"
    "10-mm drill bit"         -> "10mm drill bit"
    "1/2 inch socket"         -> "0.5 inch socket"
    """
    normalized = name.lower().strip()

    for fraction, decimal in _FRACTIONS:
        normalized = normalized.replace(fraction, decimal)

    normalized = _FILLER_RE.sub("", normalized)
    normalized = _SEPARATOR_RE.sub("", normalized)
    normalized = _collapse(normalized)

    normalized = _PLURAL_IES_RE.sub(r"\1y", normalized)
    normalized = _PLURAL_ES_RE.sub(r"\1", normalized)
    normalized = _PLURAL_S_RE.sub(r"\1", normalized)

    return _collapse(normalized)


def _bigrams(text: str) -> set[str]:
    return {text[i : i + 2] for i in range(len(text) - 1)}


def dice_similarity(a: str, b: str) -> float:
    """Bigram Dice coefficient in [0, 1]."""
    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0
    bigrams_a = _bigrams(a)
    bigrams_b = _bigrams(b)
    shared = len(bigrams_a & bigrams_b)
    return (2 * shared) / (len(bigrams_a) + len(bigrams_b))


def _tokens_match(ta: str, tb: str) -> bool:
    if ta == tb:
        return True
    # Longer tokens may match on prefix ("screw" / "screwdriver")
    return (len(ta) > 3 and tb.startswith(ta)) or (len(tb) > 3 and ta.startswith(tb))


def token_overlap(a: str, b: str) -> float:
    """Fraction of whitespace tokens (longer than one character) shared by a and b."""
    tokens_a = [t for t in a.split() if len(t) > 1]
    tokens_b = [t for t in b.split() if len(t) > 1]
    if not tokens_a or not tokens_b:
        return 0.0

    matches = sum(1 for ta in tokens_a if any(_tokens_match(ta, tb) for tb in tokens_b))
    return matches / max(len(tokens_a), len(tokens_b))


def fuzzy_match(a: str, b: str) -> float:
    """Similarity score in [0, 1] between two item names."""
    norm_a = normalize_item_name(a)
    norm_b = normalize_item_name(b)

    if norm_a == norm_b:
        return 1.0

    if norm_a in norm_b or norm_b in norm_a:
        # "drill" vs "drill press" scores ~0.67, below the default threshold
        shorter = min(len(norm_a), len(norm_b))
        longer = max(len(norm_a), len(norm_b))
        return 0.4 + 0.6 * (shorter / longer)

    return 0.6 * token_overlap(norm_a, norm_b) + 0.4 * dice_similarity(norm_a, norm_b)


def is_same_item(a: str, b: str, threshold: float = DEFAULT_THRESHOLD) -> bool:
    """True when two item names most likely refer to the same thing."""
    return fuzzy_match(a, b) >= threshold
