"""
Deterministic keyword/pattern intent classifier.

Always constructible and always available: no model, no network. This is
the guaranteed fallback every other backend degrades to.
"""

from __future__ import annotations

import logging
import re
import time

from ..numbers import (
    Number,
    extract_numbers,
    normalize_text,
    number_at,
    number_ending_at,
    tokenize,
)
from ..types import BackendKind, Entities, Intent, NLUResult
from .base import ModelInfo

logger = logging.getLogger(__name__)

# Keyword table. Order matters: on equal scores the earlier intent wins,
# so specific verbs come before the generic record intent.
INTENT_KEYWORDS: dict[Intent, frozenset[str]] = {
    Intent.UPDATE: frozenset(
        {"change", "update", "set", "modify", "adjust", "correct", "fix", "to"}
    ),
    Intent.MOVE: frozenset(
        {"move", "moved", "transfer", "relocate", "put", "to", "into"}
    ),
    Intent.QUERY: frozenset(
        {
            "show", "find", "what", "which", "around", "near", "list",
            "rats", "mice", "animals", "repeat", "last", "status", "current",
        }
    ),
    Intent.SYSTEM: frozenset(
        {"stop", "start", "pause", "resume", "begin", "listen", "listening"}
    ),
    Intent.RECORD: frozenset(
        {
            "weight", "weigh", "weighs", "weighed", "grams", "gram",
            "record", "measure", "measured", "log",
        }
    ),
}

RAT_ANCHORS = frozenset({"rat", "mouse", "animal"})
CAGE_ANCHORS = frozenset({"cage"})
WEIGHT_ANCHORS = frozenset({"weight", "weigh", "weighs", "weighed", "weighing"})
UNIT_TOKENS = frozenset({"g", "gram", "grams"})
ALL_ANCHORS = RAT_ANCHORS | CAGE_ANCHORS | WEIGHT_ANCHORS | {"group"}

# Tokens skipped between an anchor and its number ("rat number 5")
FILLER_TOKENS = frozenset({"number", "no", "num", "is", "of", "at", "the", "to"})

# How far past an anchor to look for its number
ANCHOR_WINDOW = 3

# Weight-like numbers are larger than ID-like ones
WEIGHT_MAGNITUDE_FLOOR = 50

_WEIGHT_PATTERNS = [
    re.compile(r"(\d+(?:\.\d+)?)\s*(?:grams?|g)\b"),
    re.compile(r"weight\s+(?:to\s+)?(\d+(?:\.\d+)?)"),
    re.compile(r"\bto\s+(\d+(?:\.\d+)?)(?![\d.])(?!\s*(?:cage|rat|mouse|animal))"),
]


def score_intents(tokens: list[str]) -> tuple[Intent, int]:
    """
    Score every intent by keyword hits and pick the strict maximum.

    Ties keep the intent that appears first in ``INTENT_KEYWORDS``;
    no hits at all gives ``Intent.UNKNOWN``.
    """
    best_intent = Intent.UNKNOWN
    best_score = 0
    for intent, keywords in INTENT_KEYWORDS.items():
        score = sum(1 for token in tokens if token in keywords)
        if score > best_score:
            best_intent = intent
            best_score = score
    return best_intent, best_score


def _anchored_number(tokens: list[str], anchors: frozenset[str]) -> Number | None:
    """Nearest number following the first anchor token, within a short window."""
    for idx, token in enumerate(tokens):
        if token not in anchors:
            continue
        pos = idx + 1
        seen = 0
        while pos < len(tokens) and seen < ANCHOR_WINDOW:
            candidate = tokens[pos]
            if candidate in ALL_ANCHORS:
                break
            value, _ = number_at(tokens, pos)
            if value is not None:
                return value
            if candidate not in FILLER_TOKENS:
                seen += 1
            pos += 1
        return None
    return None


def _unit_weight(normalized: str, tokens: list[str]) -> Number | None:
    for pattern in _WEIGHT_PATTERNS:
        match = pattern.search(normalized)
        if match:
            return float(match.group(1))
    for idx, token in enumerate(tokens):
        if token in UNIT_TOKENS and idx > 0:
            value = number_ending_at(tokens, idx - 1)
            if value is not None:
                return value
    return None


def extract_entities(normalized: str, tokens: list[str]) -> Entities:
    """
    Assign extracted numbers to entity slots.

    Anchor-relative matches ("rat 5", "cage three") are tried first; rat
    and cage fall back to positional numbers, weight falls back to the
    largest number above ``WEIGHT_MAGNITUDE_FLOOR``.
    """
    numbers = extract_numbers(normalized, tokens)
    rat: Number | None = None
    cage: Number | None = None
    weight: Number | None = None
    action: str | None = None
    group: str | None = None

    if any(t in RAT_ANCHORS for t in tokens):
        rat = _anchored_number(tokens, RAT_ANCHORS)
        if rat is None and numbers:
            rat = numbers[0]

    if any(t in CAGE_ANCHORS for t in tokens):
        cage = _anchored_number(tokens, CAGE_ANCHORS)
        if cage is None and len(numbers) > 1:
            cage = numbers[1]

    if "weight" in normalized or "gram" in normalized or "weigh" in normalized:
        weight = _unit_weight(normalized, tokens)
        if weight is None:
            weight = _anchored_number(tokens, WEIGHT_ANCHORS)
        if weight is None:
            heavy = [n for n in numbers if n > WEIGHT_MAGNITUDE_FLOOR]
            if heavy:
                weight = max(heavy)

    if "stop" in normalized or "pause" in normalized:
        action = "stop"
    elif "start" in normalized or "begin" in normalized or "resume" in normalized:
        action = "start"
    elif "last reading" in normalized:
        action = "lastreading"
    elif "status" in normalized or "current" in normalized:
        action = "currentstatus"

    if "group" in tokens:
        idx = tokens.index("group")
        if idx + 1 < len(tokens):
            group = tokens[idx + 1]

    return Entities(rat=rat, cage=cage, weight=weight, action=action, group=group)


def calculate_confidence(
    intent: Intent, entities: Entities, keyword_score: int, word_count: int
) -> float:
    """Pattern-strength confidence, clamped to [0.1, 1.0]."""
    confidence = 0.5

    if intent != Intent.UNKNOWN:
        confidence += 0.2

    confidence += min(keyword_score * 0.1, 0.3)
    confidence += entities.filled_count() * 0.1

    # Very short or rambling utterances are less trustworthy
    if word_count < 3 or word_count > 15:
        confidence -= 0.1

    return min(max(confidence, 0.1), 1.0)


class ClassifierBackend:
    """Keyword-scoring NLU backend with no external dependencies."""

    kind = BackendKind.CLASSIFICATION

    def classify(self, text: str) -> NLUResult:
        """Classify one utterance. Never raises for string input."""
        start = time.perf_counter()
        normalized = normalize_text(text)
        tokens = tokenize(normalized)

        intent, score = score_intents(tokens)
        entities = extract_entities(normalized, tokens)
        confidence = calculate_confidence(intent, entities, score, len(tokens))

        return NLUResult(
            intent=intent,
            entities=entities,
            confidence=confidence,
            processing_time_ms=(time.perf_counter() - start) * 1000,
        )

    async def parse(self, text: str) -> NLUResult:
        return self.classify(text)

    async def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            available=True,
            model_name="classification",
            approach="keyword-based",
            size="<1MB",
        )


__all__ = [
    "ClassifierBackend",
    "INTENT_KEYWORDS",
    "calculate_confidence",
    "extract_entities",
    "score_intents",
]
