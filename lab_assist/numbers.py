"""
Number and entity-token helpers shared by every text-based NLU path.

Resolves literal digits, spelled-out number words and a curated set of
lab-specific compounds ("two fifty", "two-eighty", "two hundred eighty").
Everything here is stateless and deterministic for identical input.
"""

from __future__ import annotations

import math
import re
from typing import Any

Number = int | float

# Single number words
WORD_TO_NUMBER: dict[str, int] = {
    "zero": 0, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5,
    "six": 6, "seven": 7, "eight": 8, "nine": 9, "ten": 10,
    "eleven": 11, "twelve": 12, "thirteen": 13, "fourteen": 14, "fifteen": 15,
    "sixteen": 16, "seventeen": 17, "eighteen": 18, "nineteen": 19, "twenty": 20,
    "thirty": 30, "forty": 40, "fifty": 50, "sixty": 60, "seventy": 70,
    "eighty": 80, "ninety": 90, "hundred": 100, "thousand": 1000,
}

# Curated compounds that come up when dictating weights and IDs
COMPOUND_NUMBERS: dict[str, int] = {
    "twenty-five": 25, "twenty five": 25,
    "seventy-five": 75, "seventy five": 75,
    "one-fifty": 150, "one fifty": 150, "one hundred fifty": 150,
    "two hundred": 200,
    "two-fifty": 250, "two fifty": 250, "two hundred fifty": 250,
    "two-eighty": 280, "two eighty": 280, "two hundred eighty": 280,
    "three hundred": 300,
    "three-fifty": 350, "three fifty": 350, "three hundred fifty": 350,
}

LEXICON: dict[str, int] = {**WORD_TO_NUMBER, **COMPOUND_NUMBERS}

# Longest compound in the lexicon, in words
MAX_COMPOUND_WIDTH = max(len(key.split()) for key in LEXICON)

_DIGITS = re.compile(r"\d+(?:\.\d+)?")
_NUMERIC_TOKEN = re.compile(r"(\d+(?:\.\d+)?)(?:g|grams?)?")


def normalize_text(text: str) -> str:
    """
    Lowercase and strip punctuation that speech engines like to add.

    Decimal points survive only between digits and hyphens only between
    letters, so "Rat 5, cage 3." and "two-eighty" both tokenise cleanly.
    """
    lowered = text.lower().strip()
    lowered = re.sub(r"[^a-z0-9.\-\s]", " ", lowered)
    lowered = re.sub(r"(?<!\d)\.|\.(?!\d)", " ", lowered)
    lowered = re.sub(r"(?<![a-z])-|-(?![a-z])", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def tokenize(normalized: str) -> list[str]:
    """Whitespace-split an already normalised string."""
    return normalized.split()


def _to_number(literal: str) -> Number:
    if "." not in literal:
        try:
            return int(literal)
        except ValueError:
            # past the interpreter's int digit limit
            return float(literal)
    return float(literal)


def parse_number(value: Any) -> Number | None:
    """
    Coerce a model- or user-provided value to a number.

    Accepts ints, floats, numeric strings ("280", "280g") and lexicon
    words ("five", "two-eighty"). Anything else yields ``None``.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
            return None
        return value
    if isinstance(value, str):
        text = value.strip().lower()
        if not text:
            return None
        if text in LEXICON:
            return LEXICON[text]
        spaced = text.replace("-", " ")
        if spaced in LEXICON:
            return LEXICON[spaced]
        match = _NUMERIC_TOKEN.fullmatch(text)
        if match:
            number = _to_number(match.group(1))
            if isinstance(number, float) and not math.isfinite(number):
                return None
            return number
    return None


def number_at(tokens: list[str], index: int) -> tuple[Number | None, int]:
    """
    Resolve the longest number phrase starting at ``tokens[index]``.

    Returns:
        (value, width) where width is the number of tokens consumed,
        or (None, 0) when the token does not start a number.
    """
    if index < 0 or index >= len(tokens):
        return None, 0

    for width in range(min(MAX_COMPOUND_WIDTH, len(tokens) - index), 1, -1):
        phrase = " ".join(tokens[index : index + width])
        if phrase in COMPOUND_NUMBERS:
            return COMPOUND_NUMBERS[phrase], width

    value = parse_number(tokens[index])
    if value is None:
        return None, 0
    return value, 1


def number_ending_at(tokens: list[str], index: int) -> Number | None:
    """Resolve the longest number phrase whose last token is ``tokens[index]``."""
    if index < 0 or index >= len(tokens):
        return None

    for width in range(min(MAX_COMPOUND_WIDTH, index + 1), 1, -1):
        phrase = " ".join(tokens[index - width + 1 : index + 1])
        if phrase in COMPOUND_NUMBERS:
            return COMPOUND_NUMBERS[phrase]
    return parse_number(tokens[index])


def extract_numbers(text: str, tokens: list[str]) -> list[Number]:
    """
    Collect every number mentioned in ``text``.

    Scan order is digits, then single words, then adjacent-word compounds
    (pairs, then triples). The result is deduplicated preserving the
    first-seen order.
    """
    found: list[Number] = [_to_number(m) for m in _DIGITS.findall(text)]

    for token in tokens:
        if token in LEXICON:
            found.append(LEXICON[token])

    for width in range(2, MAX_COMPOUND_WIDTH + 1):
        for i in range(len(tokens) - width + 1):
            phrase = " ".join(tokens[i : i + width])
            if phrase in COMPOUND_NUMBERS:
                found.append(COMPOUND_NUMBERS[phrase])

    unique: list[Number] = []
    for number in found:
        if number not in unique:
            unique.append(number)
    return unique


__all__ = [
    "COMPOUND_NUMBERS",
    "LEXICON",
    "WORD_TO_NUMBER",
    "extract_numbers",
    "normalize_text",
    "number_at",
    "number_ending_at",
    "parse_number",
    "tokenize",
]
