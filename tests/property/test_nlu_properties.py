"""
Property-based tests for the NLU pipeline.

Covers classifier totality and determinism, confidence bounds, the
confirmation gate and context substitution.
"""

import json
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from lab_assist.backends.classifier import ClassifierBackend
from lab_assist.backends.model_backend import OllamaBackend
from lab_assist.interpreter import CONFIRMATION_THRESHOLD, CommandInterpreter
from lab_assist.numbers import extract_numbers, normalize_text, tokenize
from lab_assist.types import (
    BackendKind,
    CommandType,
    Entities,
    Intent,
    NLUResult,
    SessionContext,
    TranscriptionResult,
)

pytestmark = pytest.mark.hypothesis

classifier = ClassifierBackend()
interpreter = CommandInterpreter()
model_backend = OllamaBackend(BackendKind.OLLAMA_TINY, MagicMock())

unit_interval = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
any_float = st.floats(allow_nan=True, allow_infinity=True)

vocabulary = st.sampled_from(
    [
        "rat", "cage", "weight", "grams", "move", "to", "change", "show",
        "around", "stop", "start", "number", "five", "two", "hundred",
        "eighty", "fifty", "5", "3", "280", "12", "the", "please",
    ]
)
utterances = st.lists(vocabulary, min_size=0, max_size=20).map(" ".join)


class TestClassifierProperties:
    """Property-based tests for the keyword classifier."""

    @given(st.text(max_size=300))
    @settings(max_examples=200)
    def test_never_raises(self, text: str):
        """Any string classifies to a known intent."""
        result = classifier.classify(text)

        assert isinstance(result.intent, Intent)

    @given(st.text(max_size=300))
    @settings(max_examples=200)
    def test_confidence_bounds(self, text: str):
        """Classifier confidence stays in [0.1, 1.0]."""
        result = classifier.classify(text)

        assert 0.1 <= result.confidence <= 1.0

    @given(utterances)
    @settings(max_examples=200)
    def test_deterministic(self, text: str):
        """Identical input gives identical intent and entities."""
        first = classifier.classify(text)
        second = classifier.classify(text)

        assert first.intent == second.intent
        assert first.entities == second.entities
        assert first.confidence == second.confidence

    @given(st.integers(min_value=1, max_value=999), st.integers(min_value=1, max_value=999))
    @settings(max_examples=100)
    def test_anchored_digits_are_extracted(self, rat: int, cage: int):
        """'rat N cage M' always yields those numbers."""
        result = classifier.classify(f"rat {rat} cage {cage}")

        assert result.entities.rat == rat
        assert result.entities.cage == cage

    @given(st.integers(min_value=51, max_value=2000))
    @settings(max_examples=100)
    def test_weight_with_unit(self, weight: int):
        """A number followed by grams is the weight."""
        result = classifier.classify(f"rat 5 cage 3 weight {weight} grams")

        assert result.intent == Intent.RECORD
        assert result.entities.weight == float(weight)


class TestNumberProperties:
    """Property-based tests for number extraction."""

    @given(utterances)
    @settings(max_examples=200)
    def test_extract_numbers_deterministic_and_unique(self, text: str):
        """Extraction is repeatable and free of duplicates."""
        normalized = normalize_text(text)
        tokens = tokenize(normalized)

        first = extract_numbers(normalized, tokens)
        second = extract_numbers(normalized, tokens)

        assert first == second
        assert len(first) == len(set(first))

    @given(st.text(max_size=200))
    @settings(max_examples=200)
    def test_normalize_is_idempotent(self, text: str):
        """Normalising twice changes nothing."""
        once = normalize_text(text)

        assert normalize_text(once) == once


class TestInterpreterProperties:
    """Property-based tests for confidence combination and gating."""

    @given(unit_interval, unit_interval)
    @settings(max_examples=200)
    def test_confidence_bounds(self, nlu_confidence: float, speech_confidence: float):
        """Command confidence stays in [0, 1] and never exceeds either input."""
        command = interpreter.to_command(
            NLUResult(intent=Intent.RECORD, confidence=nlu_confidence),
            TranscriptionResult("rat 5", speech_confidence),
        )

        assert 0.0 <= command.confidence <= 1.0
        assert command.confidence <= nlu_confidence + 1e-9
        assert command.confidence <= speech_confidence + 1e-9

    @given(unit_interval, unit_interval)
    @settings(max_examples=200)
    def test_confirmation_gate(self, nlu_confidence: float, speech_confidence: float):
        """needs_confirmation is exactly 'confidence below threshold'."""
        command = interpreter.to_command(
            NLUResult(intent=Intent.MOVE, confidence=nlu_confidence),
            TranscriptionResult("move rat 7 to cage 12", speech_confidence),
        )

        assert command.needs_confirmation == (command.confidence < CONFIRMATION_THRESHOLD)

    @given(unit_interval, unit_interval, st.integers(min_value=1, max_value=500))
    @settings(max_examples=200)
    def test_context_update_never_confirms(
        self, nlu_confidence: float, speech_confidence: float, last_rat: int
    ):
        """A context-filled update always skips confirmation and stays in bounds."""
        command = interpreter.interpret(
            NLUResult(intent=Intent.UPDATE, entities=Entities(weight=300), confidence=nlu_confidence),
            TranscriptionResult("change weight to 300 grams", speech_confidence),
            SessionContext(session_id=1, last_rat=last_rat),
        )

        assert command.type == CommandType.UPDATE
        assert command.entities.rat == last_rat
        assert command.context_used is True
        assert command.needs_confirmation is False
        assert command.confidence <= 1.0

    @given(unit_interval, st.integers(min_value=1, max_value=500))
    @settings(max_examples=100)
    def test_explicit_rat_is_never_replaced(self, confidence: float, rat: int):
        """Context never overrides an entity the speaker gave."""
        command = interpreter.interpret(
            NLUResult(intent=Intent.MOVE, entities=Entities(rat=rat, cage=1), confidence=confidence),
            TranscriptionResult("move rat to cage 1", 1.0),
            SessionContext(session_id=1, last_rat=42),
        )

        assert command.entities.rat == rat
        assert command.context_used is False

    @given(any_float, any_float)
    @settings(max_examples=200)
    def test_confidence_bounds_for_any_float(self, nlu_confidence: float, speech_confidence: float):
        """NaN, infinities and out-of-range values still give a bounded, gated command."""
        command = interpreter.to_command(
            NLUResult(intent=Intent.RECORD, confidence=nlu_confidence),
            TranscriptionResult("rat 5", speech_confidence),
        )

        assert 0.0 <= command.confidence <= 1.0
        assert command.needs_confirmation == (command.confidence < CONFIRMATION_THRESHOLD)


class TestModelOutputProperties:
    """Property-based tests for model JSON handling."""

    @given(any_float)
    @settings(max_examples=200)
    def test_model_confidence_is_bounded(self, confidence: float):
        """Whatever confidence the model emits, the parse stays in [0, 1]."""
        raw = json.dumps(
            {"intent": "record", "entities": {"rat": 5, "cage": 3}, "confidence": confidence}
        )

        result = model_backend.parse_response(raw, "rat 5 cage 3")

        assert 0.0 <= result.confidence <= 1.0
