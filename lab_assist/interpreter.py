"""
NLU result → domain command.

``CommandInterpreter`` maps a backend's raw result to a ``Command``,
combines backend and transcription confidence, and fills missing
entities from the session context. ``LegacyPatternParser`` is the last
resort when the NLU path itself breaks: a handful of fixed regex shapes,
no context.
"""

from __future__ import annotations

import logging
import math
import re

from .types import (
    Command,
    CommandType,
    Entities,
    Intent,
    NLUResult,
    SessionContext,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)

CONFIRMATION_THRESHOLD = 0.8
CONTEXT_BONUS = 0.1

INTENT_TO_COMMAND: dict[Intent, CommandType] = {
    Intent.RECORD: CommandType.RECORD,
    Intent.UPDATE: CommandType.UPDATE,
    Intent.MOVE: CommandType.MOVE,
    Intent.QUERY: CommandType.QUERY,
    Intent.SYSTEM: CommandType.SYSTEM,
}


def _clamp(value: float) -> float:
    if not math.isfinite(value):
        return 0.0
    return min(max(value, 0.0), 1.0)


class CommandInterpreter:
    """
    Turns backend output into commands and applies session context.

    Example:
        >>> interpreter = CommandInterpreter()
        >>> command = interpreter.interpret(nlu_result, transcription, context)
        >>> command.needs_confirmation
        False
    """

    def __init__(self, confirmation_threshold: float = CONFIRMATION_THRESHOLD):
        self.confirmation_threshold = confirmation_threshold

    def to_command(self, result: NLUResult, transcription: TranscriptionResult) -> Command:
        """Map intent to command type and combine the two confidences."""
        command_type = INTENT_TO_COMMAND.get(result.intent, CommandType.SYSTEM)
        confidence = _clamp(result.confidence * transcription.confidence)
        return Command(
            type=command_type,
            confidence=confidence,
            entities=result.entities.model_copy(),
            needs_confirmation=confidence < self.confirmation_threshold,
            context_used=False,
            raw_text=transcription.text,
        )

    def apply_context(self, command: Command, context: SessionContext | None) -> Command:
        """
        Fill a missing rat from the session context.

        A context-filled update skips confirmation; a context-filled move
        keeps whatever the confidence gate decided. Either way the
        confidence gets a small bonus.
        """
        if context is None or context.last_rat is None:
            return command

        if command.entities.rat is None:
            if command.type == CommandType.UPDATE:
                command.entities.rat = context.last_rat
                command.context_used = True
                command.needs_confirmation = False
            elif command.type == CommandType.MOVE:
                command.entities.rat = context.last_rat
                command.context_used = True

        if command.context_used:
            command.confidence = _clamp(command.confidence + CONTEXT_BONUS)
        return command

    def interpret(
        self,
        result: NLUResult,
        transcription: TranscriptionResult,
        context: SessionContext | None = None,
    ) -> Command:
        return self.apply_context(self.to_command(result, transcription), context)


# =============================================================================
# Legacy pattern parser
# =============================================================================

_NUM = r"(\d+(?:\.\d+)?)"
_UNIT = r"\s*(?:grams?|g)?"

# (name, pattern, fixed confidence). First match wins.
LEGACY_PATTERNS: list[tuple[str, re.Pattern[str], float]] = [
    ("record", re.compile(rf"(?:rat|mouse)\s+(\d+)\s+cage\s+(\d+)\s+weight\s+{_NUM}{_UNIT}"), 0.90),
    ("update", re.compile(rf"(?:change|update|set)\s+weight\s+to\s+{_NUM}{_UNIT}"), 0.85),
    ("move", re.compile(r"move\s+(?:rat|mouse)\s+(\d+)\s+to\s+cage\s+(\d+)"), 0.90),
    ("query", re.compile(rf"(?:what|show|find)\s+(?:rats?|mice)\s+(?:are\s+)?around\s+{_NUM}{_UNIT}"), 0.80),
    ("stop", re.compile(r"(?:stop|pause|end)\s+(?:listening|recording|session)"), 0.95),
    ("start", re.compile(r"(?:start|begin|resume)\s+(?:listening|recording|session)"), 0.95),
    ("lastreading", re.compile(r"(?:repeat|show)\s+last\s+reading"), 0.80),
    ("currentstatus", re.compile(r"(?:what|show)\s+(?:is\s+)?(?:current|status)"), 0.80),
]

UNMATCHED_PENALTY = 0.5


class LegacyPatternParser:
    """Regex-only parser for a fixed set of command shapes."""

    def __init__(self, confirmation_threshold: float = CONFIRMATION_THRESHOLD):
        self.confirmation_threshold = confirmation_threshold

    def parse(self, transcription: TranscriptionResult) -> Command:
        text = transcription.text.lower().strip()
        for name, pattern, base_confidence in LEGACY_PATTERNS:
            match = pattern.search(text)
            if match:
                return self._build(name, match, base_confidence, transcription)

        logger.debug(f"No legacy pattern matched: {text!r}")
        return Command(
            type=CommandType.SYSTEM,
            confidence=_clamp(transcription.confidence * UNMATCHED_PENALTY),
            entities=Entities(),
            needs_confirmation=True,
            context_used=False,
            raw_text=transcription.text,
        )

    def _build(
        self,
        name: str,
        match: re.Match[str],
        base_confidence: float,
        transcription: TranscriptionResult,
    ) -> Command:
        groups = match.groups()
        if name == "record":
            command_type = CommandType.RECORD
            entities = Entities(rat=groups[0], cage=groups[1], weight=groups[2])
        elif name == "update":
            command_type = CommandType.UPDATE
            entities = Entities(weight=groups[0])
        elif name == "move":
            command_type = CommandType.MOVE
            entities = Entities(rat=groups[0], cage=groups[1])
        elif name == "query":
            command_type = CommandType.QUERY
            entities = Entities(weight=groups[0])
        elif name in ("stop", "start"):
            command_type = CommandType.SYSTEM
            entities = Entities(action=name)
        else:
            command_type = CommandType.QUERY
            entities = Entities(action=name)

        confidence = _clamp(base_confidence * transcription.confidence)
        needs_confirmation = confidence < self.confirmation_threshold
        # No context here, so an update never knows its rat
        if command_type == CommandType.UPDATE:
            needs_confirmation = True

        return Command(
            type=command_type,
            confidence=confidence,
            entities=entities,
            needs_confirmation=needs_confirmation,
            context_used=False,
            raw_text=transcription.text,
        )


__all__ = [
    "CONFIRMATION_THRESHOLD",
    "CommandInterpreter",
    "LegacyPatternParser",
]
