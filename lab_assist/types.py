"""
Shared type definitions for Lab Assist.

Covers the utterance → command data model (transcriptions, NLU results,
commands and their results), session context, storage rows and the
error taxonomy used across the pipeline.
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator


class BackendKind(str, Enum):
    """Closed set of NLU backends the selector can activate."""

    CLASSIFICATION = "classification"
    OLLAMA_TINY = "ollama-tiny"
    OLLAMA_LIGHT = "ollama-light"
    OLLAMA_FULL = "ollama-full"
    LLAMACPP = "llamacpp"


class Intent(str, Enum):
    """Intent labels produced by NLU backends."""

    RECORD = "record"
    UPDATE = "update"
    MOVE = "move"
    QUERY = "query"
    SYSTEM = "system"
    UNKNOWN = "unknown"


class CommandType(str, Enum):
    """Executable command categories."""

    RECORD = "record"
    UPDATE = "update"
    MOVE = "move"
    QUERY = "query"
    SYSTEM = "system"


@dataclass(frozen=True)
class TranscriptionResult:
    """Output of the speech collaborator for one utterance."""

    text: str
    confidence: float
    processing_time_ms: int = 0


class Entities(BaseModel):
    """
    Typed slots extracted from an utterance.

    Every field is optional: ``None`` means "not provided", never zero.
    Numeric slots accept numbers, numeric strings and spelled-out number
    words so model output like ``{"rat": "five"}`` still validates.
    """

    rat: int | None = None
    cage: int | None = None
    weight: float | None = None
    action: str | None = None
    group: str | None = None

    @field_validator("rat", "cage", mode="before")
    @classmethod
    def _coerce_id(cls, value: Any) -> int | None:
        from .numbers import parse_number

        number = parse_number(value)
        if number is None:
            return None
        # Fractional IDs name no animal or cage
        if isinstance(number, float) and not number.is_integer():
            return None
        return int(number)

    @field_validator("weight", mode="before")
    @classmethod
    def _coerce_weight(cls, value: Any) -> float | None:
        from .numbers import parse_number

        number = parse_number(value)
        if number is None:
            return None
        try:
            weight = float(number)
        except OverflowError:
            return None
        return weight if math.isfinite(weight) else None

    @field_validator("action", "group", mode="before")
    @classmethod
    def _coerce_label(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip().lower()
        return text or None

    def filled_count(self) -> int:
        """Number of slots that carry a value."""
        return sum(1 for v in self.model_dump().values() if v is not None)

    def to_dict(self) -> dict[str, Any]:
        """Non-empty slots only."""
        return self.model_dump(exclude_none=True)


class NLUResult(BaseModel):
    """Raw backend output before it becomes a domain ``Command``."""

    intent: Intent = Intent.UNKNOWN
    entities: Entities = Field(default_factory=Entities)
    confidence: float = 0.0
    processing_time_ms: float | None = None
    reasoning: str | None = None

    @field_validator("intent", mode="before")
    @classmethod
    def _coerce_intent(cls, value: Any) -> Intent:
        if isinstance(value, Intent):
            return value
        try:
            return Intent(str(value).strip().lower())
        except ValueError:
            return Intent.UNKNOWN

    @field_validator("entities", mode="before")
    @classmethod
    def _coerce_entities(cls, value: Any) -> Any:
        return value if value is not None else {}

    @field_validator("confidence", mode="before")
    @classmethod
    def _clamp_confidence(cls, value: Any) -> float:
        try:
            number = float(value)
        except (TypeError, ValueError, OverflowError):
            return 0.0
        if not math.isfinite(number):
            return 0.0
        return min(max(number, 0.0), 1.0)


@dataclass
class Command:
    """
    Domain-level command produced by the interpreter.

    ``confidence`` is the combined confidence (backend × transcription,
    plus the context bonus); a command with ``needs_confirmation`` set is
    never executed without explicit affirmation.
    """

    type: CommandType
    confidence: float
    entities: Entities = field(default_factory=Entities)
    needs_confirmation: bool = False
    context_used: bool = False
    raw_text: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Serialisable form written to the command audit trail."""
        return {
            "type": self.type.value,
            "confidence": self.confidence,
            "needsConfirmation": self.needs_confirmation,
            "entities": self.entities.to_dict(),
            "contextUsed": self.context_used,
            "rawText": self.raw_text,
        }


@dataclass
class CommandResult:
    """Terminal, user-facing outcome of processing a command."""

    success: bool
    message: str
    data: Any = None
    needs_confirmation: bool | None = None
    confirmation_prompt: str | None = None


@dataclass
class SessionContext:
    """Last-mentioned values for one session, used for context substitution."""

    session_id: int
    last_rat: int | None = None
    last_cage: int | None = None
    last_weight: float | None = None
    updated_at: datetime | None = None

    def merge(self, **updates: Any) -> None:
        """Apply non-``None`` updates in place."""
        for key, value in updates.items():
            if value is not None:
                setattr(self, key, value)
        self.updated_at = datetime.now()


# =============================================================================
# Storage rows
# =============================================================================


@dataclass
class Animal:
    id: int
    number: int
    current_cage: int | None = None
    current_weight: float | None = None
    group_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


@dataclass
class Cage:
    id: int
    number: int
    group_name: str | None = None
    capacity: int = 1
    created_at: str | None = None


@dataclass
class Reading:
    id: int
    animal_id: int
    weight: float
    cage_id: int
    session_id: int
    timestamp: str | None = None
    notes: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class Session:
    id: int
    start_time: str | None = None
    end_time: str | None = None
    is_active: bool = True


@dataclass
class CommandLogEntry:
    id: int
    session_id: int
    raw_text: str
    parsed_command: str | None
    confidence: float | None
    executed: bool
    timestamp: str | None = None


# =============================================================================
# Errors
# =============================================================================


class LabAssistError(Exception):
    """Base class for Lab Assist errors."""

    code = "LAB_ASSIST_ERROR"

    def __init__(self, message: str, details: Any = None):
        self.details = details
        super().__init__(message)


class TranscriptionError(LabAssistError):
    """Speech collaborator failed to produce a transcription."""

    code = "SPEECH_PROCESSING_ERROR"


class BackendUnavailableError(LabAssistError):
    """An NLU backend could not be constructed or its model is missing."""

    code = "BACKEND_UNAVAILABLE"

    def __init__(self, backend: BackendKind | str, reason: str):
        self.backend = backend
        self.reason = reason
        name = backend.value if isinstance(backend, BackendKind) else backend
        super().__init__(f"Backend {name} unavailable: {reason}")


class BackendDisabledError(BackendUnavailableError):
    """Backend is switched off by policy rather than missing."""

    code = "BACKEND_DISABLED"


class BackendParseError(LabAssistError):
    """A backend call failed or timed out while parsing an utterance."""

    code = "COMMAND_PARSING_ERROR"


class StorageError(LabAssistError):
    """Database operation failed."""

    code = "DATABASE_ERROR"


class ValidationError(LabAssistError):
    """A command is missing a required entity."""

    code = "VALIDATION_ERROR"


class ConfigError(LabAssistError):
    """Configuration file or override is invalid."""

    code = "CONFIG_ERROR"
