"""
Lab Assist: voice-driven lab data entry.

Turns short spoken commands ("rat 5 cage 3 weight 280 grams") into
structured records, with:
- An adaptive NLU layer that picks between a keyword classifier and
  local Ollama models, failing over at runtime
- Session context for follow-ups ("change weight to 300 grams")
- A confidence gate that asks before executing uncertain commands
"""

__version__ = "0.1.0"

# NLU backends
from .backends import (
    BACKEND_CATALOG,
    ClassifierBackend,
    LlamaCppBackend,
    ModelInfo,
    NLUBackend,
    OllamaBackend,
    OllamaClient,
)

# Configuration
from .config import AIConfig, AppConfig, DatabaseConfig, LoggingConfig, load_config

# Decision log
from .decision_log import DecisionLogConfig, DecisionLogger

# Execution and storage
from .executor import CommandExecutor, confirmation_prompt
from .storage import LabStore

# Interpretation
from .interpreter import CommandInterpreter, LegacyPatternParser

# Selection and monitoring
from .performance import PerformanceRecord, PerformanceTracker
from .selector import AdaptiveSelector, SelectorState, SystemStatus

# Pipeline
from .service import CommandService, Transcriber

# Types
from .types import (
    BackendDisabledError,
    BackendKind,
    BackendParseError,
    BackendUnavailableError,
    Command,
    CommandResult,
    CommandType,
    ConfigError,
    Entities,
    Intent,
    LabAssistError,
    NLUResult,
    SessionContext,
    StorageError,
    TranscriptionError,
    TranscriptionResult,
    ValidationError,
)

__all__ = [
    "__version__",
    # Backends
    "BACKEND_CATALOG",
    "ClassifierBackend",
    "LlamaCppBackend",
    "ModelInfo",
    "NLUBackend",
    "OllamaBackend",
    "OllamaClient",
    # Config
    "AIConfig",
    "AppConfig",
    "DatabaseConfig",
    "LoggingConfig",
    "load_config",
    # Decision log
    "DecisionLogConfig",
    "DecisionLogger",
    # Execution
    "CommandExecutor",
    "LabStore",
    "confirmation_prompt",
    # Interpretation
    "CommandInterpreter",
    "LegacyPatternParser",
    # Selection
    "AdaptiveSelector",
    "PerformanceRecord",
    "PerformanceTracker",
    "SelectorState",
    "SystemStatus",
    # Pipeline
    "CommandService",
    "Transcriber",
    # Types
    "BackendDisabledError",
    "BackendKind",
    "BackendParseError",
    "BackendUnavailableError",
    "Command",
    "CommandResult",
    "CommandType",
    "ConfigError",
    "Entities",
    "Intent",
    "LabAssistError",
    "NLUResult",
    "SessionContext",
    "StorageError",
    "TranscriptionError",
    "TranscriptionResult",
    "ValidationError",
]
