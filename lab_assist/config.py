"""
Configuration management for Lab Assist.

Settings resolve in three layers: the JSON config file (or defaults),
then a named preset from ``LAB_ASSIST_PRESET``, then individual
environment overrides. A ``.env`` file is loaded into the environment
first when present.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Mapping
from dataclasses import asdict, dataclass, field, replace
from pathlib import Path
from typing import Any, Literal

from dotenv import load_dotenv

from .types import BackendKind, ConfigError

logger = logging.getLogger(__name__)

CONFIG_DIR = Path.home() / ".lab-assist"
DEFAULT_CONFIG_PATH = CONFIG_DIR / "config.json"
DATABASE_NAME = "lab-assist.db"

MIN_INFERENCE_TIME_MS = 100
MAX_INFERENCE_TIME_MS = 30000


def _default_fallback_order() -> list[str]:
    return [
        BackendKind.OLLAMA_TINY.value,
        BackendKind.CLASSIFICATION.value,
        BackendKind.OLLAMA_LIGHT.value,
        BackendKind.OLLAMA_FULL.value,
        BackendKind.LLAMACPP.value,
    ]


@dataclass
class AIConfig:
    """NLU backend selection and gating."""

    preferred_backend: str = BackendKind.OLLAMA_TINY.value
    max_inference_time_ms: int = 1000
    enable_benchmarking: bool = True
    fallback_order: list[str] = field(default_factory=_default_fallback_order)
    # Minimum confidence for auto-execution
    confidence_threshold: float = 0.7
    # Hard bound on a single backend parse call
    request_timeout_ms: int = 3000
    ollama_host: str | None = None


@dataclass
class DatabaseConfig:
    """SQLite storage settings."""

    path: str | None = None
    foreign_keys: bool = True
    journal_mode: Literal["WAL", "DELETE", "MEMORY"] = "WAL"
    synchronous: Literal["NORMAL", "FULL", "OFF"] = "NORMAL"
    # +/- grams for "show rats around N grams"
    query_tolerance: float = 20.0

    def resolved_path(self) -> str:
        if self.path == ":memory:":
            return self.path
        if self.path:
            return str(Path(self.path).expanduser())
        return str(CONFIG_DIR / DATABASE_NAME)


@dataclass
class LoggingConfig:
    """Process log level and the optional NLU decision log."""

    level: str = "INFO"
    decision_log_enabled: bool = False
    decision_log_path: str = "~/.lab-assist/nlu_decisions.jsonl"
    max_size_mb: float = 10.0
    max_files: int = 5


# Presets only touch AI settings
PRESETS: dict[str, dict[str, Any]] = {
    "minimal": {
        "preferred_backend": BackendKind.CLASSIFICATION.value,
        "enable_benchmarking": False,
    },
    "tiny": {
        "preferred_backend": BackendKind.OLLAMA_TINY.value,
    },
    "balanced": {
        "preferred_backend": BackendKind.OLLAMA_LIGHT.value,
    },
    "performance": {
        "preferred_backend": BackendKind.LLAMACPP.value,
        "fallback_order": [
            BackendKind.LLAMACPP.value,
            BackendKind.OLLAMA_FULL.value,
            BackendKind.OLLAMA_LIGHT.value,
            BackendKind.OLLAMA_TINY.value,
            BackendKind.CLASSIFICATION.value,
        ],
    },
}


@dataclass
class AppConfig:
    """
    Complete Lab Assist configuration.

    Example:
        >>> config = AppConfig.load()
        >>> config.ai.preferred_backend
        'ollama-tiny'
    """

    ai: AIConfig = field(default_factory=AIConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def load(cls, path: Path | None = None) -> AppConfig:
        """Load configuration from file; defaults if the file is missing."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        if not path.exists():
            return cls()

        try:
            with open(path) as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigError(f"Invalid JSON in {path}: {e}") from e

        try:
            return cls(
                ai=AIConfig(**data.get("ai", {})),
                database=DatabaseConfig(**data.get("database", {})),
                logging=LoggingConfig(**data.get("logging", {})),
            )
        except TypeError as e:
            raise ConfigError(f"Unknown setting in {path}: {e}") from e

    def save(self, path: Path | None = None) -> None:
        """Save configuration to file."""
        if path is None:
            path = DEFAULT_CONFIG_PATH

        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            json.dump(
                {
                    "ai": asdict(self.ai),
                    "database": asdict(self.database),
                    "logging": asdict(self.logging),
                },
                f,
                indent=2,
            )

    def with_preset(self, name: str) -> AppConfig:
        """Copy of this config with a named preset applied."""
        if name not in PRESETS:
            raise ConfigError(f"Unknown preset: {name}", details=sorted(PRESETS))
        return replace(self, ai=replace(self.ai, **PRESETS[name]))

    def apply_env(self, environ: Mapping[str, str] | None = None) -> AppConfig:
        """
        Apply ``LAB_ASSIST_*`` / ``OLLAMA_HOST`` overrides.

        Invalid values are logged and ignored so a typo in the shell
        never stops the assistant from starting.
        """
        env = os.environ if environ is None else environ
        config = self

        preset = env.get("LAB_ASSIST_PRESET")
        if preset:
            if preset in PRESETS:
                config = config.with_preset(preset)
            else:
                logger.warning(f"Ignoring unknown LAB_ASSIST_PRESET: {preset}")

        ai = config.ai
        backend = env.get("LAB_ASSIST_AI_BACKEND")
        if backend:
            if backend in {k.value for k in BackendKind}:
                ai = replace(ai, preferred_backend=backend)
            else:
                logger.warning(f"Ignoring unknown LAB_ASSIST_AI_BACKEND: {backend}")

        max_time = env.get("LAB_ASSIST_MAX_INFERENCE_TIME")
        if max_time:
            try:
                ai = replace(ai, max_inference_time_ms=int(float(max_time)))
            except (ValueError, OverflowError):
                logger.warning(f"Ignoring non-numeric LAB_ASSIST_MAX_INFERENCE_TIME: {max_time}")

        benchmarking = env.get("LAB_ASSIST_ENABLE_BENCHMARKING")
        if benchmarking:
            ai = replace(ai, enable_benchmarking=benchmarking.lower() == "true")

        host = env.get("OLLAMA_HOST")
        if host:
            ai = replace(ai, ollama_host=host)

        database = config.database
        db_path = env.get("LAB_ASSIST_DATABASE_PATH")
        if db_path:
            database = replace(database, path=db_path)

        log_config = config.logging
        level = env.get("LAB_ASSIST_LOG_LEVEL")
        if level:
            log_config = replace(log_config, level=level.upper())

        return replace(config, ai=ai, database=database, logging=log_config)

    def validate(self) -> list[str]:
        """Return a list of problems; empty means valid."""
        errors: list[str] = []
        known = {k.value for k in BackendKind}

        if self.ai.preferred_backend not in known:
            errors.append(f"Invalid AI backend: {self.ai.preferred_backend}")

        if not MIN_INFERENCE_TIME_MS <= self.ai.max_inference_time_ms <= MAX_INFERENCE_TIME_MS:
            errors.append(
                f"Invalid inference timeout: {self.ai.max_inference_time_ms}ms "
                f"(must be {MIN_INFERENCE_TIME_MS}-{MAX_INFERENCE_TIME_MS}ms)"
            )

        if not 0 <= self.ai.confidence_threshold <= 1:
            errors.append(
                f"Invalid confidence threshold: {self.ai.confidence_threshold} (must be 0-1)"
            )

        for backend in self.ai.fallback_order:
            if backend not in known:
                errors.append(f"Invalid backend in fallback order: {backend}")

        if self.database.query_tolerance < 0:
            errors.append(f"Invalid query tolerance: {self.database.query_tolerance}")

        if logging.getLevelName(self.logging.level) == f"Level {self.logging.level}":
            errors.append(f"Invalid log level: {self.logging.level}")

        return errors


def load_config(
    path: Path | None = None,
    env_file: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """
    Resolve the effective configuration.

    Raises:
        ConfigError: If the file is unreadable or the result is invalid
    """
    if env_file is None:
        env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    config = AppConfig.load(path).apply_env(environ)
    errors = config.validate()
    if errors:
        raise ConfigError("Invalid configuration", details=errors)
    return config


__all__ = [
    "AIConfig",
    "AppConfig",
    "DatabaseConfig",
    "DEFAULT_CONFIG_PATH",
    "LoggingConfig",
    "PRESETS",
    "load_config",
]
