"""
NLU decision logging for offline backend evaluation.

Appends one JSON line per processed utterance (text, backend, parsed
intent/entities, confidence, latency, whether it auto-executed). The
command_history table is the durable audit trail; this log is an
optional companion that is easy to grep, diff between backends, and
turn into evaluation sets.

Usage:
    from lab_assist.decision_log import DecisionLogger, DecisionLogConfig

    log = DecisionLogger(DecisionLogConfig(log_path="~/.lab-assist/nlu.jsonl"))
    log.log_decision(text, command, backend="ollama-tiny", latency_ms=412.0)
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from .types import Command

logger = logging.getLogger(__name__)


@dataclass
class DecisionRecord:
    """One logged NLU decision."""

    text: str
    backend: str
    intent: str
    entities: dict[str, Any]
    confidence: float
    needs_confirmation: bool
    context_used: bool
    executed: bool
    latency_ms: float
    timestamp: str
    session_id: int | None = None
    source: str = "selector"  # "selector" or "legacy"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DecisionRecord:
        return cls(**data)


@dataclass
class DecisionLogConfig:
    """Configuration for the decision log."""

    # Log file path (supports ~ expansion)
    log_path: str = "~/.lab-assist/nlu_decisions.jsonl"

    enabled: bool = False

    # Maximum log file size in MB before rotation
    max_size_mb: float = 10.0

    # Number of rotated files to keep
    max_files: int = 5


class DecisionLogger:
    """Writes ``DecisionRecord`` lines to a size-rotated JSONL file."""

    def __init__(self, config: DecisionLogConfig | None = None):
        self.config = config or DecisionLogConfig()
        self._log_path: Path | None = None
        self._decision_count = 0

        if self.config.enabled:
            self._ensure_log_path()

    @property
    def log_path(self) -> Path | None:
        return self._log_path

    def _ensure_log_path(self) -> None:
        path = Path(self.config.log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._log_path = path

    def _check_rotation(self) -> None:
        if self._log_path is None or not self._log_path.exists():
            return

        size_mb = self._log_path.stat().st_size / (1024 * 1024)
        if size_mb >= self.config.max_size_mb:
            self._rotate_logs()

    def _rotate_logs(self) -> None:
        if self._log_path is None:
            return

        # Shift existing rotated files, dropping the oldest
        for i in range(self.config.max_files - 1, 0, -1):
            old_path = self._log_path.with_suffix(f".jsonl.{i}")
            if not old_path.exists():
                continue
            if i + 1 >= self.config.max_files:
                old_path.unlink()
            else:
                old_path.rename(self._log_path.with_suffix(f".jsonl.{i + 1}"))

        if self._log_path.exists():
            self._log_path.rename(self._log_path.with_suffix(".jsonl.1"))

        logger.info(f"Rotated decision log: {self._log_path}")

    def log_decision(
        self,
        text: str,
        command: Command,
        backend: str,
        executed: bool = False,
        latency_ms: float = 0.0,
        session_id: int | None = None,
        source: str = "selector",
    ) -> None:
        """
        Log one NLU decision.

        Args:
            text: Transcribed utterance
            command: Command produced for it
            backend: Backend that produced the parse
            executed: Whether the command ran without confirmation
            latency_ms: Parse time
            session_id: Active session, if any
            source: "selector" or "legacy"
        """
        if not self.config.enabled:
            return

        record = DecisionRecord(
            text=text,
            backend=backend,
            intent=command.type.value,
            entities=command.entities.to_dict(),
            confidence=round(command.confidence, 4),
            needs_confirmation=command.needs_confirmation,
            context_used=command.context_used,
            executed=executed,
            latency_ms=round(latency_ms, 2),
            timestamp=datetime.now().isoformat(),
            session_id=session_id,
            source=source,
        )

        try:
            self._write_entry(record)
        except OSError as e:
            logger.warning(f"Failed to log decision: {e}")
            return
        self._decision_count += 1

    def _write_entry(self, record: DecisionRecord) -> None:
        if self._log_path is None:
            return

        self._check_rotation()

        with open(self._log_path, "a") as f:
            f.write(json.dumps(record.to_dict()) + "\n")

    def load_decisions(self) -> list[DecisionRecord]:
        """Read back the current log file, skipping malformed lines."""
        if self._log_path is None or not self._log_path.exists():
            return []

        decisions = []
        with open(self._log_path) as f:
            for line in f:
                try:
                    decisions.append(DecisionRecord.from_dict(json.loads(line)))
                except (json.JSONDecodeError, TypeError) as e:
                    logger.warning(f"Skipping malformed line: {e}")
        return decisions

    def get_statistics(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "enabled": self.config.enabled,
            "log_path": str(self._log_path) if self._log_path else None,
            "decisions_logged": self._decision_count,
        }
        if self._log_path and self._log_path.exists():
            stats["log_size_mb"] = self._log_path.stat().st_size / (1024 * 1024)
        return stats


__all__ = ["DecisionLogConfig", "DecisionLogger", "DecisionRecord"]
