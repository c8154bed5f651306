"""
Per-utterance command flow.

``CommandService`` ties the pipeline together: it keeps the active
session and its context, runs the selector (falling back to the legacy
pattern parser if the NLU path breaks), writes the audit trail, applies
the confirmation gate and hands approved commands to the executor.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol

from .config import AppConfig
from .decision_log import DecisionLogConfig, DecisionLogger
from .executor import CommandExecutor, confirmation_prompt
from .interpreter import LegacyPatternParser
from .selector import AdaptiveSelector
from .storage import LabStore
from .types import (
    Command,
    CommandResult,
    Session,
    SessionContext,
    StorageError,
    TranscriptionError,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)


class Transcriber(Protocol):
    """Speech-to-text collaborator."""

    async def transcribe(self, chunk: bytes) -> TranscriptionResult: ...


class CommandService:
    """
    Turns transcriptions into executed (or pending) commands.

    Example:
        >>> service = CommandService(LabStore(":memory:"), config=config)
        >>> await service.initialize()
        >>> result = await service.process_transcription(
        ...     TranscriptionResult("rat 5 cage 3 weight 280 grams", 0.95)
        ... )
    """

    def __init__(
        self,
        store: LabStore,
        selector: AdaptiveSelector | None = None,
        config: AppConfig | None = None,
        decision_logger: DecisionLogger | None = None,
    ):
        self.config = config or AppConfig()
        self.store = store
        self.selector = selector or AdaptiveSelector(self.config.ai)
        self.executor = CommandExecutor(store, self.config.database.query_tolerance)
        self.legacy_parser = LegacyPatternParser(self.selector.interpreter.confirmation_threshold)
        self.decision_logger = decision_logger or DecisionLogger(
            DecisionLogConfig(
                log_path=self.config.logging.decision_log_path,
                enabled=self.config.logging.decision_log_enabled,
                max_size_mb=self.config.logging.max_size_mb,
                max_files=self.config.logging.max_files,
            )
        )

        self._session_id: int | None = None
        self._context: SessionContext | None = None
        self._pending: Command | None = None

    @property
    def current_context(self) -> SessionContext | None:
        return self._context

    @property
    def session_id(self) -> int | None:
        return self._session_id

    @property
    def pending_command(self) -> Command | None:
        return self._pending

    async def initialize(self) -> None:
        await self.selector.initialize()

    async def aclose(self) -> None:
        await self.selector.aclose()

    # =========================================================================
    # Sessions
    # =========================================================================

    def _ensure_active_session(self) -> int:
        """Load the active session (and its context) or start one."""
        if self._session_id is None:
            session = self.store.get_current_session()
            if session is None:
                session = self.store.start_session()
                context = None
            else:
                context = self.store.get_session_context(session.id)
            self._session_id = session.id
            self._context = context or SessionContext(session_id=session.id)
        return self._session_id

    def start_new_session(self) -> Session:
        session = self.store.start_session()
        self._session_id = session.id
        self._context = SessionContext(session_id=session.id)
        self._pending = None
        return session

    def reset_context(self) -> None:
        """Forget last-mentioned values for the current session."""
        self._pending = None
        if self._session_id is None:
            self._context = None
            return
        self.store.clear_session_context(self._session_id)
        self._context = SessionContext(session_id=self._session_id)

    # =========================================================================
    # Command flow
    # =========================================================================

    async def process_audio(self, chunk: bytes, transcriber: Transcriber) -> CommandResult:
        try:
            transcription = await transcriber.transcribe(chunk)
        except TranscriptionError as e:
            logger.error(f"Speech processing failed: {e}")
            return CommandResult(success=False, message=f"Speech processing failed: {e}")
        return await self.process_transcription(transcription)

    async def process_transcription(self, transcription: TranscriptionResult) -> CommandResult:
        """
        Parse, audit and (if confident enough) execute one utterance.

        Low-confidence commands and commands flagged for confirmation are
        parked as the pending command; ``confirm()`` runs or drops them.
        """
        if not transcription.text or not transcription.text.strip():
            return CommandResult(success=False, message="No speech detected")

        try:
            session_id = self._ensure_active_session()
        except StorageError as e:
            logger.error(f"Could not open session: {e}")
            return CommandResult(success=False, message=f"Error processing command: {e}")

        start = time.perf_counter()
        command, source = await self._parse(transcription)
        latency_ms = (time.perf_counter() - start) * 1000

        execute_now = (
            command.confidence >= self.config.ai.confidence_threshold
            and not command.needs_confirmation
        )
        self._audit(command, transcription, session_id, execute_now, latency_ms, source)

        if execute_now:
            self._pending = None
            return self.executor.execute(command, session_id, self._context)

        self._pending = command
        return CommandResult(
            success=False,
            message=f'Did you say: "{command.raw_text}"?',
            needs_confirmation=True,
            confirmation_prompt=confirmation_prompt(command),
        )

    async def _parse(self, transcription: TranscriptionResult) -> tuple[Command, str]:
        try:
            command = await self.selector.parse_command(transcription)
            command = self.selector.interpreter.apply_context(command, self._context)
            return command, "selector"
        except Exception as e:
            logger.warning(f"AI parsing failed, falling back to legacy parser: {e}")
            return self.legacy_parser.parse(transcription), "legacy"

    def _audit(
        self,
        command: Command,
        transcription: TranscriptionResult,
        session_id: int,
        executed: bool,
        latency_ms: float,
        source: str,
    ) -> None:
        try:
            self.store.log_command(
                session_id,
                transcription.text,
                json.dumps(command.to_dict()),
                command.confidence,
                executed,
            )
        except StorageError as e:
            logger.warning(f"Failed to write command history: {e}")

        backend = self.selector.last_backend
        self.decision_logger.log_decision(
            transcription.text,
            command,
            backend=backend.value if source == "selector" and backend else "legacy",
            executed=executed,
            latency_ms=latency_ms,
            session_id=session_id,
            source=source,
        )

    def confirm(self, accepted: bool = True) -> CommandResult:
        """Execute or discard the pending command."""
        command = self._pending
        if command is None:
            return CommandResult(success=False, message="Nothing to confirm")
        self._pending = None

        if not accepted:
            return CommandResult(success=True, message="Command cancelled")

        try:
            session_id = self._ensure_active_session()
        except StorageError as e:
            return CommandResult(success=False, message=f"Error processing command: {e}")
        return self.executor.execute(command, session_id, self._context)

    # =========================================================================
    # NLU status
    # =========================================================================

    async def get_nlu_status(self) -> dict[str, Any]:
        status = await self.selector.get_system_status()
        return status.to_dict()

    def get_current_nlu_backend(self) -> dict[str, Any]:
        return self.selector.get_current_backend()

    async def switch_nlu_backend(self, backend: str) -> bool:
        return await self.selector.switch_backend(backend)


__all__ = ["CommandService", "Transcriber"]
