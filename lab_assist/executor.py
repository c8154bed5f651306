"""
Command execution against the lab store.

Every command type resolves to a ``CommandResult``. Storage failures and
missing entities become failure results; nothing raises out of
``CommandExecutor.execute``.
"""

from __future__ import annotations

import logging
from dataclasses import asdict

from .storage import LabStore
from .types import (
    Command,
    CommandResult,
    CommandType,
    LabAssistError,
    SessionContext,
    StorageError,
    ValidationError,
)

logger = logging.getLogger(__name__)

DEFAULT_QUERY_TOLERANCE = 20.0


def _fmt(value: float | int | None) -> str:
    """280.0 -> "280", 280.5 -> "280.5"."""
    if value is None:
        return "unknown"
    return f"{value:g}"


def confirmation_prompt(command: Command) -> str:
    """Natural-language question describing what would be executed."""
    e = command.entities
    if command.type == CommandType.RECORD:
        return f"Record rat {e.rat} in cage {e.cage} with weight {_fmt(e.weight)} grams?"
    if command.type == CommandType.UPDATE:
        target = f"rat {e.rat}" if e.rat is not None else "current rat"
        return f"Update {target} weight to {_fmt(e.weight)} grams?"
    if command.type == CommandType.MOVE:
        return f"Move rat {e.rat} to cage {e.cage}?"
    return f"Execute command: {command.raw_text}?"


class CommandExecutor:
    """
    Runs commands against a ``LabStore`` and keeps the session context
    in step with what was written.
    """

    def __init__(self, store: LabStore, query_tolerance: float = DEFAULT_QUERY_TOLERANCE):
        self.store = store
        self.query_tolerance = query_tolerance

    def execute(
        self,
        command: Command,
        session_id: int | None = None,
        context: SessionContext | None = None,
    ) -> CommandResult:
        handlers = {
            CommandType.RECORD: self._execute_record,
            CommandType.UPDATE: self._execute_update,
            CommandType.MOVE: self._execute_move,
            CommandType.QUERY: self._execute_query,
            CommandType.SYSTEM: self._execute_system,
        }
        handler = handlers.get(command.type)
        if handler is None:
            return CommandResult(success=False, message=f"Unknown command type: {command.type}")

        try:
            return handler(command, session_id, context)
        except ValidationError as e:
            logger.info(f"Rejected {command.type.value} command: {e}")
            return CommandResult(success=False, message=str(e))
        except LabAssistError as e:
            logger.error(f"Command execution failed: {e}")
            return CommandResult(success=False, message=f"Command execution failed: {e}")

    def _execute_record(
        self, command: Command, session_id: int | None, context: SessionContext | None
    ) -> CommandResult:
        rat, cage, weight = command.entities.rat, command.entities.cage, command.entities.weight
        if rat is None or cage is None or weight is None or session_id is None:
            raise ValidationError(
                "Missing required information for recording",
                details=command.entities.to_dict(),
            )

        try:
            with self.store.transaction():
                self.store.get_or_create_animal(rat)
                self.store.get_or_create_cage(cage)
                reading = self.store.record_reading(rat, cage, weight, session_id)
                self.store.update_session_context(
                    session_id, last_rat=rat, last_cage=cage, last_weight=weight
                )
        except StorageError as e:
            logger.warning(f"Record failed: {e}")
            return CommandResult(success=False, message=f"Failed to record reading: {e}")

        if context is not None:
            context.merge(last_rat=rat, last_cage=cage, last_weight=weight)
        return CommandResult(
            success=True,
            message=f"Logged. Rat {rat}, cage {cage}, {_fmt(weight)} grams",
            data=reading.to_dict(),
        )

    def _execute_update(
        self, command: Command, session_id: int | None, context: SessionContext | None
    ) -> CommandResult:
        weight = command.entities.weight
        if weight is None or session_id is None:
            raise ValidationError("Missing weight information")

        rat = command.entities.rat
        if rat is None and context is not None:
            rat = context.last_rat
        if rat is None:
            raise ValidationError("Which rat? No recent rat mentioned")

        try:
            with self.store.transaction():
                reading = self.store.update_animal_weight(rat, weight, session_id)
                self.store.update_session_context(session_id, last_weight=weight)
        except StorageError as e:
            logger.warning(f"Update failed: {e}")
            return CommandResult(success=False, message=f"Failed to update weight: {e}")

        if context is not None:
            context.merge(last_weight=weight)
        return CommandResult(
            success=True,
            message=f"Updated rat {rat} weight to {_fmt(weight)} grams",
            data=reading.to_dict() if reading is not None else None,
        )

    def _execute_move(
        self, command: Command, session_id: int | None, context: SessionContext | None
    ) -> CommandResult:
        rat, cage = command.entities.rat, command.entities.cage
        if rat is None or cage is None:
            raise ValidationError(
                "Missing rat or cage information", details=command.entities.to_dict()
            )

        try:
            with self.store.transaction():
                self.store.get_or_create_animal(rat)
                self.store.get_or_create_cage(cage)
                self.store.move_animal(rat, cage)
                if session_id is not None:
                    self.store.update_session_context(session_id, last_rat=rat, last_cage=cage)
        except StorageError as e:
            logger.warning(f"Move failed: {e}")
            return CommandResult(success=False, message=f"Failed to move animal: {e}")

        if context is not None:
            context.merge(last_rat=rat, last_cage=cage)
        return CommandResult(success=True, message=f"Moved rat {rat} to cage {cage}")

    def _execute_query(
        self, command: Command, session_id: int | None, context: SessionContext | None
    ) -> CommandResult:
        weight, action = command.entities.weight, command.entities.action

        if weight is not None:
            try:
                animals = self.store.get_animals_around_weight(weight, self.query_tolerance)
            except StorageError as e:
                logger.warning(f"Query failed: {e}")
                return CommandResult(success=False, message=f"Query failed: {e}")

            if not animals:
                return CommandResult(success=True, message=f"No rats found around {_fmt(weight)} grams")
            summary = ", ".join(
                f"Rat {a.number} at {_fmt(a.current_weight)}g in cage {a.current_cage or 'unknown'}"
                for a in animals
            )
            return CommandResult(
                success=True,
                message=f"Found {len(animals)} rats: {summary}",
                data=[asdict(a) for a in animals],
            )

        if action == "lastreading":
            return self._last_reading(context)
        if action == "currentstatus":
            return self._current_status(context)
        return CommandResult(success=False, message="Unknown query type")

    def _last_reading(self, context: SessionContext | None) -> CommandResult:
        if context is not None and context.last_rat is not None and context.last_weight is not None:
            return CommandResult(
                success=True,
                message=f"Last reading: Rat {context.last_rat}, {_fmt(context.last_weight)} grams",
            )
        return CommandResult(success=True, message="No recent readings in this session")

    def _current_status(self, context: SessionContext | None) -> CommandResult:
        status: list[str] = []
        if context is not None:
            if context.last_rat is not None:
                status.append(f"Current rat: {context.last_rat}")
            if context.last_cage is not None:
                status.append(f"Current cage: {context.last_cage}")
            if context.last_weight is not None:
                status.append(f"Last weight: {_fmt(context.last_weight)}g")
        return CommandResult(
            success=True,
            message=", ".join(status) if status else "No current context",
        )

    def _execute_system(
        self, command: Command, session_id: int | None, context: SessionContext | None
    ) -> CommandResult:
        action = command.entities.action
        if action == "stop":
            return CommandResult(
                success=True, message="Stopping listening mode", data={"action": "stop_listening"}
            )
        if action == "start":
            return CommandResult(
                success=True, message="Starting listening mode", data={"action": "start_listening"}
            )
        return CommandResult(success=False, message="Unknown system command")


__all__ = ["CommandExecutor", "DEFAULT_QUERY_TOLERANCE", "confirmation_prompt"]
