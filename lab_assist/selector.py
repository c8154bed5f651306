"""
Adaptive NLU backend selection.

The selector owns exactly one active backend and keeps it healthy:

1. ``initialize()`` walks the configured priority list and activates the
   first backend that constructs and reports available, falling back to
   the keyword classifier when nothing else works.
2. ``parse_command()`` delegates to the active backend, tracks latency and
   success, and retries on a fresh classifier when the backend fails.
3. A degradation check (run in the background) swaps to a faster
   alternative when the active backend is slow or unreliable.

Construction does no I/O; callers await ``initialize()`` (or the first
``parse_command()``, which initializes lazily).
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .backends.base import NLUBackend, get_backend_spec
from .backends.classifier import ClassifierBackend
from .backends.model_backend import LlamaCppBackend, OllamaBackend
from .backends.ollama_client import OllamaClient
from .config import AIConfig
from .interpreter import CommandInterpreter
from .performance import PerformanceTracker, run_benchmark
from .types import (
    BackendKind,
    BackendUnavailableError,
    Command,
    LabAssistError,
    TranscriptionResult,
)

logger = logging.getLogger(__name__)

# Tried in order when the active backend degrades (fastest first)
DEGRADATION_ALTERNATIVES: tuple[BackendKind, ...] = (
    BackendKind.CLASSIFICATION,
    BackendKind.OLLAMA_TINY,
    BackendKind.OLLAMA_LIGHT,
    BackendKind.LLAMACPP,
)

BackendFactory = Callable[[BackendKind], NLUBackend]


class SelectorState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROBING = "probing"
    ACTIVE = "active"
    SWITCHING = "switching"


@dataclass(frozen=True)
class ActiveSlot:
    """The active backend. Replaced as a whole, never mutated."""

    kind: BackendKind
    backend: NLUBackend


@dataclass
class SystemStatus:
    """Snapshot returned by ``AdaptiveSelector.get_system_status``."""

    active_backend: str
    available_backends: list[str] = field(default_factory=list)
    performance: dict[str, dict[str, Any]] = field(default_factory=dict)
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "active_backend": self.active_backend,
            "available_backends": list(self.available_backends),
            "performance": dict(self.performance),
            "recommendations": list(self.recommendations),
        }


class AdaptiveSelector:
    """
    Chooses, monitors and swaps the NLU backend.

    Example:
        >>> selector = AdaptiveSelector(AIConfig(preferred_backend="classification"))
        >>> await selector.initialize()
        >>> command = await selector.parse_command(transcription)
    """

    def __init__(
        self,
        config: AIConfig | None = None,
        client: OllamaClient | None = None,
        backend_factory: BackendFactory | None = None,
        interpreter: CommandInterpreter | None = None,
        tracker: PerformanceTracker | None = None,
    ):
        self.config = config or AIConfig()
        self._owns_client = client is None
        self._client = client or OllamaClient(host=self.config.ollama_host)
        self._backend_factory = backend_factory
        self.interpreter = interpreter or CommandInterpreter()
        self.tracker = tracker or PerformanceTracker()

        self._state = SelectorState.UNINITIALIZED
        self._slot: ActiveSlot | None = None
        self._lock = asyncio.Lock()
        self._background: set[asyncio.Task[None]] = set()
        self._check_task: asyncio.Task[None] | None = None
        self.last_backend: BackendKind | None = None

    @property
    def state(self) -> SelectorState:
        return self._state

    # =========================================================================
    # Backend construction
    # =========================================================================

    def _create_backend(self, kind: BackendKind) -> NLUBackend:
        if self._backend_factory is not None:
            return self._backend_factory(kind)
        if kind == BackendKind.CLASSIFICATION:
            return ClassifierBackend()
        if kind == BackendKind.LLAMACPP:
            return LlamaCppBackend()
        return OllamaBackend(kind, self._client)

    async def _try_initialize(self, kind: BackendKind) -> NLUBackend:
        """Construct ``kind`` and confirm it is usable, or raise."""
        try:
            backend = self._create_backend(kind)
            initialize = getattr(backend, "initialize", None)
            if initialize is not None:
                await initialize()
            else:
                info = await backend.get_model_info()
                if not info.available:
                    raise BackendUnavailableError(kind, "reported unavailable")
        except LabAssistError:
            raise
        except Exception as e:
            raise BackendUnavailableError(kind, f"{type(e).__name__}: {e}") from e
        return backend

    def _priority(self) -> list[BackendKind]:
        names = [self.config.preferred_backend] + [
            b for b in self.config.fallback_order if b != self.config.preferred_backend
        ]
        priority: list[BackendKind] = []
        for name in names:
            try:
                kind = BackendKind(name)
            except ValueError:
                logger.warning(f"Ignoring unknown backend in config: {name}")
                continue
            if kind not in priority:
                priority.append(kind)
        return priority

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def initialize(self) -> BackendKind:
        """
        Activate the best available backend.

        Always ends ACTIVE: when every candidate fails the classifier is
        forced. Benchmarking, if enabled, runs after activation.
        """
        if self._slot is not None:
            return self._slot.kind

        async with self._lock:
            # A concurrent caller may have finished the probe while we waited
            if self._slot is not None:
                return self._slot.kind
            self._state = SelectorState.PROBING
            priority = self._priority()
            logger.info(f"Backend priority: {' -> '.join(k.value for k in priority)}")

            benchmark = False
            for kind in priority:
                try:
                    backend = await self._try_initialize(kind)
                except LabAssistError as e:
                    logger.warning(f"Backend {kind.value} failed: {e}")
                    continue
                self._slot = ActiveSlot(kind, backend)
                benchmark = self.config.enable_benchmarking
                logger.info(f"Active NLU backend: {kind.value}")
                break
            else:
                self._slot = ActiveSlot(BackendKind.CLASSIFICATION, ClassifierBackend())
                logger.info("All backends failed, using classification")

            self._state = SelectorState.ACTIVE
            slot = self._slot

        if benchmark:
            await run_benchmark(slot.backend, self.tracker)
        return slot.kind

    async def aclose(self) -> None:
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        if self._owns_client:
            await self._client.aclose()

    async def wait_for_background_tasks(self) -> None:
        """Block until scheduled degradation checks have finished."""
        while self._background:
            await asyncio.gather(*list(self._background))

    # =========================================================================
    # Parsing
    # =========================================================================

    def _request_timeout_s(self) -> float:
        return self.config.request_timeout_ms / 1000

    async def parse_command(self, transcription: TranscriptionResult) -> Command:
        """
        Parse one transcription into a ``Command``.

        Any failure of a non-classifier backend is absorbed: it is counted
        against the backend and the same text is re-parsed by a fresh
        classifier. Only a failing classifier propagates.
        """
        if self._slot is None:
            await self.initialize()
        slot = self._slot
        assert slot is not None

        start = time.perf_counter()
        try:
            result = await asyncio.wait_for(
                slot.backend.parse(transcription.text),
                timeout=self._request_timeout_s(),
            )
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            self.tracker.record(slot.kind, elapsed_ms, success=False)
            if slot.kind == BackendKind.CLASSIFICATION:
                raise
            logger.warning(
                f"NLU parsing failed with {slot.kind.value} "
                f"({type(e).__name__}: {e}), falling back to classification"
            )
            self._schedule_degradation_check()
            return await self._fallback_to_classifier(transcription)

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.tracker.record(slot.kind, elapsed_ms, success=True)
        if elapsed_ms > self.config.max_inference_time_ms:
            logger.warning(
                f"Slow inference on {slot.kind.value} ({elapsed_ms:.0f}ms), "
                f"considering backend switch"
            )
            self._schedule_degradation_check()

        self.last_backend = slot.kind
        return self.interpreter.to_command(result, transcription)

    async def _fallback_to_classifier(self, transcription: TranscriptionResult) -> Command:
        classifier = ClassifierBackend()
        result = await classifier.parse(transcription.text)
        self.last_backend = BackendKind.CLASSIFICATION
        return self.interpreter.to_command(result, transcription)

    # =========================================================================
    # Degradation and switching
    # =========================================================================

    def _schedule_degradation_check(self) -> None:
        if self._check_task is not None and not self._check_task.done():
            return
        task = asyncio.get_running_loop().create_task(self._consider_backend_switch())
        self._check_task = task
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _consider_backend_switch(self) -> None:
        slot = self._slot
        if slot is None:
            return
        if not self.tracker.is_degraded(slot.kind, self.config.max_inference_time_ms):
            return

        logger.info(f"Performance degraded on {slot.kind.value}, attempting backend switch")
        for alt in DEGRADATION_ALTERNATIVES:
            if alt == slot.kind:
                continue
            if await self._activate(alt):
                logger.info(f"Switched to {alt.value} backend for better performance")
                return
        logger.warning(f"No alternative backend available, staying on {slot.kind.value}")

    async def _activate(self, kind: BackendKind) -> bool:
        try:
            backend = await self._try_initialize(kind)
        except LabAssistError as e:
            logger.warning(f"Could not switch to {kind.value}: {e}")
            return False

        async with self._lock:
            self._state = SelectorState.SWITCHING
            self._slot = ActiveSlot(kind, backend)
            self._state = SelectorState.ACTIVE
        return True

    async def switch_backend(self, target: BackendKind | str) -> bool:
        """Manually activate ``target``. Returns False instead of raising."""
        try:
            kind = BackendKind(target)
        except ValueError:
            logger.error(f"Unknown backend: {target}")
            return False

        if await self._activate(kind):
            logger.info(f"Manually switched to {kind.value} backend")
            return True
        return False

    # =========================================================================
    # Status
    # =========================================================================

    async def get_system_status(self) -> SystemStatus:
        """Probe every backend and report availability and performance."""
        if self._slot is None:
            await self.initialize()

        available: list[str] = []
        recommendations: list[str] = []
        for kind in BackendKind:
            try:
                await self._try_initialize(kind)
            except LabAssistError as e:
                logger.debug(f"Status probe: {kind.value} unavailable ({e})")
                spec = get_backend_spec(kind)
                if spec.setup_command:
                    recommendations.append(
                        f"Install {spec.display_name} ({spec.size}): {spec.setup_command}"
                    )
                continue
            available.append(kind.value)

        assert self._slot is not None
        return SystemStatus(
            active_backend=self._slot.kind.value,
            available_backends=available,
            performance=self.tracker.snapshot(),
            recommendations=recommendations,
        )

    def get_current_backend(self) -> dict[str, Any]:
        if self._slot is None:
            return {"backend": None, "state": self._state.value, "stats": None}
        record = self.tracker.get(self._slot.kind)
        return {
            "backend": self._slot.kind.value,
            "state": self._state.value,
            "stats": record.to_dict() if record is not None else None,
        }


__all__ = [
    "DEGRADATION_ALTERNATIVES",
    "ActiveSlot",
    "AdaptiveSelector",
    "SelectorState",
    "SystemStatus",
]
