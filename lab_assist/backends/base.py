"""
Backend capability interface and the static backend catalog.

Every NLU tier, from the keyword classifier to the largest local model,
exposes the same two async operations: ``parse`` and ``get_model_info``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Protocol, runtime_checkable

from ..types import BackendKind, NLUResult


@dataclass
class ModelInfo:
    """Availability report for one backend."""

    available: bool
    model_name: str
    approach: str
    size: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@runtime_checkable
class NLUBackend(Protocol):
    """Protocol implemented by every NLU backend."""

    kind: BackendKind

    async def parse(self, text: str) -> NLUResult: ...

    async def get_model_info(self) -> ModelInfo: ...


@dataclass(frozen=True)
class BackendSpec:
    """Static description of a backend tier."""

    kind: BackendKind
    display_name: str
    size: str
    description: str
    model_name: str | None
    setup_command: str | None
    inference_timeout_ms: int
    max_tokens: int = 100


BACKEND_CATALOG: dict[BackendKind, BackendSpec] = {
    BackendKind.CLASSIFICATION: BackendSpec(
        kind=BackendKind.CLASSIFICATION,
        display_name="Pattern Matching",
        size="0 MB",
        description="Keyword and pattern parsing, no model needed",
        model_name=None,
        setup_command=None,
        inference_timeout_ms=500,
    ),
    BackendKind.OLLAMA_TINY: BackendSpec(
        kind=BackendKind.OLLAMA_TINY,
        display_name="TinyLlama 1.1B",
        size="637 MB",
        description="Smallest local model, good for basic commands",
        model_name="tinyllama:1.1b",
        setup_command="make quick-tiny",
        inference_timeout_ms=1000,
    ),
    BackendKind.OLLAMA_LIGHT: BackendSpec(
        kind=BackendKind.OLLAMA_LIGHT,
        display_name="Phi-3 Mini",
        size="2.3 GB",
        description="Balanced model, good accuracy for its size",
        model_name="phi3:mini",
        setup_command="make quick-light",
        inference_timeout_ms=1000,
    ),
    BackendKind.OLLAMA_FULL: BackendSpec(
        kind=BackendKind.OLLAMA_FULL,
        display_name="Llama 3.2 3B",
        size="4+ GB",
        description="Largest tier, handles paraphrase and spelled numbers",
        model_name="llama3.2:3b",
        setup_command="make install",
        inference_timeout_ms=2000,
        max_tokens=200,
    ),
    BackendKind.LLAMACPP: BackendSpec(
        kind=BackendKind.LLAMACPP,
        display_name="llama.cpp GGUF",
        size="Variable",
        description="In-process GGUF inference (disabled: native binding crashes)",
        model_name="phi-3-mini-4k-instruct.Q4_K_M.gguf",
        setup_command="make setup-llama-cpp",
        inference_timeout_ms=500,
    ),
}


def get_backend_spec(kind: BackendKind | str) -> BackendSpec:
    """Look up a catalog entry by kind or by its string value."""
    return BACKEND_CATALOG[BackendKind(kind)]
