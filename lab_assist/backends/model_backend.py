"""
Local-model NLU backends.

Each Ollama tier wraps the same runtime client with a short JSON-only
prompt; tiers differ in model size, prompt richness and time budget.
The llama.cpp tier is disabled by policy and always fails fast.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from ..types import (
    BackendDisabledError,
    BackendKind,
    BackendParseError,
    BackendUnavailableError,
    NLUResult,
)
from .base import ModelInfo, get_backend_spec
from .classifier import ClassifierBackend
from .ollama_client import OllamaClient

logger = logging.getLogger(__name__)

OLLAMA_KINDS = frozenset(
    {BackendKind.OLLAMA_TINY, BackendKind.OLLAMA_LIGHT, BackendKind.OLLAMA_FULL}
)

MINIMAL_PROMPT = """Parse lab command to JSON:
"{text}"

Return ONLY: {{"intent":"record|update|move|query|system","entities":{{"rat":5,"cage":3,"weight":280}}}}

Intents:
record: rat X cage Y weight Z
update: change weight to Z
move: move rat X to cage Y
query: show rats around Z
system: stop/start

JSON:"""

FULL_PROMPT = """You are a lab data entry assistant. Parse this voice command into structured data.

Command: "{text}"

Extract:
- Intent: record|update|move|query|system|unknown
- Entities: rat number, cage number, weight (grams), action

Return JSON only:
{{"intent": "record", "entities": {{"rat": 5, "cage": 3, "weight": 280.5}}, "confidence": 0.95}}

Examples:
"rat 5 cage 3 weight 280 grams" -> intent: record, rat: 5, cage: 3, weight: 280
"change weight to 300 grams" -> intent: update, weight: 300
"move rat 7 to cage 12" -> intent: move, rat: 7, cage: 12
"show rats around 250 grams" -> intent: query, weight: 250
"stop listening" -> intent: system, action: "stop"

Handle variations like:
- "weigh rat number 5 in cage 3 at 280 grams"
- "rat five cage three two hundred eighty grams"
- "update the weight to three hundred"
- "move animal 7 into cage number 12"

Parse: "{text}"
JSON:"""


def extract_json_object(raw: str) -> dict[str, Any] | None:
    """
    Return the first well-formed JSON object embedded in ``raw``.

    Models like to wrap their answer in prose; every ``{`` is tried as a
    starting point until one decodes to a dict.
    """
    decoder = json.JSONDecoder()
    for match in re.finditer(r"\{", raw):
        try:
            obj, _ = decoder.raw_decode(raw, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


class OllamaBackend:
    """
    NLU backend backed by a model served by Ollama.

    Anything the model says that is not a usable JSON command is
    re-parsed by the keyword classifier on the original
    text. Transport failures and timeouts raise ``BackendParseError`` so
    the selector can account for them.
    """

    def __init__(
        self,
        kind: BackendKind,
        client: OllamaClient,
        model_name: str | None = None,
        temperature: float = 0.1,
        max_tokens: int | None = None,
        timeout_ms: int | None = None,
        default_confidence: float = 0.9,
        fallback: ClassifierBackend | None = None,
    ):
        if kind not in OLLAMA_KINDS:
            raise ValueError(f"Not an Ollama backend: {kind}")
        spec = get_backend_spec(kind)
        self.kind = kind
        self.client = client
        self.model_name = model_name or spec.model_name or ""
        self.temperature = temperature
        self.max_tokens = max_tokens or spec.max_tokens
        self.timeout_ms = timeout_ms or spec.inference_timeout_ms
        self.default_confidence = default_confidence
        self._fallback = fallback or ClassifierBackend()

    @property
    def base_model_name(self) -> str:
        return self.model_name.split(":")[0]

    def build_prompt(self, text: str) -> str:
        template = FULL_PROMPT if self.kind == BackendKind.OLLAMA_FULL else MINIMAL_PROMPT
        return template.format(text=text.replace('"', "'"))

    async def parse(self, text: str) -> NLUResult:
        start = time.perf_counter()
        try:
            response = await self.client.generate(
                model=self.model_name,
                prompt=self.build_prompt(text),
                options={
                    "temperature": self.temperature,
                    "top_p": 0.9,
                    "num_predict": self.max_tokens,
                },
                timeout_s=self.timeout_ms / 1000,
            )
        except (httpx.HTTPError, ValueError) as e:
            # ValueError: the runtime answered with a body that is not JSON
            raise BackendParseError(
                f"{self.kind.value} generate failed: {e}", details=type(e).__name__
            ) from e

        result = self.parse_response(response.response, text)
        result.processing_time_ms = (time.perf_counter() - start) * 1000
        return result

    def parse_response(self, raw: str, text: str) -> NLUResult:
        """Turn raw model output into an ``NLUResult``; never raises."""
        payload = extract_json_object(raw)
        if payload is None:
            logger.debug(f"No JSON in {self.kind.value} output, using classifier: {raw[:120]!r}")
            return self._fallback.classify(text)

        payload.setdefault("confidence", self.default_confidence)
        try:
            return NLUResult.model_validate(
                {
                    "intent": payload.get("intent", "unknown"),
                    "entities": payload.get("entities") or {},
                    "confidence": payload["confidence"],
                    "reasoning": payload.get("reasoning"),
                }
            )
        except PydanticValidationError as e:
            logger.debug(f"Invalid {self.kind.value} JSON, using classifier: {e}")
            return self._fallback.classify(text)

    async def get_model_info(self) -> ModelInfo:
        spec = get_backend_spec(self.kind)
        try:
            models = await self.client.list()
        except (httpx.HTTPError, ValueError) as e:
            logger.debug(f"Ollama inventory unavailable for {self.kind.value}: {e}")
            return ModelInfo(
                available=False, model_name=self.model_name, approach="ai-based"
            )

        match = next(
            (
                m
                for m in models
                if m.name == self.model_name or m.base_name == self.base_model_name
            ),
            None,
        )
        return ModelInfo(
            available=match is not None,
            model_name=self.model_name,
            approach="ai-based",
            size=f"{match.size_gb}GB" if match is not None else spec.size,
        )

    async def initialize(self) -> None:
        """Probe availability; raise if the named model is not installed."""
        info = await self.get_model_info()
        if not info.available:
            spec = get_backend_spec(self.kind)
            raise BackendUnavailableError(
                self.kind,
                f"model {self.model_name} not installed. Run '{spec.setup_command}'",
            )

    async def ensure_model(self, pull: bool = False) -> bool:
        """Check the model is installed, optionally downloading it."""
        info = await self.get_model_info()
        if info.available:
            return True
        if not pull:
            return False
        await self.client.pull(self.model_name)
        return (await self.get_model_info()).available


class LlamaCppBackend:
    """
    In-process llama.cpp tier.

    Disabled: the native binding segfaults on load. Initialization fails
    the same way a missing model would, so failover paths are identical.
    """

    kind = BackendKind.LLAMACPP

    def __init__(self, model_path: str | None = None):
        self.model_path = model_path or get_backend_spec(self.kind).model_name or ""

    def _disabled(self) -> BackendDisabledError:
        return BackendDisabledError(
            self.kind,
            "llama.cpp backend disabled to avoid native crashes. "
            "Use 'make setup-llama-cpp' for a supported setup",
        )

    async def initialize(self) -> None:
        raise self._disabled()

    async def parse(self, text: str) -> NLUResult:
        raise self._disabled()

    async def get_model_info(self) -> ModelInfo:
        return ModelInfo(
            available=False,
            model_name=self.model_path,
            approach="llama.cpp",
            size=get_backend_spec(self.kind).size,
        )


__all__ = [
    "LlamaCppBackend",
    "OllamaBackend",
    "extract_json_object",
]
