"""
Thin async client for the Ollama model-serving runtime.

Only the three calls the assistant needs: model inventory, one-shot
generation and (setup-time) model download.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)

DEFAULT_HOST = "http://localhost:11434"


@dataclass
class InstalledModel:
    """One entry of the runtime inventory."""

    name: str
    size: int = 0
    digest: str | None = None

    @property
    def base_name(self) -> str:
        return self.name.split(":")[0]

    @property
    def size_gb(self) -> float:
        return round(self.size / 1024 / 1024 / 1024, 1)


@dataclass
class GenerateResponse:
    """Result of a non-streaming generate call."""

    response: str
    model: str
    eval_count: int = 0
    total_duration_ns: int = 0


class OllamaClient:
    """
    Async Ollama REST client built on httpx.

    One ``httpx.AsyncClient`` is created lazily and reused; pass
    ``transport`` to route requests elsewhere (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        host: str | None = None,
        timeout_s: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.host = (host or os.environ.get("OLLAMA_HOST") or DEFAULT_HOST).rstrip("/")
        if not self.host.startswith("http"):
            self.host = f"http://{self.host}"
        self.timeout_s = timeout_s
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.host,
                timeout=self.timeout_s,
                transport=self._transport,
            )
        return self._client

    async def list(self) -> list[InstalledModel]:
        """Inventory of installed models."""
        response = await self._get_client().get("/api/tags", timeout=2.0)
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected /api/tags body: {type(data).__name__}")
        return [
            InstalledModel(
                name=entry.get("name", ""),
                size=entry.get("size", 0) or 0,
                digest=entry.get("digest"),
            )
            for entry in data.get("models", [])
        ]

    async def generate(
        self,
        model: str,
        prompt: str,
        options: dict[str, Any] | None = None,
        timeout_s: float | None = None,
    ) -> GenerateResponse:
        """Run one non-streaming completion."""
        payload = {
            "model": model,
            "prompt": prompt,
            "stream": False,
            "options": options or {},
        }
        response = await self._get_client().post(
            "/api/generate",
            json=payload,
            timeout=timeout_s if timeout_s is not None else self.timeout_s,
        )
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected /api/generate body: {type(data).__name__}")
        return GenerateResponse(
            response=str(data.get("response") or ""),
            model=data.get("model", model),
            eval_count=data.get("eval_count", 0) or 0,
            total_duration_ns=data.get("total_duration", 0) or 0,
        )

    async def pull(self, model: str) -> str:
        """Download a model. Setup-time only; can take minutes."""
        logger.info(f"Pulling model {model} from {self.host}")
        response = await self._get_client().post(
            "/api/pull",
            json={"model": model, "stream": False},
            timeout=None,
        )
        response.raise_for_status()
        return response.json().get("status", "")

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
