"""
Unit tests for the Ollama and llama.cpp NLU backends.
"""

import sys
from pathlib import Path
from unittest.mock import AsyncMock

import httpx
import pytest

sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from lab_assist.backends.model_backend import (
    LlamaCppBackend,
    OllamaBackend,
    extract_json_object,
)
from lab_assist.backends.ollama_client import GenerateResponse, InstalledModel, OllamaClient
from lab_assist.interpreter import CommandInterpreter
from lab_assist.types import (
    BackendDisabledError,
    BackendKind,
    BackendParseError,
    BackendUnavailableError,
    Intent,
    TranscriptionResult,
)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def client():
    """Ollama client double with a tinyllama installed."""
    mock = AsyncMock()
    mock.list.return_value = [InstalledModel(name="tinyllama:1.1b", size=637 * 1024**2)]
    return mock


def respond(client, text: str) -> None:
    client.generate.return_value = GenerateResponse(response=text, model="tinyllama:1.1b")


# =============================================================================
# JSON extraction
# =============================================================================


class TestExtractJsonObject:
    """Tests for extract_json_object."""

    def test_plain_object(self):
        """A bare object decodes."""
        assert extract_json_object('{"intent": "move"}') == {"intent": "move"}

    def test_object_wrapped_in_prose(self):
        """Leading and trailing prose is skipped."""
        raw = 'Sure! Here you go: {"intent": "record", "entities": {"rat": 5}} Hope that helps.'

        assert extract_json_object(raw) == {"intent": "record", "entities": {"rat": 5}}

    def test_skips_broken_braces(self):
        """A malformed first brace does not hide a later object."""
        assert extract_json_object('{oops} {"intent": "query"}') == {"intent": "query"}

    def test_no_object(self):
        """Text without an object yields None."""
        assert extract_json_object("I don't know") is None
        assert extract_json_object("[1, 2, 3]") is None


# =============================================================================
# OllamaBackend
# =============================================================================


class TestOllamaBackendConstruction:
    """Tests for OllamaBackend construction."""

    def test_rejects_non_ollama_kind(self, client):
        """Only the three Ollama tiers are accepted."""
        with pytest.raises(ValueError):
            OllamaBackend(BackendKind.CLASSIFICATION, client)

    def test_catalog_defaults(self, client):
        """Model name, token budget and timeout come from the catalog."""
        backend = OllamaBackend(BackendKind.OLLAMA_FULL, client)

        assert backend.model_name == "llama3.2:3b"
        assert backend.max_tokens == 200
        assert backend.timeout_ms == 2000

    def test_full_tier_uses_rich_prompt(self, client):
        """The full tier includes examples; smaller tiers do not."""
        full = OllamaBackend(BackendKind.OLLAMA_FULL, client).build_prompt("stop listening")
        tiny = OllamaBackend(BackendKind.OLLAMA_TINY, client).build_prompt("stop listening")

        assert "Examples:" in full
        assert "Examples:" not in tiny
        assert '"stop listening"' in tiny


class TestOllamaBackendParse:
    """Tests for OllamaBackend.parse."""

    @pytest.mark.asyncio
    async def test_parses_model_json(self, client):
        """Model JSON becomes an NLUResult with the default confidence."""
        respond(client, 'Result: {"intent": "record", "entities": {"rat": 5, "cage": 3, "weight": 280}}')
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        result = await backend.parse("rat 5 cage 3 weight 280 grams")

        assert result.intent == Intent.RECORD
        assert result.entities.rat == 5
        assert result.entities.cage == 3
        assert result.entities.weight == 280.0
        assert result.confidence == 0.9
        assert result.processing_time_ms is not None

    @pytest.mark.asyncio
    async def test_model_confidence_is_kept(self, client):
        """A confidence in the payload overrides the default."""
        respond(client, '{"intent": "move", "entities": {"rat": 7, "cage": 12}, "confidence": 0.75}')
        backend = OllamaBackend(BackendKind.OLLAMA_LIGHT, client)

        result = await backend.parse("move rat 7 to cage 12")

        assert result.confidence == 0.75

    @pytest.mark.asyncio
    async def test_generation_options(self, client):
        """Low temperature, top_p 0.9 and the tier's token budget are sent."""
        respond(client, '{"intent": "system", "entities": {"action": "stop"}}')
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        await backend.parse("stop listening")

        kwargs = client.generate.call_args.kwargs
        assert kwargs["model"] == "tinyllama:1.1b"
        assert kwargs["options"] == {"temperature": 0.1, "top_p": 0.9, "num_predict": 100}
        assert kwargs["timeout_s"] == 1.0

    @pytest.mark.asyncio
    async def test_prose_only_falls_back_to_classifier(self, client):
        """No JSON in the output means the classifier parses the text."""
        respond(client, "I think the user wants to move a rat.")
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        result = await backend.parse("move rat 7 to cage 12")

        assert result.intent == Intent.MOVE
        assert result.entities.rat == 7
        assert result.entities.cage == 12

    @pytest.mark.asyncio
    async def test_invalid_structure_falls_back_to_classifier(self, client):
        """JSON whose entities are not an object is rejected."""
        respond(client, '{"intent": "record", "entities": "oops"}')
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        result = await backend.parse("show rats around 250 grams")

        assert result.intent == Intent.QUERY
        assert result.entities.weight == 250.0

    @pytest.mark.asyncio
    async def test_unknown_intent_label(self, client):
        """An unrecognised intent is a valid UNKNOWN parse."""
        respond(client, '{"intent": "dance", "entities": {}}')
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        result = await backend.parse("do a dance")

        assert result.intent == Intent.UNKNOWN

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [httpx.ConnectError("connection refused"), httpx.ReadTimeout("timed out")],
    )
    async def test_transport_errors_raise(self, client, error):
        """Transport failures and timeouts surface as BackendParseError."""
        client.generate.side_effect = error
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        with pytest.raises(BackendParseError):
            await backend.parse("stop listening")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("raw", ["NaN", "Infinity", '"nan"'])
    async def test_non_finite_confidence(self, client, raw):
        """A NaN or infinite model confidence becomes 0 and forces confirmation."""
        respond(
            client,
            '{"intent": "record", "entities": {"rat": 5, "cage": 3, "weight": 280}, '
            f'"confidence": {raw}}}',
        )
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        result = await backend.parse("rat 5 cage 3 weight 280 grams")
        command = CommandInterpreter().to_command(
            result, TranscriptionResult("rat 5 cage 3 weight 280 grams", 0.95)
        )

        assert result.confidence == 0.0
        assert command.confidence == 0.0
        assert command.needs_confirmation is True

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "reply",
        [
            httpx.Response(200, text="<html>proxy error</html>"),
            httpx.Response(200, json=["not", "an", "object"]),
        ],
    )
    async def test_malformed_runtime_reply_raises(self, reply):
        """A 200 whose body is not a JSON object is a BackendParseError."""
        client = OllamaClient(
            host="http://ollama.test", transport=httpx.MockTransport(lambda request: reply)
        )
        backend = OllamaBackend(BackendKind.OLLAMA_TINY, client)

        with pytest.raises(BackendParseError):
            await backend.parse("stop listening")
        await client.aclose()


class TestOllamaBackendAvailability:
    """Tests for model availability checks."""

    @pytest.mark.asyncio
    async def test_installed_model_is_available(self, client):
        """An exact name match is available."""
        info = await OllamaBackend(BackendKind.OLLAMA_TINY, client).get_model_info()

        assert info.available is True
        assert info.approach == "ai-based"
        assert info.size == "0.6GB"

    @pytest.mark.asyncio
    async def test_base_name_match(self, client):
        """Another tag of the same model family counts."""
        client.list.return_value = [InstalledModel(name="phi3:latest")]

        info = await OllamaBackend(BackendKind.OLLAMA_LIGHT, client).get_model_info()

        assert info.available is True

    @pytest.mark.asyncio
    async def test_missing_model(self, client):
        """A tier whose model is not installed is unavailable."""
        info = await OllamaBackend(BackendKind.OLLAMA_FULL, client).get_model_info()

        assert info.available is False

    @pytest.mark.asyncio
    async def test_unreachable_runtime(self, client):
        """A runtime that cannot be reached means unavailable, not an error."""
        client.list.side_effect = httpx.ConnectError("connection refused")

        info = await OllamaBackend(BackendKind.OLLAMA_TINY, client).get_model_info()

        assert info.available is False

    @pytest.mark.asyncio
    async def test_initialize_raises_with_setup_command(self, client):
        """Initialization of a missing model names the setup command."""
        backend = OllamaBackend(BackendKind.OLLAMA_LIGHT, client)

        with pytest.raises(BackendUnavailableError, match="make quick-light"):
            await backend.initialize()

    @pytest.mark.asyncio
    async def test_ensure_model_without_pull(self, client):
        """Missing models are reported, not downloaded, by default."""
        backend = OllamaBackend(BackendKind.OLLAMA_FULL, client)

        assert await backend.ensure_model() is False
        client.pull.assert_not_called()

    @pytest.mark.asyncio
    async def test_ensure_model_pulls(self, client):
        """With pull=True the model is downloaded and re-checked."""
        client.list.side_effect = [[], [InstalledModel(name="llama3.2:3b")]]
        backend = OllamaBackend(BackendKind.OLLAMA_FULL, client)

        assert await backend.ensure_model(pull=True) is True
        client.pull.assert_awaited_once_with("llama3.2:3b")


# =============================================================================
# LlamaCppBackend
# =============================================================================


class TestLlamaCppBackend:
    """The llama.cpp tier is disabled."""

    @pytest.mark.asyncio
    async def test_initialize_fails_fast(self):
        """Initialization raises the disabled error."""
        with pytest.raises(BackendDisabledError, match="disabled to avoid native crashes"):
            await LlamaCppBackend().initialize()

    @pytest.mark.asyncio
    async def test_parse_fails_fast(self):
        """Parsing raises the same disabled error."""
        with pytest.raises(BackendDisabledError):
            await LlamaCppBackend().parse("stop listening")

    @pytest.mark.asyncio
    async def test_reports_unavailable(self):
        """Model info always says unavailable."""
        info = await LlamaCppBackend().get_model_info()

        assert info.available is False
        assert info.approach == "llama.cpp"
