"""
Pytest configuration and fixtures for Lab Assist tests.
"""

import pytest
import sys
from pathlib import Path

# Add project root to path so we can import the lab_assist package
sys.path.insert(0, str(Path(__file__).parent.parent))

from lab_assist.backends.classifier import ClassifierBackend
from lab_assist.config import AIConfig, AppConfig, DatabaseConfig
from lab_assist.storage import LabStore
from lab_assist.types import TranscriptionResult


@pytest.fixture
def store():
    """Provide an in-memory store, closed after the test."""
    lab_store = LabStore(":memory:")
    yield lab_store
    lab_store.close()


@pytest.fixture
def classifier():
    """Provide a keyword classifier backend."""
    return ClassifierBackend()


@pytest.fixture
def classifier_ai_config():
    """AI config that only ever uses the classifier and never benchmarks."""
    return AIConfig(
        preferred_backend="classification",
        enable_benchmarking=False,
        fallback_order=["classification"],
    )


@pytest.fixture
def app_config(classifier_ai_config):
    """Full config around the classifier-only AI settings."""
    return AppConfig(
        ai=classifier_ai_config,
        database=DatabaseConfig(path=":memory:"),
    )


@pytest.fixture
def make_transcription():
    """Build a transcription with a default speech confidence of 0.95."""

    def _make(text: str, confidence: float = 0.95) -> TranscriptionResult:
        return TranscriptionResult(text=text, confidence=confidence)

    return _make


# Markers
def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "hypothesis: property-based tests"
    )
    config.addinivalue_line(
        "markers", "slow: tests that take >1s"
    )
