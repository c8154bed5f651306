"""
NLU backends.

Closed set of tiers behind one ``NLUBackend`` protocol: the keyword
classifier, three Ollama-served model tiers and the disabled llama.cpp
tier.
"""

from .base import BACKEND_CATALOG, BackendSpec, ModelInfo, NLUBackend, get_backend_spec
from .classifier import ClassifierBackend
from .model_backend import LlamaCppBackend, OllamaBackend, extract_json_object
from .ollama_client import GenerateResponse, InstalledModel, OllamaClient

__all__ = [
    "BACKEND_CATALOG",
    "BackendSpec",
    "ClassifierBackend",
    "GenerateResponse",
    "InstalledModel",
    "LlamaCppBackend",
    "ModelInfo",
    "NLUBackend",
    "OllamaBackend",
    "OllamaClient",
    "extract_json_object",
    "get_backend_spec",
]
