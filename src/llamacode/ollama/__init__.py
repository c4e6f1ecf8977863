"""Ollama model management helpers."""

from .client import (
    DEFAULT_BASE_URL,
    OllamaModel,
    OllamaModelClient,
    OllamaPullProgress,
    OllamaRunningModel,
    format_bytes,
    format_model_list,
)
from .model_select import (
    DEFAULT_EMBEDDING_MODEL,
    DEFAULT_FALLBACK_MODEL,
    DEFAULT_MODEL,
    check_model_health,
    get_effective_model,
    select_smallest_model,
)

__all__ = [
    "DEFAULT_BASE_URL",
    "OllamaModel",
    "OllamaModelClient",
    "OllamaPullProgress",
    "OllamaRunningModel",
    "format_bytes",
    "format_model_list",
    "DEFAULT_EMBEDDING_MODEL",
    "DEFAULT_FALLBACK_MODEL",
    "DEFAULT_MODEL",
    "check_model_health",
    "get_effective_model",
    "select_smallest_model",
]
