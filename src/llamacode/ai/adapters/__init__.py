"""Backend adapters translating model APIs into canonical stream events."""

from .base import AdapterConfig, BackendAdapter, CapabilityCache, ToolMode, new_call_id
from .fake import FakeAdapter
from .ollama import OllamaAdapter
from .openai_compatible import OpenAICompatibleAdapter

__all__ = [
    "AdapterConfig",
    "BackendAdapter",
    "CapabilityCache",
    "ToolMode",
    "new_call_id",
    "FakeAdapter",
    "OllamaAdapter",
    "OpenAICompatibleAdapter",
]
