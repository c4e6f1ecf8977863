"""Service layer helpers (settings and wiring)."""

from .settings import (
    EngineSettings,
    SettingsStore,
    build_adapter_config,
    build_content_generator,
    build_turn_config,
    build_turn_processor,
)

__all__ = [
    "EngineSettings",
    "SettingsStore",
    "build_adapter_config",
    "build_content_generator",
    "build_turn_config",
    "build_turn_processor",
]
