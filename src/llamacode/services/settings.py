"""Engine settings, persistence, and wiring helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Callable, Dict, Literal, Mapping, Sequence

from ..ai.adapters.base import AdapterConfig, ToolMode
from ..ai.content_generator import ContentGenerator, create_content_generator
from ..ai.orchestration.approval import ApprovalHandler, ApprovalMode, ApprovalPolicy
from ..ai.orchestration.checkpoints import JsonCheckpointStore
from ..ai.orchestration.history import ConversationHistory
from ..ai.orchestration.loop_detection import LoopDetector
from ..ai.orchestration.processor import LoopDecisionHandler, TurnProcessor
from ..ai.orchestration.scheduler import ToolScheduler
from ..ai.orchestration.tools.executor import ExecutorConfig, ToolExecutor
from ..ai.orchestration.tools.registry import ToolRegistry
from ..ai.orchestration.transcript import TranscriptSink
from ..ai.orchestration.turn import TurnConfig
from ..ai.types import GenerationOptions

__all__ = [
    "EngineSettings",
    "SettingsStore",
    "BackendName",
    "build_adapter_config",
    "build_turn_config",
    "build_content_generator",
    "build_turn_processor",
]

LOGGER = logging.getLogger(__name__)

_SETTINGS_DIR = Path.home() / ".llamacode"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "OLLAMA_BASE_URL": "base_url",
    "LLAMACODE_MODEL": "model",
    "LLAMACODE_BACKEND": "backend",
    "LLAMACODE_API_KEY": "api_key",
    "LLAMACODE_TOOL_MODE": "tool_mode",
    "LLAMACODE_APPROVAL_MODE": "approval_mode",
    "LLAMACODE_FAKE_RESPONSES": "fake_responses",
    "LLAMACODE_CHECKPOINT_DIR": "checkpoint_dir",
    "LLAMACODE_EMBEDDING_MODEL": "embedding_model",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "LLAMACODE_DEBUG_LOGGING": "debug_logging",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "LLAMACODE_TEMPERATURE": "temperature",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "OLLAMA_TIMEOUT": "request_timeout_ms",
    "LLAMACODE_TOKEN_LIMIT": "token_limit",
    "LLAMACODE_MAX_TURNS": "max_session_turns",
}
_TRUE_VALUES = {"1", "true", "yes", "on", "debug"}

BackendName = Literal["ollama", "openai"]


@dataclass(slots=True)
class EngineSettings:
    """User-configurable engine settings.

    ``request_timeout_ms`` follows the ``OLLAMA_TIMEOUT`` convention and is
    expressed in milliseconds; it bounds connecting and the first response
    byte, never a running stream.
    """

    base_url: str = "http://localhost:11434"
    model: str = "llama3.2"
    backend: str = "ollama"
    api_key: str = ""
    request_timeout_ms: int = 60_000
    tool_mode: str = ToolMode.AUTO.value
    approval_mode: str = ApprovalMode.DEFAULT.value
    embedding_model: str = "nomic-embed-text"
    temperature: float | None = None
    max_output_tokens: int | None = None
    think: bool = False
    token_limit: int | None = None
    max_session_turns: int = 25
    tool_timeout: float | None = 120.0
    flush_threshold: int = 2_000
    system_instruction: str | None = None
    fake_responses: str | None = None
    checkpoint_dir: str | None = None
    debug_logging: bool = False
    default_headers: dict[str, str] = field(default_factory=dict)

    @property
    def timeout_seconds(self) -> float | None:
        if self.request_timeout_ms <= 0:
            return None
        return self.request_timeout_ms / 1000.0

    @property
    def resolved_tool_mode(self) -> ToolMode:
        return ToolMode.parse(self.tool_mode)

    @property
    def resolved_approval_mode(self) -> ApprovalMode:
        return ApprovalMode.parse(self.approval_mode)


class SettingsStore:
    """Persistence adapter for :class:`EngineSettings`."""

    def __init__(self, path: Path | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH

    @property
    def path(self) -> Path:
        return self._path

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> EngineSettings:
        """Load settings from disk, then apply CLI and environment overrides."""
        payload = self._read_payload()
        settings = EngineSettings()
        if payload:
            try:
                settings = EngineSettings(**_filter_fields(payload))
            except TypeError as exc:
                LOGGER.warning("Settings payload contained unexpected data: %s", exc)
                settings = EngineSettings()
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: EngineSettings) -> Path:
        """Persist settings with an atomic replace; the API key is never written."""
        payload = asdict(settings)
        payload.pop("api_key", None)
        payload["version"] = _SETTINGS_VERSION
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s", self._path)
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            LOGGER.warning("Unable to read settings from %s: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    def _apply_overrides(
        self,
        settings: EngineSettings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> EngineSettings:
        allowed = {item.name for item in fields(EngineSettings)}
        filtered = {key: value for key, value in overrides.items() if key in allowed and value is not None}
        if filtered:
            LOGGER.debug("Applying %s settings overrides: %s", source, sorted(filtered))
            settings = replace(settings, **filtered)
        return settings

    def _apply_env_overrides(self, settings: EngineSettings) -> EngineSettings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings


def _filter_fields(payload: Mapping[str, Any]) -> Dict[str, Any]:
    allowed = {item.name for item in fields(EngineSettings)}
    return {key: value for key, value in payload.items() if key in allowed}


# -----------------------------------------------------------------------------
# Wiring
# -----------------------------------------------------------------------------


def build_adapter_config(settings: EngineSettings) -> AdapterConfig:
    """Adapter configuration for the selected backend.

    The OpenAI-compatible backend talks to ``{base_url}/v1`` unless the URL
    already ends with a version segment.
    """
    base_url = settings.base_url.rstrip("/")
    if settings.backend.strip().lower() == "openai" and not base_url.endswith("/v1"):
        base_url = f"{base_url}/v1"
    return AdapterConfig(
        base_url=base_url,
        model=settings.model,
        api_key=settings.api_key or None,
        timeout=settings.timeout_seconds,
        tool_mode=settings.resolved_tool_mode,
        embedding_model=settings.embedding_model,
        debug_logging=settings.debug_logging,
        default_headers=dict(settings.default_headers) or None,
    )


def build_turn_config(settings: EngineSettings) -> TurnConfig:
    return TurnConfig(
        model=settings.model,
        system_instruction=settings.system_instruction,
        options=GenerationOptions(
            temperature=settings.temperature,
            max_output_tokens=settings.max_output_tokens,
            think=settings.think,
        ),
        max_iterations=max(1, settings.max_session_turns),
        flush_threshold=settings.flush_threshold,
    )


def build_content_generator(settings: EngineSettings, **adapter_kwargs: Any) -> ContentGenerator:
    backend = settings.backend.strip().lower()
    if backend not in ("ollama", "openai"):
        raise ValueError(f"Unknown backend {settings.backend!r}; expected 'ollama' or 'openai'")
    return create_content_generator(
        build_adapter_config(settings),
        backend=backend,  # type: ignore[arg-type]
        fake_responses=settings.fake_responses,
        token_limit=settings.token_limit,
        **adapter_kwargs,
    )


def build_turn_processor(
    settings: EngineSettings,
    registry: ToolRegistry,
    *,
    generator: ContentGenerator | None = None,
    history: ConversationHistory | None = None,
    transcript: TranscriptSink | None = None,
    approval_handler: ApprovalHandler | None = None,
    loop_decision: LoopDecisionHandler | None = None,
    on_update: Callable[[Sequence[Any]], Any] | None = None,
) -> TurnProcessor:
    """Assemble a processor with its scheduler from ``settings``."""
    history = history if history is not None else ConversationHistory()
    checkpointer = JsonCheckpointStore(settings.checkpoint_dir) if settings.checkpoint_dir else None
    scheduler = ToolScheduler(
        registry,
        executor=ToolExecutor(
            ExecutorConfig(default_timeout=settings.tool_timeout, log_arguments=settings.debug_logging)
        ),
        approval_handler=approval_handler,
        policy=ApprovalPolicy(settings.resolved_approval_mode),
        checkpointer=checkpointer,
        history_provider=lambda: history.messages,
        on_update=on_update,
    )
    return TurnProcessor(
        generator or build_content_generator(settings),
        scheduler,
        config=build_turn_config(settings),
        history=history,
        transcript=transcript,
        loop_detector=LoopDetector(),
        loop_decision=loop_decision,
    )
