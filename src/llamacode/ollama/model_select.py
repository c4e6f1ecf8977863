"""Model defaults and automatic selection of a small local model."""

from __future__ import annotations

import logging

import httpx

from ..ai.errors import BackendError
from .client import DEFAULT_BASE_URL, OllamaModelClient

__all__ = [
    "DEFAULT_MODEL",
    "DEFAULT_FALLBACK_MODEL",
    "DEFAULT_EMBEDDING_MODEL",
    "check_model_health",
    "select_smallest_model",
    "get_effective_model",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_MODEL = "llama3.2"
DEFAULT_FALLBACK_MODEL = "llama3.2"
DEFAULT_EMBEDDING_MODEL = "nomic-embed-text"

_HEALTH_TIMEOUT = 5.0
_SMALL_MODEL_MARKERS = ("lite", "1b", "3b")


async def check_model_health(client: httpx.AsyncClient, base_url: str, model: str) -> bool:
    """Ask ``model`` for a single token and report whether it answered cleanly."""
    try:
        response = await client.post(
            f"{base_url.rstrip('/')}/api/chat",
            json={
                "model": model,
                "messages": [{"role": "user", "content": "test"}],
                "stream": False,
                "options": {"num_predict": 1},
            },
            timeout=_HEALTH_TIMEOUT,
        )
    except httpx.HTTPError as exc:
        LOGGER.debug("Model %s health check failed: %s", model, exc)
        return False
    if not response.is_success:
        return False
    try:
        payload = response.json()
    except ValueError:
        return False
    if isinstance(payload, dict) and "error" in payload:
        LOGGER.debug("Model %s health check failed: %s", model, payload["error"])
        return False
    return True


async def select_smallest_model(
    base_url: str = DEFAULT_BASE_URL,
    *,
    http_client: httpx.AsyncClient | None = None,
) -> str | None:
    """Pick the smallest healthy local model.

    Models are tried smallest first. When none passes the health check the
    smallest is returned anyway; when the server cannot be reached or has no
    models, None is returned.
    """
    http = http_client or httpx.AsyncClient()
    client = OllamaModelClient(base_url, timeout=_HEALTH_TIMEOUT, max_retries=1, client=http)
    try:
        try:
            models = await client.list_models()
        except BackendError as exc:
            LOGGER.warning("Failed to auto-select model from Ollama: %s", exc)
            return None
        if not models:
            return None
        ordered = sorted(models, key=lambda model: model.size)
        for model in ordered:
            LOGGER.debug("Testing model health: %s", model.name)
            if await check_model_health(http, base_url, model.name):
                LOGGER.debug("Auto-selected smallest healthy model: %s (%.2f GB)", model.name, model.size / 1024 ** 3)
                return model.name
            LOGGER.debug("Model %s is not healthy, trying next", model.name)
        LOGGER.warning("No healthy models found, using smallest model %s anyway", ordered[0].name)
        return ordered[0].name
    finally:
        if http_client is None:
            await http.aclose()


def get_effective_model(fallback_mode: bool, requested: str) -> str:
    """Model to use, downgrading to the fallback model in fallback mode.

    Small models (names containing ``lite``, ``1b`` or ``3b``) are honoured
    even in fallback mode.
    """
    if not fallback_mode:
        return requested
    if any(marker in requested for marker in _SMALL_MODEL_MARKERS):
        return requested
    return DEFAULT_FALLBACK_MODEL
