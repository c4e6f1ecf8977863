"""Model management client for a local Ollama server."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..ai.errors import BackendProtocolError, BackendUnreachableError

__all__ = [
    "DEFAULT_BASE_URL",
    "OllamaModel",
    "OllamaRunningModel",
    "OllamaPullProgress",
    "OllamaModelClient",
    "format_bytes",
    "format_model_list",
]

LOGGER = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:11434"
_PING_TIMEOUT = 5.0

ProgressCallback = Callable[["OllamaPullProgress"], Any]


@dataclass(slots=True, frozen=True)
class OllamaModel:
    """A locally available model as reported by ``/api/tags``."""

    name: str
    model: str = ""
    size: int = 0
    digest: str = ""
    modified_at: str = ""
    details: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> OllamaModel:
        name = str(payload.get("name") or payload.get("model") or "")
        return cls(
            name=name,
            model=str(payload.get("model") or name),
            size=int(payload.get("size") or 0),
            digest=str(payload.get("digest") or ""),
            modified_at=str(payload.get("modified_at") or ""),
            details=dict(payload.get("details") or {}),
        )


@dataclass(slots=True, frozen=True)
class OllamaRunningModel:
    """A model currently loaded in memory (``/api/ps``)."""

    name: str
    model: str = ""
    size: int = 0
    size_vram: int = 0
    digest: str = ""
    expires_at: str = ""

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> OllamaRunningModel:
        name = str(payload.get("name") or payload.get("model") or "")
        return cls(
            name=name,
            model=str(payload.get("model") or name),
            size=int(payload.get("size") or 0),
            size_vram=int(payload.get("size_vram") or 0),
            digest=str(payload.get("digest") or ""),
            expires_at=str(payload.get("expires_at") or ""),
        )


@dataclass(slots=True, frozen=True)
class OllamaPullProgress:
    status: str
    digest: str | None = None
    total: int | None = None
    completed: int | None = None

    @property
    def fraction(self) -> float | None:
        if not self.total or self.completed is None:
            return None
        return min(1.0, self.completed / self.total)


class OllamaModelClient:
    """List, inspect, pull, copy, and delete models on an Ollama server.

    Reads (``list_models``, ``list_running_models``, ``show_model``) are
    idempotent and retried on transport failures; writes are sent once.

    Args:
        base_url: Server root, e.g. ``http://localhost:11434``.
        timeout: Request timeout in seconds.
        max_retries: Attempts for idempotent reads.
        client: Optional preconfigured ``httpx.AsyncClient`` (tests pass one
            with a mock transport).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        *,
        timeout: float = 30.0,
        max_retries: int = 3,
        retry_min_seconds: float = 0.5,
        retry_max_seconds: float = 4.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._max_retries = max(1, max_retries)
        self._retry_min_seconds = retry_min_seconds
        self._retry_max_seconds = retry_max_seconds
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))
        self._owns_client = client is None

    @property
    def base_url(self) -> str:
        return self._base_url

    async def __aenter__(self) -> OllamaModelClient:
        return self

    async def __aexit__(self, *_exc: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def list_models(self) -> List[OllamaModel]:
        payload = await self._read("GET", "/api/tags")
        return [OllamaModel.from_payload(item) for item in payload.get("models") or []]

    async def list_running_models(self) -> List[OllamaRunningModel]:
        payload = await self._read("GET", "/api/ps")
        return [OllamaRunningModel.from_payload(item) for item in payload.get("models") or []]

    async def show_model(self, name: str) -> Dict[str, Any]:
        return await self._read("POST", "/api/show", {"name": name})

    async def ping(self) -> bool:
        """Return True when the server answers ``/api/tags``."""
        try:
            response = await self._client.get(self._url("/api/tags"), timeout=_PING_TIMEOUT)
        except httpx.HTTPError as exc:
            LOGGER.debug("Ollama ping to %s failed: %s", self._base_url, exc)
            return False
        return response.is_success

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    async def pull_model(self, name: str, on_progress: ProgressCallback | None = None) -> None:
        """Pull ``name`` from the registry, reporting NDJSON progress records."""
        request = self._client.build_request("POST", self._url("/api/pull"), json={"name": name})
        try:
            response = await self._client.send(request, stream=True)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise BackendUnreachableError(self._base_url, exc) from exc
        try:
            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise BackendProtocolError(f"Failed to pull model: {body}", status_code=response.status_code, body=body)
            async for line in response.aiter_lines():
                if not line.strip():
                    continue
                try:
                    record = json.loads(line)
                except json.JSONDecodeError:
                    LOGGER.debug("Skipping undecodable pull progress line: %s", line)
                    continue
                if "error" in record:
                    raise BackendProtocolError(f"Failed to pull model: {record['error']}")
                if on_progress is not None:
                    on_progress(
                        OllamaPullProgress(
                            status=str(record.get("status") or ""),
                            digest=record.get("digest"),
                            total=record.get("total"),
                            completed=record.get("completed"),
                        )
                    )
        finally:
            await response.aclose()
        LOGGER.info("Pulled model %s", name)

    async def delete_model(self, name: str) -> None:
        await self._send("DELETE", "/api/delete", {"name": name})
        LOGGER.info("Deleted model %s", name)

    async def copy_model(self, source: str, destination: str) -> None:
        await self._send("POST", "/api/copy", {"source": source, "destination": destination})
        LOGGER.info("Copied model %s -> %s", source, destination)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _url(self, path: str) -> str:
        return f"{self._base_url}{path}"

    def _retrying(self) -> AsyncRetrying:
        return AsyncRetrying(
            reraise=True,
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=self._retry_min_seconds, max=self._retry_max_seconds),
            retry=retry_if_exception_type((httpx.TransportError,)),
        )

    async def _read(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        try:
            async for attempt in self._retrying():
                with attempt:
                    response = await self._client.request(method, self._url(path), json=body)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise BackendUnreachableError(self._base_url, exc) from exc
        except httpx.TransportError as exc:
            raise BackendProtocolError(f"Ollama request {path} failed: {exc}") from exc
        return self._decode(path, response)

    async def _send(self, method: str, path: str, body: Mapping[str, Any] | None = None) -> Dict[str, Any]:
        try:
            response = await self._client.request(method, self._url(path), json=body)
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            raise BackendUnreachableError(self._base_url, exc) from exc
        except httpx.TransportError as exc:
            raise BackendProtocolError(f"Ollama request {path} failed: {exc}") from exc
        return self._decode(path, response)

    def _decode(self, path: str, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code >= 400:
            raise BackendProtocolError(
                f"Ollama API error on {path}: {response.text}",
                status_code=response.status_code,
                body=response.text,
            )
        if not response.content:
            return {}
        try:
            payload = response.json()
        except ValueError as exc:
            raise BackendProtocolError(f"Ollama API returned invalid JSON on {path}", body=response.text) from exc
        return payload if isinstance(payload, dict) else {"result": payload}


def format_bytes(size: int | float) -> str:
    """Human readable size using binary units, e.g. ``1.5 GB``."""
    if size <= 0:
        return "0 B"
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.1f} {units[index]}"


def format_model_list(models: Sequence[OllamaModel]) -> str:
    if not models:
        return "No models found."
    return "\n".join(f"  - {model.name} ({model.size / 1024 ** 3:.2f} GB)" for model in models)
