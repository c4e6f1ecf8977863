"""Token estimation helpers.

None of the supported backends expose a token counting endpoint, so counts
are estimated from the serialized request size. Estimates are a budget guide,
never ground truth.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import asdict, is_dataclass
from typing import Any, Dict, Protocol, runtime_checkable

from .types import GenerationRequest

__all__ = [
    "TokenCounterProtocol",
    "ApproxByteCounter",
    "TokenCounterRegistry",
    "serialize_request",
    "estimate_request_tokens",
]

LOGGER = logging.getLogger(__name__)
_DEFAULT_BYTES_PER_TOKEN = 4


@runtime_checkable
class TokenCounterProtocol(Protocol):
    """Minimal interface implemented by token counters."""

    def count(self, text: str) -> int:
        ...

    def estimate(self, text: str) -> int:
        ...


class ApproxByteCounter:
    """Deterministic counter that estimates tokens via byte length."""

    def __init__(self, *, model_name: str | None = None, charset: str = "utf-8", bytes_per_token: int = _DEFAULT_BYTES_PER_TOKEN) -> None:
        self.model_name = model_name
        self._charset = charset
        self._bytes_per_token = max(1, int(bytes_per_token))

    def count(self, text: str) -> int:
        return self.estimate(text)

    def estimate(self, text: str) -> int:
        if not text:
            return 0
        data = text.encode(self._charset, errors="ignore")
        return max(1, math.ceil(len(data) / self._bytes_per_token))


class TokenCounterRegistry:
    """Registry maintaining token counter implementations per model."""

    _shared: TokenCounterRegistry | None = None

    def __init__(self, *, fallback: TokenCounterProtocol | None = None) -> None:
        self._fallback = fallback or ApproxByteCounter()
        self._counters: Dict[str, TokenCounterProtocol] = {}

    @classmethod
    def global_instance(cls) -> "TokenCounterRegistry":
        if cls._shared is None:
            cls._shared = TokenCounterRegistry()
        return cls._shared

    def register(self, model_name: str, counter: TokenCounterProtocol) -> None:
        key = self._normalize_key(model_name)
        if not key:
            raise ValueError("model_name is required for token counter registration")
        self._counters[key] = counter

    def unregister(self, model_name: str) -> None:
        self._counters.pop(self._normalize_key(model_name), None)

    def has(self, model_name: str | None) -> bool:
        key = self._normalize_key(model_name)
        return bool(key and key in self._counters)

    def get(self, model_name: str | None = None) -> TokenCounterProtocol:
        key = self._normalize_key(model_name)
        if key and key in self._counters:
            return self._counters[key]
        return self._fallback

    def count(self, model_name: str | None, text: str) -> int:
        return self.get(model_name).count(text)

    def estimate(self, text: str) -> int:
        return self._fallback.estimate(text)

    @staticmethod
    def _normalize_key(model_name: str | None) -> str:
        return (model_name or "").strip().lower()


def _jsonable(value: Any) -> Any:
    if is_dataclass(value) and not isinstance(value, type):
        return asdict(value)
    return str(value)


def serialize_request(request: GenerationRequest) -> str:
    """Serialize a request to JSON the same way for every backend."""
    return json.dumps(asdict(request), ensure_ascii=False, default=_jsonable)


def estimate_request_tokens(
    request: GenerationRequest,
    *,
    registry: TokenCounterRegistry | None = None,
) -> int:
    """Estimate the token cost of ``request`` from its serialized payload."""
    counter_registry = registry or TokenCounterRegistry.global_instance()
    payload = serialize_request(request)
    estimate = counter_registry.count(request.model, payload)
    LOGGER.debug("Estimated %s token(s) for %s-byte request", estimate, len(payload))
    return estimate
