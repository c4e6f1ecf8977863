"""Tests for the Ollama model management client and model selection."""

from __future__ import annotations

import json
from typing import Any, Callable

import httpx
import pytest

from llamacode.ai.errors import BackendProtocolError, BackendUnreachableError
from llamacode.ollama import (
    DEFAULT_FALLBACK_MODEL,
    OllamaModel,
    OllamaModelClient,
    OllamaPullProgress,
    check_model_health,
    format_bytes,
    format_model_list,
    get_effective_model,
    select_smallest_model,
)

BASE_URL = "http://ollama.test"
GB = 1024 ** 3


def mock_http(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def make_client(handler: Callable[[httpx.Request], httpx.Response], **kwargs: Any) -> OllamaModelClient:
    kwargs.setdefault("retry_min_seconds", 0)
    kwargs.setdefault("retry_max_seconds", 0)
    return OllamaModelClient(BASE_URL, client=mock_http(handler), **kwargs)


TAGS = {
    "models": [
        {"name": "llama3.1:8b", "size": 5 * GB, "digest": "aaa", "details": {"family": "llama"}},
        {"name": "llama3.2:1b", "size": GB, "digest": "bbb"},
    ]
}


# -----------------------------------------------------------------------------
# Tests: client reads
# -----------------------------------------------------------------------------


class TestReads:
    @pytest.mark.asyncio
    async def test_list_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            assert str(request.url) == f"{BASE_URL}/api/tags"
            return httpx.Response(200, json=TAGS)

        models = await make_client(handler).list_models()

        assert [model.name for model in models] == ["llama3.1:8b", "llama3.2:1b"]
        assert models[0].details == {"family": "llama"}
        assert models[1].model == "llama3.2:1b"

    @pytest.mark.asyncio
    async def test_list_running_models(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"models": [{"model": "llama3.2", "size_vram": 10}]})

        running = await make_client(handler).list_running_models()

        assert running[0].name == "llama3.2"
        assert running[0].size_vram == 10

    @pytest.mark.asyncio
    async def test_show_model_posts_name(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert json.loads(request.content) == {"name": "llama3.2"}
            return httpx.Response(200, json={"capabilities": ["completion", "tools"]})

        info = await make_client(handler).show_model("llama3.2")

        assert "tools" in info["capabilities"]

    @pytest.mark.asyncio
    async def test_transport_errors_are_retried(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            if len(attempts) < 3:
                raise httpx.ReadError("reset", request=request)
            return httpx.Response(200, json=TAGS)

        models = await make_client(handler, max_retries=3).list_models()

        assert len(attempts) == 3
        assert len(models) == 2

    @pytest.mark.asyncio
    async def test_connect_failure_after_retries_is_unreachable(self) -> None:
        attempts: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(BackendUnreachableError):
            await make_client(handler, max_retries=2).list_models()

        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_http_error_status(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(404, json={"error": "model 'x' not found"})

        with pytest.raises(BackendProtocolError) as excinfo:
            await make_client(handler).show_model("x")

        assert excinfo.value.status_code == 404

    @pytest.mark.asyncio
    async def test_ping(self) -> None:
        up = make_client(lambda request: httpx.Response(200, json=TAGS))

        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await up.ping() is True
        assert await make_client(refuse).ping() is False


# -----------------------------------------------------------------------------
# Tests: client writes
# -----------------------------------------------------------------------------


class TestWrites:
    @pytest.mark.asyncio
    async def test_pull_reports_progress(self) -> None:
        records = [
            {"status": "pulling manifest"},
            {"status": "downloading", "digest": "sha256:1", "total": 200, "completed": 50},
            {"status": "success"},
        ]

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/pull"
            return httpx.Response(200, content="\n".join(json.dumps(r) for r in records).encode("utf-8"))

        progress: list[OllamaPullProgress] = []
        await make_client(handler).pull_model("llama3.2", progress.append)

        assert [item.status for item in progress] == ["pulling manifest", "downloading", "success"]
        assert progress[1].fraction == 0.25
        assert progress[0].fraction is None

    @pytest.mark.asyncio
    async def test_pull_error_record(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b'{"error": "pull model manifest: file does not exist"}\n')

        with pytest.raises(BackendProtocolError, match="file does not exist"):
            await make_client(handler).pull_model("nope")

    @pytest.mark.asyncio
    async def test_delete_and_copy(self) -> None:
        seen: list[tuple[str, str, Any]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append((request.method, request.url.path, json.loads(request.content)))
            return httpx.Response(200)

        client = make_client(handler)
        await client.delete_model("old")
        await client.copy_model("llama3.2", "my-llama")

        assert seen == [
            ("DELETE", "/api/delete", {"name": "old"}),
            ("POST", "/api/copy", {"source": "llama3.2", "destination": "my-llama"}),
        ]


# -----------------------------------------------------------------------------
# Tests: formatting helpers
# -----------------------------------------------------------------------------


class TestFormatting:
    def test_format_bytes(self) -> None:
        assert format_bytes(0) == "0 B"
        assert format_bytes(512) == "512.0 B"
        assert format_bytes(1536) == "1.5 KB"
        assert format_bytes(3 * GB) == "3.0 GB"

    def test_format_model_list(self) -> None:
        assert format_model_list([]) == "No models found."
        text = format_model_list([OllamaModel(name="llama3.2", size=2 * GB)])
        assert text == "  - llama3.2 (2.00 GB)"


# -----------------------------------------------------------------------------
# Tests: model selection
# -----------------------------------------------------------------------------


class TestModelSelection:
    @pytest.mark.asyncio
    async def test_smallest_healthy_model_wins(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json=TAGS)
            body = json.loads(request.content)
            assert body["stream"] is False
            assert body["options"] == {"num_predict": 1}
            return httpx.Response(200, json={"message": {"content": "ok"}})

        assert await select_smallest_model(BASE_URL, http_client=mock_http(handler)) == "llama3.2:1b"

    @pytest.mark.asyncio
    async def test_unhealthy_small_model_is_skipped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json=TAGS)
            if json.loads(request.content)["model"] == "llama3.2:1b":
                return httpx.Response(200, json={"error": "model failed to load"})
            return httpx.Response(200, json={"message": {"content": "ok"}})

        assert await select_smallest_model(BASE_URL, http_client=mock_http(handler)) == "llama3.1:8b"

    @pytest.mark.asyncio
    async def test_no_healthy_model_falls_back_to_smallest(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/tags":
                return httpx.Response(200, json=TAGS)
            return httpx.Response(500, text="boom")

        assert await select_smallest_model(BASE_URL, http_client=mock_http(handler)) == "llama3.2:1b"

    @pytest.mark.asyncio
    async def test_unreachable_server_selects_nothing(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        assert await select_smallest_model(BASE_URL, http_client=mock_http(handler)) is None

    @pytest.mark.asyncio
    async def test_empty_server_selects_nothing(self) -> None:
        http = mock_http(lambda request: httpx.Response(200, json={"models": []}))

        assert await select_smallest_model(BASE_URL, http_client=http) is None

    @pytest.mark.asyncio
    async def test_health_check_rejects_invalid_json(self) -> None:
        http = mock_http(lambda request: httpx.Response(200, content=b"not json"))

        assert await check_model_health(http, BASE_URL, "llama3.2") is False

    def test_effective_model(self) -> None:
        assert get_effective_model(False, "qwen2.5-coder:32b") == "qwen2.5-coder:32b"
        assert get_effective_model(True, "qwen2.5-coder:32b") == DEFAULT_FALLBACK_MODEL
        assert get_effective_model(True, "llama3.2:1b") == "llama3.2:1b"
        assert get_effective_model(True, "phi-lite") == "phi-lite"
