"""Tests for checkpoint persistence."""

from __future__ import annotations

from pathlib import Path

import pytest

from llamacode.ai.events import ToolCallRequest
from llamacode.ai.orchestration.checkpoints import Checkpointer, JsonCheckpointStore
from llamacode.ai.types import FunctionCallPart, Message


@pytest.mark.asyncio
async def test_checkpoint_file_contents(tmp_path: Path) -> None:
    store = JsonCheckpointStore(tmp_path / "checkpoints")
    history = [Message.user("fix it"), Message.assistant("", [FunctionCallPart("write_file", {"file_path": "src/app.py"}, "c1")])]
    request = ToolCallRequest(call_id="c1", name="write_file", args={"file_path": "src/app.py", "content": "x"})

    path = await store.create_checkpoint(history, request, "src/app.py")

    assert path.parent == tmp_path / "checkpoints"
    assert path.name.endswith("-app.py-write_file.json")
    record = store.load(path)
    assert record["filePath"] == "src/app.py"
    assert record["toolCall"] == {"name": "write_file", "args": {"file_path": "src/app.py", "content": "x"}, "callId": "c1"}
    assert [message["role"] for message in record["history"]] == ["user", "assistant"]
    assert record["snapshotId"] is None
    assert store.list_checkpoints() == [path]


@pytest.mark.asyncio
async def test_snapshot_provider_may_be_async(tmp_path: Path) -> None:
    async def snapshot() -> str:
        return "abc123"

    store = JsonCheckpointStore(tmp_path, snapshot_provider=snapshot)
    path = await store.create_checkpoint([], ToolCallRequest("c1", "replace", {}), "notes.md")

    assert store.load(path)["snapshotId"] == "abc123"


@pytest.mark.asyncio
async def test_sync_snapshot_provider(tmp_path: Path) -> None:
    store = JsonCheckpointStore(tmp_path, snapshot_provider=lambda: "deadbeef")
    path = await store.create_checkpoint([], ToolCallRequest("c1", "replace", {}), "notes.md")

    assert store.load(path)["snapshotId"] == "deadbeef"


def test_missing_directory_lists_nothing(tmp_path: Path) -> None:
    store = JsonCheckpointStore(tmp_path / "absent")

    assert store.list_checkpoints() == []
    assert isinstance(store, Checkpointer)
