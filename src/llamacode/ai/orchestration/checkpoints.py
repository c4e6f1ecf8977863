"""Checkpoints taken before edit tools run.

Before an edit-class call that needed approval executes, the scheduler
offers the conversation state and target file to a :class:`Checkpointer`.
Checkpointing is best effort: a failing checkpointer is logged and the call
proceeds.
"""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Protocol, Sequence, runtime_checkable

from ..events import ToolCallRequest
from ..types import Message

__all__ = [
    "Checkpointer",
    "CheckpointRecord",
    "JsonCheckpointStore",
    "SnapshotProvider",
]

LOGGER = logging.getLogger(__name__)

# Returns an identifier for the working tree state (for example a commit hash).
SnapshotProvider = Callable[[], "str | None | Awaitable[str | None]"]


@runtime_checkable
class Checkpointer(Protocol):
    async def create_checkpoint(
        self,
        history: Sequence[Message],
        request: ToolCallRequest,
        file_path: str,
    ) -> Any:
        ...


@dataclass(slots=True, frozen=True)
class CheckpointRecord:
    """Serialized content of one checkpoint file."""

    timestamp: str
    file_path: str
    tool_call: dict[str, Any]
    history: list[dict[str, Any]] = field(default_factory=list)
    snapshot_id: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "filePath": self.file_path,
            "toolCall": self.tool_call,
            "history": self.history,
            "snapshotId": self.snapshot_id,
        }


class JsonCheckpointStore:
    """Writes one JSON file per checkpoint into ``directory``.

    Files are named ``{timestamp}-{file name}-{tool name}.json``.
    """

    def __init__(self, directory: Path | str, *, snapshot_provider: SnapshotProvider | None = None) -> None:
        self._directory = Path(directory).expanduser()
        self._snapshot_provider = snapshot_provider

    @property
    def directory(self) -> Path:
        return self._directory

    async def create_checkpoint(
        self,
        history: Sequence[Message],
        request: ToolCallRequest,
        file_path: str,
    ) -> Path:
        now = datetime.now(timezone.utc)
        record = CheckpointRecord(
            timestamp=now.isoformat(),
            file_path=file_path,
            tool_call={"name": request.name, "args": dict(request.args), "callId": request.call_id},
            history=[asdict(message) for message in history],
            snapshot_id=await self._snapshot_id(),
        )
        self._directory.mkdir(parents=True, exist_ok=True)
        stamp = now.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        target = self._directory / f"{stamp}-{Path(file_path).name or 'file'}-{request.name}.json"
        target.write_text(json.dumps(record.to_dict(), ensure_ascii=False, indent=2, default=str), encoding="utf-8")
        LOGGER.debug("Wrote checkpoint %s", target)
        return target

    def list_checkpoints(self) -> list[Path]:
        if not self._directory.exists():
            return []
        return sorted(self._directory.glob("*.json"))

    def load(self, path: Path | str) -> dict[str, Any]:
        return json.loads(Path(path).read_text(encoding="utf-8"))

    async def _snapshot_id(self) -> str | None:
        if self._snapshot_provider is None:
            return None
        result = self._snapshot_provider()
        if inspect.isawaitable(result):
            result = await result
        return result  # type: ignore[return-value]
