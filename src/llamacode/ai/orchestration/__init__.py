"""Turn orchestration: processor, scheduler, approval, and loop detection."""

# Turn model
from .turn import (
    LoopDecision,
    Turn,
    TurnConfig,
    TurnOutcome,
    TurnResult,
    TurnState,
    new_prompt_id,
)
from .history import ConversationHistory

# Tool calls
from .approval import (
    ApprovalHandler,
    ApprovalMode,
    ApprovalPolicy,
    ToolConfirmationOutcome,
)
from .checkpoints import Checkpointer, CheckpointRecord, JsonCheckpointStore
from .scheduler import (
    BatchResult,
    ToolCallResult,
    ToolCallSnapshot,
    ToolCallState,
    ToolScheduler,
    TrackedToolCall,
)

# Presentation
from .transcript import (
    RecordingTranscript,
    StreamingTextBuffer,
    TranscriptItem,
    TranscriptKind,
    TranscriptSink,
    find_last_safe_split_point,
    finish_reason_message,
)

from .loop_detection import LoopDetector
from .processor import LoopDecisionHandler, TurnProcessor

__all__ = [
    # turn.py
    "LoopDecision",
    "Turn",
    "TurnConfig",
    "TurnOutcome",
    "TurnResult",
    "TurnState",
    "new_prompt_id",
    # history.py
    "ConversationHistory",
    # approval.py
    "ApprovalHandler",
    "ApprovalMode",
    "ApprovalPolicy",
    "ToolConfirmationOutcome",
    # checkpoints.py
    "Checkpointer",
    "CheckpointRecord",
    "JsonCheckpointStore",
    # scheduler.py
    "BatchResult",
    "ToolCallResult",
    "ToolCallSnapshot",
    "ToolCallState",
    "ToolScheduler",
    "TrackedToolCall",
    # transcript.py
    "RecordingTranscript",
    "StreamingTextBuffer",
    "TranscriptItem",
    "TranscriptKind",
    "TranscriptSink",
    "find_last_safe_split_point",
    "finish_reason_message",
    # loop_detection.py
    "LoopDetector",
    # processor.py
    "LoopDecisionHandler",
    "TurnProcessor",
]
