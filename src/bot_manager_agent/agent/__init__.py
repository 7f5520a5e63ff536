"""
Agent module - everything that happens around an agent run.

Includes:
- CompactionEngine: LLM-based session summarization
- ConfirmationGate: Timed approval for dangerous prompts
- OperationTracker: In-flight runs with cooperative cancellation
- TurnOrchestrator: One user turn through the whole core
"""

from .compaction import CompactionConfig, CompactionEngine, CompactionResult, CompactTrigger
from .confirmations import (
    ConfirmationGate,
    ConfirmationNotifier,
    ConfirmationOutcome,
    ConfirmationStatus,
    DangerousOperation,
    LogNotifier,
    PendingConfirmation,
    requires_confirmation,
)
from .events import (
    AgentEvent,
    RunFinished,
    SessionStarted,
    TextDelta,
    ThinkingDelta,
    ToolFinished,
    ToolStarted,
    parse_sdk_message,
)
from .operations import OperationStatus, OperationTracker, TrackedOperation
from .orchestrator import AgentRunner, TurnOrchestrator, TurnResult, TurnStatus

__all__ = [
    "CompactionConfig",
    "CompactionEngine",
    "CompactionResult",
    "CompactTrigger",
    "ConfirmationGate",
    "ConfirmationNotifier",
    "ConfirmationOutcome",
    "ConfirmationStatus",
    "DangerousOperation",
    "LogNotifier",
    "PendingConfirmation",
    "requires_confirmation",
    "AgentEvent",
    "RunFinished",
    "SessionStarted",
    "TextDelta",
    "ThinkingDelta",
    "ToolFinished",
    "ToolStarted",
    "parse_sdk_message",
    "OperationStatus",
    "OperationTracker",
    "TrackedOperation",
    "AgentRunner",
    "TurnOrchestrator",
    "TurnResult",
    "TurnStatus",
]
