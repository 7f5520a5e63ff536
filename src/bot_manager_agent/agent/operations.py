"""
Operation Tracker - in-flight agent runs with cooperative cancellation.

A tracked operation is registered when an agent run starts and removed when
it finishes. Cancelling only sets a flag; the run itself checks the flag
between events (TrackedOperation.check_cancelled) and stops on its own.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import AsyncIterator

import structlog

from ..errors import OperationCancelled
from ..ids import generate_id

logger = structlog.get_logger()


class OperationStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Readable progress labels for known tool names
TOOL_STEP_MAP: dict[str, str] = {
    "create_bot": "Creating bot via BotFather",
    "list_bots": "Fetching bot list",
    "get_bot_token": "Retrieving bot token",
    "create_repo": "Creating GitHub repository",
    "clone_repo": "Cloning repository",
    "commit_and_push": "Pushing to GitHub",
    "deploy": "Deploying to Coolify",
    "set_env_vars": "Setting environment variables",
    "get_deployment_status": "Checking deployment status",
    "execute_command": "Running command",
    "build_project": "Building project",
    "run_tests": "Running tests",
    "install_dependencies": "Installing dependencies",
    "lint_project": "Linting code",
    "type_check": "Type checking",
}


def step_name_for_tool(tool_name: str) -> str:
    """Map a tool name, including ``mcp__server__tool`` names, to a step label."""
    short_name = tool_name.split("__")[-1] or tool_name
    return TOOL_STEP_MAP.get(short_name, f"Running {short_name}")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class OperationStep:
    name: str
    status: StepStatus = StepStatus.RUNNING
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    error: str | None = None

    def finish(self, status: StepStatus, error: str | None = None) -> None:
        self.status = status
        self.error = error
        self.completed_at = _now()


@dataclass
class TrackedOperation:
    """A running agent invocation."""
    id: str
    chat_id: int | str
    user_id: str
    prompt: str
    status: OperationStatus = OperationStatus.RUNNING
    cancelled: bool = False
    started_at: datetime = field(default_factory=_now)
    finished_at: datetime | None = None
    steps: list[OperationStep] = field(default_factory=list)

    @property
    def current_step(self) -> OperationStep | None:
        for step in reversed(self.steps):
            if step.status == StepStatus.RUNNING:
                return step
        return None

    @property
    def step_names(self) -> list[str]:
        return [s.name for s in self.steps]

    def check_cancelled(self) -> None:
        """Raise OperationCancelled if cancellation was requested."""
        if self.cancelled:
            raise OperationCancelled(self.id)


class OperationTracker:
    """In-memory registry of running operations."""

    def __init__(self):
        self._operations: dict[str, TrackedOperation] = {}

    def start(self, chat_id: int | str, user_id: str, prompt: str) -> TrackedOperation:
        operation = TrackedOperation(
            id=generate_id("op", suffix_length=7),
            chat_id=chat_id,
            user_id=str(user_id),
            prompt=prompt,
        )
        self._operations[operation.id] = operation
        logger.info("Operation started", operation_id=operation.id, prompt=prompt[:50])
        return operation

    def get(self, operation_id: str) -> TrackedOperation | None:
        return self._operations.get(operation_id)

    def user_operations(self, user_id: str) -> list[TrackedOperation]:
        return [op for op in self._operations.values() if op.user_id == str(user_id)]

    def all(self) -> list[TrackedOperation]:
        return list(self._operations.values())

    def cancel(self, operation_id: str) -> bool:
        """Request cancellation. Returns False if the operation is unknown."""
        operation = self._operations.get(operation_id)
        if operation is None:
            return False

        operation.cancelled = True
        for step in operation.steps:
            if step.status == StepStatus.RUNNING:
                step.finish(StepStatus.FAILED, "Cancelled by user")

        logger.info("Operation cancelled", operation_id=operation_id)
        return True

    def is_cancelled(self, operation_id: str) -> bool:
        operation = self._operations.get(operation_id)
        return operation.cancelled if operation else False

    def cancel_user_operations(self, user_id: str) -> int:
        ids = [op.id for op in self.user_operations(user_id)]
        for operation_id in ids:
            self.cancel(operation_id)
        return len(ids)

    def cancel_all(self) -> int:
        ids = list(self._operations)
        for operation_id in ids:
            self.cancel(operation_id)
        return len(ids)

    def record_step(self, operation_id: str, tool_name: str) -> OperationStep | None:
        """Mark the step for a tool call as running, closing the previous one."""
        operation = self._operations.get(operation_id)
        if operation is None or operation.cancelled:
            return None

        name = step_name_for_tool(tool_name)
        existing = next((s for s in operation.steps if s.name == name), None)

        for step in operation.steps:
            if step is not existing and step.status == StepStatus.RUNNING:
                step.finish(StepStatus.COMPLETED)

        if existing is None:
            existing = OperationStep(name=name)
            operation.steps.append(existing)
        elif existing.status != StepStatus.RUNNING:
            existing.status = StepStatus.RUNNING
            existing.completed_at = None

        return existing

    def complete(self, operation_id: str, success: bool) -> TrackedOperation | None:
        """Remove an operation and return it with its final status.

        A cancelled operation stays cancelled even if it reports success.
        """
        operation = self._operations.pop(operation_id, None)
        if operation is None:
            return None

        if operation.cancelled:
            operation.status = OperationStatus.CANCELLED
        elif success:
            operation.status = OperationStatus.COMPLETED
        else:
            operation.status = OperationStatus.FAILED

        step_status = StepStatus.COMPLETED if operation.status == OperationStatus.COMPLETED else StepStatus.FAILED
        for step in operation.steps:
            if step.status == StepStatus.RUNNING:
                step.finish(step_status)

        operation.finished_at = _now()
        logger.info("Operation finished", operation_id=operation_id, status=operation.status.value)
        return operation

    @asynccontextmanager
    async def track(self, chat_id: int | str, user_id: str, prompt: str) -> AsyncIterator[TrackedOperation]:
        """Register an operation for the duration of a block.

        The operation is completed on every exit path: successfully when the
        block finishes, as failed when it raises.
        """
        operation = self.start(chat_id, user_id, prompt)
        success = False
        try:
            yield operation
            success = True
        finally:
            self.complete(operation.id, success)
