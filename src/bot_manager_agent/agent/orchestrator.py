"""
Turn Orchestrator - drives one inbound user turn through the core.

    text -> confirmation gate -> operation tracking -> context enrichment
         -> agent runner -> context + session append -> compaction check

The agent loop itself is external: anything implementing AgentRunner can be
plugged in. Callers are expected to handle one turn per user at a time.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Protocol, assert_never

import structlog

from ..errors import AgentRunError, OperationCancelled
from ..memory.context import ContextStore
from ..models import Message, SessionRecord, ToolCallLog
from ..session.store import SessionStore
from .compaction import CompactionEngine, CompactionResult
from .confirmations import ConfirmationGate, ConfirmationOutcome, requires_confirmation
from .events import (
    AgentEvent,
    RunFinished,
    SessionStarted,
    TextDelta,
    ThinkingDelta,
    ToolFinished,
    ToolStarted,
)
from .operations import OperationTracker, TrackedOperation

logger = structlog.get_logger()

CANCELLED_RESPONSE = "🛑 Operation cancelled."


class AgentRunner(Protocol):
    """The external agent loop."""

    def run(self, prompt: str, *, resume_session_id: str | None = None) -> AsyncIterator[AgentEvent]:
        ...


class TurnStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    AWAITING_CONFIRMATION = "awaiting_confirmation"


@dataclass
class TurnResult:
    """Outcome of a single user turn."""
    status: TurnStatus
    response: str | None = None
    session_id: str | None = None
    agent_session_id: str | None = None
    operation_id: str | None = None
    confirmation_id: str | None = None
    tool_calls: list[ToolCallLog] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    compaction: CompactionResult | None = None


def build_enriched_prompt(text: str, recent_context: str, summary: str | None = None) -> str:
    """Prefix the new request with the session summary and recent conversation."""
    sections = []
    if summary:
        sections.append(f"## Session summary:\n{summary}")
    if recent_context:
        sections.append(f"## Previous conversation:\n{recent_context}")
    if not sections:
        return text

    sections.append(f"## New request:\n{text}")
    return "\n\n".join(sections)


class TurnOrchestrator:
    """Glues the stores, the gate and the tracker around an agent runner."""

    def __init__(
        self,
        runner: AgentRunner,
        sessions: SessionStore,
        context: ContextStore,
        compaction: CompactionEngine,
        confirmations: ConfirmationGate,
        operations: OperationTracker,
        enable_confirmations: bool = True,
        recent_context_messages: int = 10,
    ):
        self.runner = runner
        self.sessions = sessions
        self.context = context
        self.compaction = compaction
        self.confirmations = confirmations
        self.operations = operations
        self.enable_confirmations = enable_confirmations
        self.recent_context_messages = recent_context_messages

    async def handle_turn(
        self,
        chat_id: int | str,
        user_id: str,
        text: str,
        skip_confirmation: bool = False,
    ) -> TurnResult:
        """Process one user message end to end. Never raises for agent failures."""
        user_id = str(user_id)

        if self.enable_confirmations and not skip_confirmation:
            operation = requires_confirmation(text)
            if operation is not None:
                confirmation_id = await self.confirmations.create_confirmation(
                    chat_id, user_id, operation, text,
                )
                return TurnResult(
                    status=TurnStatus.AWAITING_CONFIRMATION,
                    confirmation_id=confirmation_id,
                )

        logger.info("Handling turn", user_id=user_id, text=text[:100])

        operation_id = None
        try:
            async with self.operations.track(chat_id, user_id, text) as operation:
                operation_id = operation.id
                return await self._run(operation, user_id, text)
        except OperationCancelled:
            logger.info("Turn cancelled", user_id=user_id, operation_id=operation_id)
            return TurnResult(
                status=TurnStatus.CANCELLED,
                response=CANCELLED_RESPONSE,
                operation_id=operation_id,
            )
        except AgentRunError as e:
            logger.warning("Agent run failed", user_id=user_id, errors=e.errors)
            return TurnResult(
                status=TurnStatus.FAILED,
                response=f"❌ {e}",
                operation_id=operation_id,
                errors=e.errors or [str(e)],
            )
        except Exception as e:
            logger.exception("Error processing turn", user_id=user_id)
            return TurnResult(
                status=TurnStatus.FAILED,
                response=f"❌ Error: {e}",
                operation_id=operation_id,
                errors=[str(e)],
            )

    async def _resolve_session(self, user_id: str) -> SessionRecord:
        """The user's last active session, or a fresh one."""
        session_id = await self.context.get_user_last_session_id(user_id)
        if session_id:
            session = await self.sessions.get(session_id)
            if session is not None:
                return session
            logger.info("Last session missing, starting a new one", user_id=user_id, session_id=session_id)

        metadata = await self.sessions.create(user_id=user_id)
        await self.context.save_user_session(user_id, metadata.session_id)
        return SessionRecord(metadata=metadata)

    async def _run(self, operation: TrackedOperation, user_id: str, text: str) -> TurnResult:
        await self.context.append(user_id, Message.user(text))

        session = await self._resolve_session(user_id)
        session_id = session.session_id
        resume_id = session_id if session.messages else None

        recent = await self.context.get_recent_context(user_id, self.recent_context_messages)
        prompt = build_enriched_prompt(text, recent, session.summary)

        await self.sessions.append_message(session_id, Message.user(text))

        tool_calls: list[ToolCallLog] = []
        agent_session_id = None
        finished: RunFinished | None = None

        events = self.runner.run(prompt, resume_session_id=resume_id)
        try:
            async for event in events:
                operation.check_cancelled()

                match event:
                    case SessionStarted(session_id=sid):
                        agent_session_id = sid
                    case ToolStarted(name=name, input=tool_input):
                        tool_calls.append(ToolCallLog(tool=name, input=tool_input))
                        self.operations.record_step(operation.id, name)
                    case ToolFinished(content=content):
                        _attach_tool_result(tool_calls, content)
                    case RunFinished():
                        finished = event
                    case TextDelta() | ThinkingDelta():
                        pass
                    case _:
                        assert_never(event)
        finally:
            aclose = getattr(events, "aclose", None)
            if aclose is not None:
                await aclose()

        operation.check_cancelled()

        if finished is None:
            raise AgentRunError(["Agent run ended without a result"])
        if finished.session_id:
            agent_session_id = finished.session_id
        if not finished.success or not finished.result:
            raise AgentRunError(list(finished.errors))

        response = finished.result
        await self.context.append(user_id, Message.assistant(response))
        await self.sessions.append_message(
            session_id,
            Message.assistant(response, tool_calls=tool_calls or None),
        )
        await self.sessions.record_usage(
            session_id,
            input_tokens=finished.input_tokens,
            output_tokens=finished.output_tokens,
            cost_usd=finished.cost_usd,
        )
        await self.context.save_user_session(user_id, session_id)

        compaction = await self.compaction.maybe_compact(session_id)

        return TurnResult(
            status=TurnStatus.COMPLETED,
            response=response,
            session_id=session_id,
            agent_session_id=agent_session_id,
            operation_id=operation.id,
            tool_calls=tool_calls,
            compaction=compaction,
        )

    async def resolve_confirmation(
        self,
        confirmation_id: str,
        user_id: str,
        approve: bool,
    ) -> tuple[ConfirmationOutcome, TurnResult | None]:
        """Apply a confirm/cancel press; run the held prompt if it was approved."""
        outcome = await self.confirmations.process_confirmation(confirmation_id, approve, user_id)
        if not outcome.confirmed or outcome.prompt is None:
            return outcome, None

        result = await self.handle_turn(
            outcome.chat_id,
            user_id,
            outcome.prompt,
            skip_confirmation=True,
        )
        return outcome, result

    def cancel_operation(self, operation_id: str) -> bool:
        return self.operations.cancel(operation_id)

    async def reset_user(self, user_id: str) -> None:
        """Drop a user's pending confirmations, running operations and context."""
        user_id = str(user_id)
        confirmations = self.confirmations.clear_user_confirmations(user_id)
        operations = self.operations.cancel_user_operations(user_id)
        await self.context.clear_all(user_id)
        logger.info(
            "User reset",
            user_id=user_id,
            confirmations_cleared=confirmations,
            operations_cancelled=operations,
        )

    async def compact_user_session(self, user_id: str) -> CompactionResult | None:
        """Compact the user's last active session, if they have one."""
        session_id = await self.context.get_user_last_session_id(str(user_id))
        if session_id is None:
            return None
        return await self.compaction.compact(session_id)


def _attach_tool_result(tool_calls: list[ToolCallLog], content: str) -> None:
    # Results arrive in order; fill the oldest call still waiting for one
    for i, call in enumerate(tool_calls):
        if not call.result:
            tool_calls[i] = call.model_copy(update={"result": content})
            return
