"""
Conversation Compaction - LLM-based session summarization.

When a session's working history grows past a budget, it is sent to a
summarization model and the resulting synopsis is stored as the session
summary. The working history is the previous summary plus every message
appended since the last compaction; older messages stay on disk but are
never summarized or counted again. Two triggers exist:

- a soft threshold (default 100k estimated tokens) checked with should_compact()
- a hard near-limit trigger at 95% of the context window (should_auto_compact())

Nothing prevents two compactions of the same session from running
concurrently; the last one to finish wins.
"""

import re
from dataclasses import dataclass
from enum import Enum

import structlog

from ..llm.base import BaseLLM, LLMMessage
from ..models import Message, MessageRole, SessionRecord
from ..session.store import SessionStore
from ..tokens import estimate_messages_tokens, estimate_tokens

logger = structlog.get_logger()

DEFAULT_THRESHOLD_TOKENS = 100_000
CONTEXT_WINDOW_SIZE = 200_000
AUTO_COMPACT_THRESHOLD_RATIO = 0.95

EMPTY_SUMMARY = "No messages to compact."

SUMMARY_PROMPT = """You have been working on the task described above but have not yet completed it. Write a continuation summary that will allow you to resume work efficiently in a future context window. Include:

1. **Task Overview**
   - The user's core request and success criteria
   - Any clarifications or constraints established

2. **Current State**
   - What has been completed so far
   - Files created, modified, or analyzed
   - Key outputs or artifacts produced

3. **Important Discoveries**
   - Technical constraints or requirements uncovered
   - Decisions made and their rationale
   - Errors encountered and resolutions
   - What approaches didn't work (and why)

4. **Next Steps**
   - Specific actions needed to complete the task
   - Any blockers or open questions
   - Priority order if multiple steps remain

5. **Context to Preserve**
   - User preferences or style requirements
   - Domain-specific details
   - Any commitments made to the user

Be comprehensive but concise. Wrap your summary in <summary></summary> tags."""

SUMMARIZER_SYSTEM_PROMPT = "You are a conversation summarizer. Create concise, fact-preserving summaries."

_SUMMARY_TAG = re.compile(r"<summary>(.*?)</summary>", re.DOTALL)

_ROLE_NAMES = {
    MessageRole.USER: "Human",
    MessageRole.ASSISTANT: "Assistant",
    MessageRole.SYSTEM: "System",
}


class CompactTrigger(str, Enum):
    """What caused a compaction."""
    MANUAL = "manual"
    AUTO = "auto"


@dataclass
class CompactionConfig:
    """Configuration for conversation compaction."""

    threshold_tokens: int = DEFAULT_THRESHOLD_TOKENS
    context_window_tokens: int = CONTEXT_WINDOW_SIZE
    auto_compact_ratio: float = AUTO_COMPACT_THRESHOLD_RATIO
    summary_prompt: str | None = None


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    success: bool
    previous_tokens: int
    new_tokens: int
    summary: str
    trigger: CompactTrigger

    @property
    def tokens_saved(self) -> int:
        return max(0, self.previous_tokens - self.new_tokens)


@dataclass
class TokenStats:
    """Token usage of a transcript relative to the compaction limits."""

    total_tokens: int
    threshold: int
    percent_used: float
    should_compact: bool
    should_auto_compact: bool


def format_messages_for_summary(messages: list[Message]) -> str:
    """Render a transcript, listing tool calls compactly under each message."""
    parts = []
    for msg in messages:
        content = f"{_ROLE_NAMES[msg.role]}: {msg.content}"
        if msg.tool_calls:
            content += "\n" + ", ".join(f"[Tool: {tc.tool}]" for tc in msg.tool_calls)
        parts.append(content)
    return "\n\n".join(parts)


def compute_token_stats(total_tokens: int, config: CompactionConfig) -> TokenStats:
    """Place a token count against the compaction limits in ``config``."""
    limit = config.context_window_tokens * config.auto_compact_ratio
    return TokenStats(
        total_tokens=total_tokens,
        threshold=config.threshold_tokens,
        percent_used=total_tokens / config.context_window_tokens * 100,
        should_compact=total_tokens >= config.threshold_tokens,
        should_auto_compact=total_tokens >= limit,
    )


def working_history_tokens(session: SessionRecord) -> int:
    """Estimated tokens of the summary plus the messages it does not cover."""
    return estimate_tokens(session.summary or "") + estimate_messages_tokens(session.uncompacted_messages)


def extract_summary(response: str) -> str:
    """Pull the text between <summary> tags, or fall back to the whole response."""
    match = _SUMMARY_TAG.search(response)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return response.strip()


class CompactionEngine:
    """Decides when history is too large and summarizes it with an LLM."""

    def __init__(
        self,
        llm: BaseLLM,
        session_store: SessionStore,
        config: CompactionConfig | None = None,
    ):
        self.llm = llm
        self.session_store = session_store
        self.config = config or CompactionConfig()

    @property
    def summary_prompt(self) -> str:
        return self.config.summary_prompt or SUMMARY_PROMPT

    def should_compact(self, messages: list[Message]) -> bool:
        """True when the estimated tokens reach the soft threshold."""
        return estimate_messages_tokens(messages) >= self.config.threshold_tokens

    def should_auto_compact(self, current_tokens: int) -> bool:
        """True when usage is at or past the hard near-limit trigger."""
        limit = self.config.context_window_tokens * self.config.auto_compact_ratio
        return current_tokens >= limit

    def token_stats(self, messages: list[Message]) -> TokenStats:
        return compute_token_stats(estimate_messages_tokens(messages), self.config)

    async def _summarize(
        self,
        messages: list[Message],
        instructions: str | None,
        previous_summary: str | None = None,
    ) -> str:
        transcript = format_messages_for_summary(messages)
        if previous_summary:
            transcript = f"Summary of earlier conversation:\n{previous_summary}\n\n{transcript}"
        prompt = (
            f"Here is the conversation history to summarize:\n\n{transcript}\n\n"
            f"{instructions or self.summary_prompt}"
        )

        response = await self.llm.generate(
            messages=[LLMMessage(role="user", content=prompt)],
            system_prompt=SUMMARIZER_SYSTEM_PROMPT,
        )
        return extract_summary(response.content)

    async def compact(
        self,
        session_id: str,
        trigger: CompactTrigger = CompactTrigger.MANUAL,
        instructions: str | None = None,
    ) -> CompactionResult:
        """Fold the messages since the last compaction into the session summary.

        A session with nothing new to summarize keeps its current summary
        and makes no LLM call. Never raises: failures come back as
        ``success=False`` with the error in the summary text.
        """
        session = await self.session_store.get(session_id)

        if session is None:
            logger.info("Compaction skipped, session not found", session_id=session_id)
            return CompactionResult(
                success=True,
                previous_tokens=0,
                new_tokens=0,
                summary=f"Session {session_id} not found.",
                trigger=trigger,
            )

        pending = session.uncompacted_messages
        if not pending:
            summary_tokens = estimate_tokens(session.summary or "")
            return CompactionResult(
                success=True,
                previous_tokens=summary_tokens,
                new_tokens=summary_tokens,
                summary=session.summary or EMPTY_SUMMARY,
                trigger=trigger,
            )

        previous_tokens = working_history_tokens(session)

        logger.info(
            "Starting session compaction",
            session_id=session_id,
            message_count=len(pending),
            estimated_tokens=previous_tokens,
            trigger=trigger.value,
        )

        try:
            summary = await self._summarize(pending, instructions, session.summary)
            stored = await self.session_store.set_summary(
                session_id,
                summary,
                compacted_message_count=len(session.messages),
            )
        except Exception as e:
            logger.error("Compaction failed", session_id=session_id, error=str(e))
            return CompactionResult(
                success=False,
                previous_tokens=previous_tokens,
                new_tokens=previous_tokens,
                summary=f"Compaction failed: {e}",
                trigger=trigger,
            )

        if not stored:
            logger.warning("Session removed during compaction", session_id=session_id)
            return CompactionResult(
                success=False,
                previous_tokens=previous_tokens,
                new_tokens=previous_tokens,
                summary=f"Compaction failed: session {session_id} no longer exists",
                trigger=trigger,
            )

        result = CompactionResult(
            success=True,
            previous_tokens=previous_tokens,
            new_tokens=estimate_tokens(summary),
            summary=summary,
            trigger=trigger,
        )

        logger.info(
            "Compaction complete",
            session_id=session_id,
            previous_tokens=result.previous_tokens,
            new_tokens=result.new_tokens,
        )
        return result

    async def compact_messages(
        self,
        messages: list[Message],
        trigger: CompactTrigger = CompactTrigger.MANUAL,
        instructions: str | None = None,
    ) -> CompactionResult:
        """Summarize an in-memory transcript without touching the session store."""
        if not messages:
            return CompactionResult(
                success=True,
                previous_tokens=0,
                new_tokens=0,
                summary=EMPTY_SUMMARY,
                trigger=trigger,
            )

        previous_tokens = estimate_messages_tokens(messages)

        try:
            summary = await self._summarize(messages, instructions)
        except Exception as e:
            logger.error("Transcript compaction failed", error=str(e))
            return CompactionResult(
                success=False,
                previous_tokens=previous_tokens,
                new_tokens=previous_tokens,
                summary=f"Compaction failed: {e}",
                trigger=trigger,
            )

        return CompactionResult(
            success=True,
            previous_tokens=previous_tokens,
            new_tokens=estimate_tokens(summary),
            summary=summary,
            trigger=trigger,
        )

    async def maybe_compact(self, session_id: str) -> CompactionResult | None:
        """Compact a session automatically if either threshold is crossed."""
        session = await self.session_store.get(session_id)
        if session is None or not session.uncompacted_messages:
            return None

        tokens = working_history_tokens(session)
        if tokens < self.config.threshold_tokens and not self.should_auto_compact(tokens):
            return None

        logger.info("Context approaching limit, running compaction", session_id=session_id, estimated_tokens=tokens)
        return await self.compact(session_id, trigger=CompactTrigger.AUTO)
