"""
Composition root.

Builds every store and service once from Settings and tears them down
together. Nothing in the package keeps module-level state; tests and the
CLI create their own AgentCore.
"""

from dataclasses import dataclass

import structlog

from .agent.compaction import CompactionConfig, CompactionEngine
from .agent.confirmations import ConfirmationGate, ConfirmationNotifier
from .agent.operations import OperationTracker
from .agent.orchestrator import AgentRunner, TurnOrchestrator
from .config import Settings, get_settings
from .llm.base import BaseLLM
from .llm.factory import create_llm
from .memory.context import ContextStore
from .session.store import SessionStore

logger = structlog.get_logger()


@dataclass
class AgentCore:
    """All long-lived components of the conversation-state core."""
    settings: Settings
    sessions: SessionStore
    context: ContextStore
    compaction: CompactionEngine
    confirmations: ConfirmationGate
    operations: OperationTracker

    async def aclose(self) -> None:
        """Cancel running work and drop in-memory state."""
        cancelled = self.operations.cancel_all()
        await self.confirmations.close()
        self.context.invalidate_all_caches()
        self.sessions.invalidate_cache()
        logger.info("Agent core closed", operations_cancelled=cancelled)


def build_session_store(settings: Settings, detect_branch: bool = True) -> SessionStore:
    return SessionStore(
        sessions_dir=settings.sessions_dir,
        index_file=settings.session_index_file,
        detect_branch=detect_branch,
    )


def build_context_store(settings: Settings) -> ContextStore:
    return ContextStore(
        users_dir=settings.context_dir,
        max_messages=settings.context_max_messages,
        max_context_tokens=settings.context_max_tokens,
        cache_ttl=settings.context_cache_ttl_seconds,
        dedup_window=settings.dedup_window_seconds,
    )


def build_compaction_config(settings: Settings) -> CompactionConfig:
    return CompactionConfig(
        threshold_tokens=settings.compaction_threshold_tokens,
        context_window_tokens=settings.context_window_tokens,
        auto_compact_ratio=settings.auto_compact_ratio,
        summary_prompt=settings.compaction_prompt or None,
    )


def build_core(
    settings: Settings | None = None,
    llm: BaseLLM | None = None,
    notifier: ConfirmationNotifier | None = None,
    detect_branch: bool = True,
) -> AgentCore:
    """Create the stores and services described by ``settings``."""
    settings = settings or get_settings()
    sessions = build_session_store(settings, detect_branch=detect_branch)

    compaction = CompactionEngine(
        llm=llm or create_llm(settings=settings),
        session_store=sessions,
        config=build_compaction_config(settings),
    )

    return AgentCore(
        settings=settings,
        sessions=sessions,
        context=build_context_store(settings),
        compaction=compaction,
        confirmations=ConfirmationGate(
            notifier=notifier,
            timeout=settings.confirmation_timeout_seconds,
        ),
        operations=OperationTracker(),
    )


def build_orchestrator(core: AgentCore, runner: AgentRunner) -> TurnOrchestrator:
    return TurnOrchestrator(
        runner=runner,
        sessions=core.sessions,
        context=core.context,
        compaction=core.compaction,
        confirmations=core.confirmations,
        operations=core.operations,
        enable_confirmations=core.settings.enable_confirmations,
        recent_context_messages=core.settings.recent_context_messages,
    )
