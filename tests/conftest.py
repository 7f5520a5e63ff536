"""
Shared fixtures: stores rooted in a temporary directory and fake collaborators.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from bot_manager_agent.agent.compaction import CompactionEngine
from bot_manager_agent.agent.events import RunFinished, SessionStarted, TextDelta, ToolFinished, ToolStarted
from bot_manager_agent.config import Settings
from bot_manager_agent.llm.base import LLMResponse
from bot_manager_agent.memory.context import ContextStore
from bot_manager_agent.session.store import SessionStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTimerHandle:
    def __init__(self, when, callback, args):
        self.when = when
        self.callback = callback
        self.args = args
        self._cancelled = False

    def cancel(self):
        self._cancelled = True

    def cancelled(self):
        return self._cancelled


class FakeTimers:
    """Stand-in for ``loop.call_later`` that fires only when advanced."""

    def __init__(self):
        self.now = 0.0
        self.handles: list[FakeTimerHandle] = []

    def call_later(self, delay, callback, *args):
        handle = FakeTimerHandle(self.now + delay, callback, args)
        self.handles.append(handle)
        return handle

    def advance(self, seconds: float) -> None:
        self.now += seconds
        due = [h for h in self.handles if h.when <= self.now and not h.cancelled()]
        self.handles = [h for h in self.handles if h not in due and not h.cancelled()]
        for handle in due:
            handle.callback(*handle.args)


class FakeRunner:
    """Agent runner that replays a fixed list of events."""

    def __init__(self, events=None):
        self.events = events if events is not None else default_run_events()
        self.prompts: list[str] = []
        self.resume_ids: list[str | None] = []
        self.on_event = None

    async def run(self, prompt, *, resume_session_id=None):
        self.prompts.append(prompt)
        self.resume_ids.append(resume_session_id)
        for event in self.events:
            if self.on_event is not None:
                self.on_event(event)
            yield event


def default_run_events():
    return [
        SessionStarted(session_id="sdk-1"),
        TextDelta(text="Working on it"),
        ToolStarted(name="mcp__bot-manager__list_bots", input={}),
        ToolFinished(content='["@demo_bot"]'),
        RunFinished(
            success=True,
            result="You have one bot: @demo_bot",
            session_id="sdk-1",
            input_tokens=120,
            output_tokens=30,
            cost_usd=0.002,
        ),
    ]


def make_llm(content: str = "<summary>ok</summary>") -> MagicMock:
    llm = MagicMock()
    llm.generate = AsyncMock(return_value=LLMResponse(content=content, model="stub"))
    return llm


@pytest.fixture
def settings(tmp_path):
    return Settings(_env_file=None, data_dir=tmp_path / "data")


@pytest.fixture
def session_store(settings):
    return SessionStore(settings.sessions_dir, settings.session_index_file, detect_branch=False)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def context_store(settings, clock):
    return ContextStore(settings.context_dir, clock=clock)


@pytest.fixture
def llm():
    return make_llm()


@pytest.fixture
def compaction(llm, session_store):
    return CompactionEngine(llm=llm, session_store=session_store)


@pytest.fixture
def timers():
    return FakeTimers()


@pytest.fixture
def notifier():
    fake = MagicMock()
    fake.send_confirmation = AsyncMock(return_value="42")
    fake.update_confirmation = AsyncMock(return_value=None)
    return fake
