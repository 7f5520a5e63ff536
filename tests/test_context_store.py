"""
Tests for per-user context memory.
"""

import json
from datetime import timedelta

import pytest

from bot_manager_agent.memory.context import ContextStore, format_transcript
from bot_manager_agent.models import Message


def at(base: Message, seconds: float, content: str | None = None) -> Message:
    """A copy of ``base`` shifted in time, optionally with new content."""
    update = {"timestamp": base.timestamp + timedelta(seconds=seconds)}
    if content is not None:
        update["content"] = content
    return base.model_copy(update=update)


@pytest.mark.asyncio
async def test_load_missing_user(context_store):
    assert await context_store.load("nobody") == []


@pytest.mark.asyncio
async def test_append_and_persist(context_store, settings):
    """Test appended messages are written to the user's file."""
    assert await context_store.append("u1", Message.user("hello")) is True
    assert await context_store.append("u1", Message.assistant("hi there")) is True

    raw = json.loads((settings.context_dir / "u1.json").read_text())
    assert [m["role"] for m in raw] == ["user", "assistant"]
    assert raw[1]["content"] == "hi there"


@pytest.mark.asyncio
async def test_duplicate_within_window_dropped(context_store):
    """Test same role and content within the dedup window is ignored."""
    first = Message.user("deploy my bot")

    assert await context_store.append("u1", first) is True
    assert await context_store.append("u1", at(first, 1.0)) is False
    assert len(await context_store.load("u1")) == 1


@pytest.mark.asyncio
async def test_duplicate_outside_window_kept(context_store):
    first = Message.user("status?")

    assert await context_store.append("u1", first) is True
    assert await context_store.append("u1", at(first, 2.5)) is True
    assert len(await context_store.load("u1")) == 2


@pytest.mark.asyncio
async def test_same_content_different_role_kept(context_store):
    first = Message.user("ok")

    await context_store.append("u1", first)
    assert await context_store.append("u1", Message.assistant("ok", timestamp=first.timestamp)) is True


@pytest.mark.asyncio
async def test_cap_trims_oldest(settings, clock):
    """Test the stored history never exceeds the cap."""
    store = ContextStore(settings.context_dir, max_messages=5, clock=clock)

    for i in range(8):
        await store.append("u1", Message.user(f"message {i}"))

    messages = await store.load("u1")
    assert len(messages) == 5
    assert messages[0].content == "message 3"
    assert messages[-1].content == "message 7"


@pytest.mark.asyncio
async def test_recent_context_respects_count(context_store):
    for i in range(6):
        await context_store.append("u1", Message.user(f"m{i}"))

    recent = await context_store.recent_messages("u1", max_count=3)
    assert [m.content for m in recent] == ["m3", "m4", "m5"]


@pytest.mark.asyncio
async def test_recent_context_respects_token_budget(settings, clock):
    """Test the budget stops the backward walk even below max_count."""
    store = ContextStore(settings.context_dir, max_context_tokens=30, clock=clock)

    await store.append("u1", Message.user("a" * 40))   # 10 tokens
    await store.append("u1", Message.user("b" * 40))   # 10 tokens
    await store.append("u1", Message.user("c" * 80))   # 20 tokens

    recent = await store.recent_messages("u1", max_count=50)
    assert [m.content[0] for m in recent] == ["b", "c"]


@pytest.mark.asyncio
async def test_recent_context_oversized_newest_message(settings, clock):
    """Test a newest message larger than the budget yields nothing."""
    store = ContextStore(settings.context_dir, max_context_tokens=10, clock=clock)
    await store.append("u1", Message.user("short"))
    await store.append("u1", Message.user("x" * 400))

    assert await store.recent_messages("u1") == []
    assert await store.get_recent_context("u1") == ""


@pytest.mark.asyncio
async def test_get_recent_context_transcript(context_store):
    await context_store.append("u1", Message.user("create a bot"))
    await context_store.append("u1", Message.assistant("Done: @demo_bot"))
    await context_store.append("u1", Message.system("note"))

    transcript = await context_store.get_recent_context("u1", 10)
    assert transcript == "Human: create a bot\n\nAssistant: Done: @demo_bot\n\nSystem: note"


def test_format_transcript_empty():
    assert format_transcript([]) == ""


@pytest.mark.asyncio
async def test_cache_ttl(context_store, settings, clock):
    """Test reads are served from cache until the TTL passes."""
    await context_store.append("u1", Message.user("cached"))

    # Change the file behind the store's back
    (settings.context_dir / "u1.json").write_text("[]")

    assert len(await context_store.load("u1")) == 1

    clock.advance(301)
    assert await context_store.load("u1") == []


@pytest.mark.asyncio
async def test_invalidate_cache(context_store, settings):
    await context_store.append("u1", Message.user("cached"))
    (settings.context_dir / "u1.json").write_text("[]")

    context_store.invalidate_cache("u1")
    assert await context_store.load("u1") == []


@pytest.mark.asyncio
async def test_corrupt_context_file(context_store, settings):
    settings.context_dir.mkdir(parents=True)
    (settings.context_dir / "u1.json").write_text("{broken")

    assert await context_store.load("u1") == []


@pytest.mark.asyncio
async def test_session_pointer(context_store, settings):
    """Test the last-session pointer round trip."""
    assert await context_store.get_user_last_session_id("u1") is None

    await context_store.save_user_session("u1", "session-abc-123456")
    assert await context_store.get_user_last_session_id("u1") == "session-abc-123456"

    raw = json.loads((settings.context_dir / "sessions" / "u1.json").read_text())
    assert raw["sessionId"] == "session-abc-123456"
    assert "savedAt" in raw

    await context_store.clear_user_session("u1")
    assert await context_store.get_user_last_session_id("u1") is None


@pytest.mark.asyncio
async def test_clear_all(context_store, settings):
    await context_store.append("u1", Message.user("hello"))
    await context_store.save_user_session("u1", "session-abc-123456")

    await context_store.clear_all("u1")

    assert await context_store.load("u1") == []
    assert await context_store.get_user_last_session_id("u1") is None
    assert not (settings.context_dir / "u1.json").exists()


@pytest.mark.asyncio
async def test_list_users_and_stats(context_store):
    await context_store.append("u1", Message.user("one"))
    await context_store.append("u1", Message.assistant("two"))
    await context_store.append("u2", Message.user("three"))
    await context_store.save_user_session("u1", "session-abc-123456")

    assert await context_store.list_users() == ["u1", "u2"]

    stats = await context_store.user_stats("u1")
    assert stats.message_count == 2
    assert stats.first_message <= stats.last_message

    empty = await context_store.user_stats("nobody")
    assert empty.message_count == 0
    assert empty.first_message is None


@pytest.mark.asyncio
async def test_unsafe_user_ids_are_sanitized(context_store, settings):
    await context_store.append("../evil", Message.user("x"))

    assert (settings.context_dir / ".._evil.json").exists()
    assert len(await context_store.load("../evil")) == 1


@pytest.mark.asyncio
async def test_pointer_does_not_collide_with_context(context_store):
    """Test a user whose id ends in _session cannot overwrite another user's pointer."""
    await context_store.save_user_session("alice", "session-abc-123456")
    await context_store.append("alice_session", Message.user("hi"))

    assert await context_store.get_user_last_session_id("alice") == "session-abc-123456"
    assert len(await context_store.load("alice_session")) == 1
    assert await context_store.list_users() == ["alice_session"]
