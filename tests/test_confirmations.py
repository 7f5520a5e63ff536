"""
Tests for the confirmation gate.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from bot_manager_agent.agent.confirmations import (
    ConfirmationGate,
    ConfirmationStatus,
    DangerousOperation,
    LogNotifier,
    format_warning,
    preview_prompt,
    requires_confirmation,
)


@pytest.mark.parametrize(
    "text, expected",
    [
        ("please deploy now", DangerousOperation.DEPLOY),
        ("Create a bot for my shop", DangerousOperation.CREATE_BOT),
        ("create bot", DangerousOperation.CREATE_BOT),
        ("create a GitHub repository", DangerousOperation.CREATE_REPO),
        ("create repo", DangerousOperation.CREATE_REPO),
        ("commit the changes", DangerousOperation.COMMIT_PUSH),
        ("PUSH it", DangerousOperation.COMMIT_PUSH),
        ("delete a bot", DangerousOperation.DELETE_BOT),
        ("hello there", None),
        ("redeploy", None),
        ("pushover notifications", None),
    ],
)
def test_requires_confirmation(text, expected):
    assert requires_confirmation(text) == expected


def test_first_matching_pattern_wins():
    """Test the table order decides between several matches."""
    assert requires_confirmation("create a bot and deploy it") == DangerousOperation.CREATE_BOT
    assert requires_confirmation("delete a bot then push") == DangerousOperation.COMMIT_PUSH


def test_warning_text():
    text = format_warning(DangerousOperation.DEPLOY, "deploy the app")

    assert text.startswith("⚠️ *Confirm Deployment*")
    assert '_"deploy the app"_' in text
    assert text.endswith("⏰ _Expires in 60 seconds_")

    deletion = format_warning(DangerousOperation.DELETE_BOT, "delete a bot", timeout=30)
    assert "irreversible" in deletion
    assert deletion.endswith("⏰ _Expires in 30 seconds_")


def test_prompt_preview_truncates():
    preview = preview_prompt("x" * 150)

    assert len(preview) == 100
    assert preview.endswith("...")
    assert preview_prompt("short") == "short"


@pytest.mark.asyncio
async def test_create_confirmation(notifier):
    gate = ConfirmationGate(notifier)

    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy now", {"app": "x"})

    assert confirmation_id.startswith("conf-")
    pending = gate.get(confirmation_id)
    assert pending.status == ConfirmationStatus.PENDING
    assert pending.message_id == "42"
    assert pending.payload == {"app": "x"}
    assert 60 <= (pending.expires_at - pending.created_at).total_seconds() < 61
    assert gate.has_pending("u1")

    sent_confirmation, sent_text = notifier.send_confirmation.call_args.args
    assert sent_confirmation is pending
    assert "Confirm Deployment" in sent_text

    await gate.close()


@pytest.mark.asyncio
async def test_confirm_by_owner(notifier):
    gate = ConfirmationGate(notifier)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy now")
    timer = gate.get(confirmation_id).timer

    outcome = await gate.process_confirmation(confirmation_id, True, "u1")

    assert outcome.confirmed is True
    assert outcome.status == ConfirmationStatus.CONFIRMED
    assert outcome.prompt == "deploy now"
    assert outcome.operation == DangerousOperation.DEPLOY
    assert outcome.chat_id == 100
    assert outcome.message == '✅ *Confirmed*\n\nExecuting: _"deploy now"_'
    assert timer.cancelled()
    assert gate.get(confirmation_id) is None
    notifier.update_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_cancel_by_owner(notifier):
    gate = ConfirmationGate(notifier)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.COMMIT_PUSH, "push it")

    outcome = await gate.process_confirmation(confirmation_id, False, "u1")

    assert outcome.confirmed is False
    assert outcome.status == ConfirmationStatus.CANCELLED
    assert outcome.message == '❌ *Cancelled*\n\n_"push it"_'
    assert gate.pending_count("u1") == 0


@pytest.mark.asyncio
async def test_unknown_confirmation(notifier):
    """Test an unknown id leaves the pending map untouched."""
    gate = ConfirmationGate(notifier)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")

    outcome = await gate.process_confirmation("conf-unknown", True, "u1")

    assert outcome.confirmed is False
    assert outcome.status is None
    assert outcome.message == "⚠️ Confirmation expired or not found"
    assert [c.id for c in gate.list_pending()] == [confirmation_id]

    await gate.close()


@pytest.mark.asyncio
async def test_other_user_cannot_resolve(notifier):
    """Test only the requester can resolve; the entry stays pending."""
    gate = ConfirmationGate(notifier)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DELETE_BOT, "delete a bot")

    outcome = await gate.process_confirmation(confirmation_id, True, "intruder")

    assert outcome.confirmed is False
    assert outcome.message == "⚠️ This confirmation is not for you"
    assert gate.get(confirmation_id).status == ConfirmationStatus.PENDING
    notifier.update_confirmation.assert_not_called()

    owner_outcome = await gate.process_confirmation(confirmation_id, True, "u1")
    assert owner_outcome.confirmed is True


@pytest.mark.asyncio
async def test_user_ids_compared_as_strings(notifier):
    gate = ConfirmationGate(notifier)
    confirmation_id = await gate.create_confirmation(100, 12345, DangerousOperation.DEPLOY, "deploy")

    outcome = await gate.process_confirmation(confirmation_id, True, 12345)

    assert outcome.confirmed is True


@pytest.mark.asyncio
async def test_expiry_sends_one_notice(notifier, timers):
    """Test the timer removes the entry and edits the prompt exactly once."""
    gate = ConfirmationGate(notifier, call_later=timers.call_later)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy now")

    timers.advance(59)
    assert gate.get(confirmation_id) is not None

    timers.advance(1)
    await asyncio.sleep(0)

    assert gate.get(confirmation_id) is None
    notifier.update_confirmation.assert_awaited_once()
    expired, text = notifier.update_confirmation.call_args.args
    assert expired.status == ConfirmationStatus.EXPIRED
    assert text == '⌛ *Confirmation Expired*\n\n_"deploy now"_\n\nPlease try again.'

    outcome = await gate.process_confirmation(confirmation_id, True, "u1")
    assert outcome.confirmed is False
    assert outcome.message == "⚠️ Confirmation expired or not found"
    notifier.update_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_resolved_confirmation_never_expires(notifier, timers):
    gate = ConfirmationGate(notifier, call_later=timers.call_later)
    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")

    await gate.process_confirmation(confirmation_id, False, "u1")
    timers.advance(120)
    await asyncio.sleep(0)

    notifier.update_confirmation.assert_awaited_once()
    assert notifier.update_confirmation.call_args.args[0].status == ConfirmationStatus.CANCELLED


@pytest.mark.asyncio
async def test_expiry_notifier_failure_is_logged(notifier, timers):
    notifier.update_confirmation.side_effect = RuntimeError("chat gone")
    gate = ConfirmationGate(notifier, call_later=timers.call_later)
    await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")

    timers.advance(60)
    await gate.close()

    assert gate.pending_count("u1") == 0
    notifier.update_confirmation.assert_awaited_once()


@pytest.mark.asyncio
async def test_expiry_counts_from_when_the_prompt_was_sent(notifier, timers):
    """Test the reported expiry matches the timer, which starts after sending."""
    sent_at = []

    async def send(confirmation, text):
        sent_at.append(datetime.now(timezone.utc))
        return "42"

    notifier.send_confirmation = AsyncMock(side_effect=send)
    gate = ConfirmationGate(notifier, call_later=timers.call_later)

    confirmation_id = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")

    pending = gate.get(confirmation_id)
    assert pending.expires_at >= sent_at[0] + timedelta(seconds=60)
    assert [h.when for h in timers.handles] == [60]


@pytest.mark.asyncio
async def test_clear_user_confirmations(notifier, timers):
    gate = ConfirmationGate(notifier, call_later=timers.call_later)
    first = await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")
    await gate.create_confirmation(100, "u1", DangerousOperation.COMMIT_PUSH, "push")
    other = await gate.create_confirmation(200, "u2", DangerousOperation.DEPLOY, "deploy")
    timer = gate.get(first).timer

    assert gate.clear_user_confirmations("u1") == 2

    assert timer.cancelled()
    assert not gate.has_pending("u1")
    assert gate.has_pending("u2")
    assert [c.id for c in gate.list_pending()] == [other]

    await gate.close()
    assert gate.list_pending() == []


@pytest.mark.asyncio
async def test_close_cancels_timers(notifier, timers):
    gate = ConfirmationGate(notifier, call_later=timers.call_later)
    await gate.create_confirmation(100, "u1", DangerousOperation.DEPLOY, "deploy")

    await gate.close()
    timers.advance(120)
    await asyncio.sleep(0)

    notifier.update_confirmation.assert_not_called()


@pytest.mark.asyncio
async def test_log_notifier_default():
    gate = ConfirmationGate()
    assert isinstance(gate.notifier, LogNotifier)

    confirmation_id = await gate.create_confirmation(1, "u1", DangerousOperation.CREATE_BOT, "create a bot")
    assert gate.get(confirmation_id).message_id is None

    outcome = await gate.process_confirmation(confirmation_id, True, "u1")
    assert outcome.confirmed is True
