"""
Tests for the operation tracker.
"""

import pytest

from bot_manager_agent.agent.operations import (
    OperationStatus,
    OperationTracker,
    StepStatus,
    step_name_for_tool,
)
from bot_manager_agent.errors import OperationCancelled


def test_start_and_lookup():
    tracker = OperationTracker()
    op = tracker.start(100, "u1", "list my bots")

    assert op.id.startswith("op-")
    assert op.status == OperationStatus.RUNNING
    assert tracker.get(op.id) is op
    assert tracker.user_operations("u1") == [op]
    assert tracker.user_operations("u2") == []
    assert tracker.all() == [op]


def test_cancel_sets_flag():
    """Test cancellation is cooperative: only the flag changes."""
    tracker = OperationTracker()
    op = tracker.start(100, "u1", "deploy")

    assert tracker.cancel(op.id) is True
    assert tracker.is_cancelled(op.id) is True
    assert tracker.get(op.id) is op

    with pytest.raises(OperationCancelled) as exc_info:
        op.check_cancelled()
    assert str(exc_info.value) == "Operation cancelled by user"
    assert exc_info.value.operation_id == op.id


def test_cancel_unknown():
    tracker = OperationTracker()

    assert tracker.cancel("op-unknown") is False
    assert tracker.is_cancelled("op-unknown") is False


def test_complete_removes_entry():
    tracker = OperationTracker()
    ok = tracker.start(100, "u1", "a")
    bad = tracker.start(100, "u1", "b")

    assert tracker.complete(ok.id, True).status == OperationStatus.COMPLETED
    assert tracker.complete(bad.id, False).status == OperationStatus.FAILED
    assert tracker.all() == []
    assert ok.finished_at is not None
    assert tracker.complete(ok.id, True) is None


def test_cancelled_wins_over_success():
    tracker = OperationTracker()
    op = tracker.start(100, "u1", "deploy")
    tracker.cancel(op.id)

    assert tracker.complete(op.id, True).status == OperationStatus.CANCELLED


def test_bulk_cancel():
    tracker = OperationTracker()
    a = tracker.start(100, "u1", "a")
    b = tracker.start(100, "u1", "b")
    c = tracker.start(200, "u2", "c")

    assert tracker.cancel_user_operations("u1") == 2
    assert a.cancelled and b.cancelled
    assert not c.cancelled

    assert tracker.cancel_all() == 3
    assert c.cancelled


@pytest.mark.parametrize(
    "tool, expected",
    [
        ("deploy", "Deploying to Coolify"),
        ("mcp__bot-manager__create_bot", "Creating bot via BotFather"),
        ("mcp__github__commit_and_push", "Pushing to GitHub"),
        ("Read", "Running Read"),
        ("mcp__fs__read_file", "Running read_file"),
    ],
)
def test_step_name_for_tool(tool, expected):
    assert step_name_for_tool(tool) == expected


def test_record_step_progression():
    """Test steps are added in order and the previous step is closed."""
    tracker = OperationTracker()
    op = tracker.start(100, "u1", "create and deploy")

    tracker.record_step(op.id, "mcp__bot-manager__create_bot")
    tracker.record_step(op.id, "mcp__coolify__deploy")

    assert op.step_names == ["Creating bot via BotFather", "Deploying to Coolify"]
    assert op.steps[0].status == StepStatus.COMPLETED
    assert op.current_step.name == "Deploying to Coolify"

    # Repeated tool reuses its step
    tracker.record_step(op.id, "deploy")
    assert len(op.steps) == 2

    tracker.complete(op.id, True)
    assert all(s.status == StepStatus.COMPLETED for s in op.steps)


def test_record_step_after_cancel_ignored():
    tracker = OperationTracker()
    op = tracker.start(100, "u1", "deploy")
    tracker.record_step(op.id, "deploy")
    tracker.cancel(op.id)

    assert op.steps[0].status == StepStatus.FAILED
    assert op.steps[0].error == "Cancelled by user"
    assert tracker.record_step(op.id, "build_project") is None
    assert tracker.record_step("op-unknown", "deploy") is None


@pytest.mark.asyncio
async def test_track_completes_on_success():
    tracker = OperationTracker()

    async with tracker.track(100, "u1", "list bots") as op:
        assert tracker.get(op.id) is op

    assert tracker.get(op.id) is None
    assert op.status == OperationStatus.COMPLETED


@pytest.mark.asyncio
async def test_track_completes_on_error():
    tracker = OperationTracker()

    with pytest.raises(RuntimeError):
        async with tracker.track(100, "u1", "list bots") as op:
            raise RuntimeError("boom")

    assert tracker.all() == []
    assert op.status == OperationStatus.FAILED


@pytest.mark.asyncio
async def test_track_completes_on_cancel():
    tracker = OperationTracker()

    with pytest.raises(OperationCancelled):
        async with tracker.track(100, "u1", "deploy") as op:
            tracker.cancel(op.id)
            op.check_cancelled()

    assert tracker.all() == []
    assert op.status == OperationStatus.CANCELLED
