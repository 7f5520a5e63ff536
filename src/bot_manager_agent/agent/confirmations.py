"""
Confirmation Gate - In-chat approval for dangerous operations.

Prompts that would create bots or repositories, deploy, push or delete are
held back until the requesting user confirms them. Each request lives in
memory with its own expiry timer:

- PENDING -> CONFIRMED  the owner approved; the prompt is handed back to run
- PENDING -> CANCELLED  the owner declined, or their confirmations were cleared
- PENDING -> EXPIRED    nobody answered before the timeout

Every transition removes the entry and cancels the timer before anything is
awaited, so a confirmation resolves exactly once. Pending confirmations are
never persisted and do not survive a restart.
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol

import structlog

from ..ids import generate_id

logger = structlog.get_logger()

DEFAULT_TIMEOUT_SECONDS = 60.0
PROMPT_PREVIEW_LENGTH = 100


class DangerousOperation(str, Enum):
    """Operations that require explicit confirmation."""
    CREATE_BOT = "create_bot"
    CREATE_REPO = "create_repo"
    DEPLOY = "deploy"
    COMMIT_PUSH = "commit_push"
    DELETE_BOT = "delete_bot"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


# Checked in order, first match wins
DANGEROUS_PATTERNS: list[tuple[re.Pattern[str], DangerousOperation]] = [
    (re.compile(r"\bcreate\s+(a\s+)?bot\b", re.IGNORECASE), DangerousOperation.CREATE_BOT),
    (re.compile(r"\bcreate\s+(a\s+)?(github\s+)?repo(sitory)?\b", re.IGNORECASE), DangerousOperation.CREATE_REPO),
    (re.compile(r"\bdeploy\b", re.IGNORECASE), DangerousOperation.DEPLOY),
    (re.compile(r"\bpush\b", re.IGNORECASE), DangerousOperation.COMMIT_PUSH),
    (re.compile(r"\bcommit\b", re.IGNORECASE), DangerousOperation.COMMIT_PUSH),
    (re.compile(r"\bdelete\s+(a\s+)?bot\b", re.IGNORECASE), DangerousOperation.DELETE_BOT),
]


def requires_confirmation(text: str) -> DangerousOperation | None:
    """Classify a prompt, returning the dangerous operation it asks for, if any."""
    for pattern, operation in DANGEROUS_PATTERNS:
        if pattern.search(text):
            return operation
    return None


def preview_prompt(prompt: str) -> str:
    if len(prompt) > PROMPT_PREVIEW_LENGTH:
        return prompt[: PROMPT_PREVIEW_LENGTH - 3] + "..."
    return prompt


def format_warning(operation: DangerousOperation, prompt: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> str:
    """Build the Markdown warning shown with the confirm/cancel buttons."""
    quoted = f'_"{preview_prompt(prompt)}"_'
    expiry = f"⏰ _Expires in {int(timeout)} seconds_"

    if operation == DangerousOperation.CREATE_BOT:
        body = (
            "⚠️ *Confirm Bot Creation*\n\n"
            "You're about to create a new Telegram bot.\n\n"
            f"{quoted}\n\n"
            "This will:\n"
            "• Connect to @BotFather\n"
            "• Create a new bot\n"
            "• Generate a bot token"
        )
    elif operation == DangerousOperation.CREATE_REPO:
        body = (
            "⚠️ *Confirm Repository Creation*\n\n"
            "You're about to create a new GitHub repository.\n\n"
            f"{quoted}"
        )
    elif operation == DangerousOperation.DEPLOY:
        body = (
            "⚠️ *Confirm Deployment*\n\n"
            "You're about to deploy to Coolify.\n\n"
            f"{quoted}"
        )
    elif operation == DangerousOperation.COMMIT_PUSH:
        body = (
            "⚠️ *Confirm Push*\n\n"
            "You're about to commit and push changes to GitHub.\n\n"
            f"{quoted}"
        )
    else:
        body = (
            "🚨 *Confirm Deletion*\n\n"
            "⚠️ This action is irreversible!\n\n"
            f"{quoted}"
        )

    return f"{body}\n\n{expiry}"


@dataclass
class PendingConfirmation:
    """A dangerous prompt waiting for its owner to confirm or cancel it."""
    id: str
    chat_id: int | str
    user_id: str
    operation: DangerousOperation
    prompt: str
    payload: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    message_id: str | None = None
    status: ConfirmationStatus = ConfirmationStatus.PENDING
    timer: asyncio.TimerHandle | None = field(default=None, repr=False, compare=False)

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


@dataclass
class ConfirmationOutcome:
    """What happened when a user pressed confirm or cancel."""
    confirmed: bool
    status: ConfirmationStatus | None
    message: str
    prompt: str | None = None
    operation: DangerousOperation | None = None
    chat_id: int | str | None = None
    payload: dict[str, Any] = field(default_factory=dict)


class ConfirmationNotifier(Protocol):
    """Delivers confirmation prompts to the user and edits them afterwards."""

    async def send_confirmation(self, confirmation: PendingConfirmation, text: str) -> str | None:
        """Show the prompt; return an id for the sent message if there is one."""
        ...

    async def update_confirmation(self, confirmation: PendingConfirmation, text: str) -> None:
        ...


class LogNotifier:
    """Notifier that only logs. Used when no chat transport is attached."""

    async def send_confirmation(self, confirmation: PendingConfirmation, text: str) -> str | None:
        logger.info(
            "Confirmation requested",
            confirmation_id=confirmation.id,
            chat_id=confirmation.chat_id,
            operation=confirmation.operation.value,
        )
        return None

    async def update_confirmation(self, confirmation: PendingConfirmation, text: str) -> None:
        logger.info(
            "Confirmation updated",
            confirmation_id=confirmation.id,
            status=confirmation.status.value,
        )


class ConfirmationGate:
    """Holds pending confirmations and resolves each of them exactly once.

    Must be used from inside a running event loop; timers are scheduled with
    ``loop.call_later`` unless another scheduler with the same signature is
    passed as ``call_later``.
    """

    def __init__(
        self,
        notifier: ConfirmationNotifier | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        call_later: Callable[..., asyncio.TimerHandle] | None = None,
    ):
        self.notifier: ConfirmationNotifier = notifier or LogNotifier()
        self.timeout = timeout
        self._call_later = call_later
        self._pending: dict[str, PendingConfirmation] = {}
        self._tasks: set[asyncio.Task] = set()

    async def create_confirmation(
        self,
        chat_id: int | str,
        user_id: str,
        operation: DangerousOperation,
        prompt: str,
        payload: dict[str, Any] | None = None,
    ) -> str:
        """Send the warning prompt and start the expiry timer. Returns the id."""
        confirmation = PendingConfirmation(
            id=generate_id("conf", suffix_length=7),
            chat_id=chat_id,
            user_id=str(user_id),
            operation=operation,
            prompt=prompt,
            payload=dict(payload or {}),
        )

        text = format_warning(operation, prompt, self.timeout)
        confirmation.message_id = await self.notifier.send_confirmation(confirmation, text)

        call_later = self._call_later or asyncio.get_running_loop().call_later
        confirmation.timer = call_later(self.timeout, self._expire, confirmation.id)
        confirmation.expires_at = datetime.now(timezone.utc) + timedelta(seconds=self.timeout)
        self._pending[confirmation.id] = confirmation

        logger.info(
            "Confirmation created",
            confirmation_id=confirmation.id,
            operation=operation.value,
            user_id=confirmation.user_id,
        )
        return confirmation.id

    async def process_confirmation(
        self,
        confirmation_id: str,
        approve: bool,
        user_id: str,
    ) -> ConfirmationOutcome:
        """Resolve a confirmation on behalf of ``user_id``."""
        confirmation = self._pending.get(confirmation_id)

        if confirmation is None:
            return ConfirmationOutcome(
                confirmed=False,
                status=None,
                message="⚠️ Confirmation expired or not found",
            )

        if str(user_id) != confirmation.user_id:
            logger.warning(
                "Confirmation attempted by another user",
                confirmation_id=confirmation_id,
                user_id=str(user_id),
            )
            return ConfirmationOutcome(
                confirmed=False,
                status=ConfirmationStatus.PENDING,
                message="⚠️ This confirmation is not for you",
            )

        # Resolve before the first await so the timer can no longer fire
        confirmation.cancel_timer()
        del self._pending[confirmation_id]

        if approve:
            confirmation.status = ConfirmationStatus.CONFIRMED
            message = f'✅ *Confirmed*\n\nExecuting: _"{confirmation.prompt}"_'
        else:
            confirmation.status = ConfirmationStatus.CANCELLED
            message = f'❌ *Cancelled*\n\n_"{confirmation.prompt}"_'

        logger.info(
            "Confirmation resolved",
            confirmation_id=confirmation_id,
            status=confirmation.status.value,
        )

        await self._update(confirmation, message)

        return ConfirmationOutcome(
            confirmed=approve,
            status=confirmation.status,
            message=message,
            prompt=confirmation.prompt,
            operation=confirmation.operation,
            chat_id=confirmation.chat_id,
            payload=confirmation.payload,
        )

    def _expire(self, confirmation_id: str) -> None:
        confirmation = self._pending.pop(confirmation_id, None)
        if confirmation is None:
            return

        confirmation.timer = None
        confirmation.status = ConfirmationStatus.EXPIRED
        logger.info("Confirmation expired", confirmation_id=confirmation_id)

        text = f'⌛ *Confirmation Expired*\n\n_"{confirmation.prompt}"_\n\nPlease try again.'
        task = asyncio.ensure_future(self._update(confirmation, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _update(self, confirmation: PendingConfirmation, text: str) -> None:
        try:
            await self.notifier.update_confirmation(confirmation, text)
        except Exception as e:
            logger.warning(
                "Failed to update confirmation message",
                confirmation_id=confirmation.id,
                error=str(e),
            )

    def clear_user_confirmations(self, user_id: str) -> int:
        """Cancel every pending confirmation owned by a user. Returns how many."""
        user_id = str(user_id)
        ids = [cid for cid, c in self._pending.items() if c.user_id == user_id]
        for cid in ids:
            confirmation = self._pending.pop(cid)
            confirmation.cancel_timer()
            confirmation.status = ConfirmationStatus.CANCELLED

        if ids:
            logger.info("Cleared user confirmations", user_id=user_id, count=len(ids))
        return len(ids)

    def get(self, confirmation_id: str) -> PendingConfirmation | None:
        return self._pending.get(confirmation_id)

    def list_pending(self, user_id: str | None = None) -> list[PendingConfirmation]:
        confirmations = list(self._pending.values())
        if user_id is not None:
            confirmations = [c for c in confirmations if c.user_id == str(user_id)]
        return confirmations

    def pending_count(self, user_id: str) -> int:
        return len(self.list_pending(user_id))

    def has_pending(self, user_id: str) -> bool:
        return self.pending_count(user_id) > 0

    async def close(self) -> None:
        """Drop all pending confirmations and wait for queued expiry notices."""
        for confirmation in self._pending.values():
            confirmation.cancel_timer()
            confirmation.status = ConfirmationStatus.CANCELLED
        self._pending.clear()

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
