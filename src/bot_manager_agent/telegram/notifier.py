"""
Telegram delivery for confirmation prompts.
"""

import structlog
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.constants import ParseMode
from telegram.error import TelegramError

from ..agent.confirmations import PendingConfirmation

logger = structlog.get_logger()

CONFIRM_ACTION = "confirm"
CANCEL_ACTION = "cancel"


def confirmation_keyboard(confirmation_id: str) -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("✅ Confirm", callback_data=f"{CONFIRM_ACTION}:{confirmation_id}"),
        InlineKeyboardButton("❌ Cancel", callback_data=f"{CANCEL_ACTION}:{confirmation_id}"),
    ]])


def parse_callback_data(data: str | None) -> tuple[str, bool] | None:
    """Parse ``confirm:<id>`` / ``cancel:<id>`` into (id, approve)."""
    if not data or ":" not in data:
        return None

    action, confirmation_id = data.split(":", 1)
    if not confirmation_id:
        return None
    if action == CONFIRM_ACTION:
        return confirmation_id, True
    if action == CANCEL_ACTION:
        return confirmation_id, False
    return None


class TelegramConfirmationNotifier:
    """Sends confirmation prompts with inline buttons and edits them on resolution."""

    def __init__(self, bot: Bot):
        self.bot = bot

    async def send_confirmation(self, confirmation: PendingConfirmation, text: str) -> str | None:
        message = await self.bot.send_message(
            chat_id=confirmation.chat_id,
            text=text,
            parse_mode=ParseMode.MARKDOWN,
            reply_markup=confirmation_keyboard(confirmation.id),
        )
        return str(message.message_id)

    async def update_confirmation(self, confirmation: PendingConfirmation, text: str) -> None:
        if confirmation.message_id is None:
            return

        try:
            await self.bot.edit_message_text(
                text=text,
                chat_id=confirmation.chat_id,
                message_id=int(confirmation.message_id),
                parse_mode=ParseMode.MARKDOWN,
            )
        except TelegramError as e:
            logger.debug(
                "Failed to edit confirmation message",
                confirmation_id=confirmation.id,
                error=str(e),
            )
