"""Telegram notification adapter — implements NotificationPort.

Wraps a telegram.Bot instance. Delivery failures are reported as False so the
reminder service can leave the row undelivered.
"""

from __future__ import annotations

import logging

from telegram import Bot
from telegram.error import TelegramError

logger = logging.getLogger(__name__)


class TelegramNotifier:
    """Telegram implementation of NotificationPort."""

    def __init__(self, bot: Bot) -> None:
        self._bot = bot

    async def send_message(self, target: str, text: str) -> bool:
        try:
            await self._bot.send_message(chat_id=target, text=text)
        except TelegramError as exc:
            logger.error("Telegram send to %s failed: %s", target, exc)
            return False
        return True
