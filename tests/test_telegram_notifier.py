"""Tests for edubot.adapters.telegram_notifier."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import NetworkError

from edubot.adapters.telegram_notifier import TelegramNotifier


class TestTelegramNotifier:
    @pytest.mark.asyncio
    async def test_send_success(self):
        bot = MagicMock()
        bot.send_message = AsyncMock()
        notifier = TelegramNotifier(bot)

        assert await notifier.send_message("12345", "hello") is True
        bot.send_message.assert_awaited_once_with(chat_id="12345", text="hello")

    @pytest.mark.asyncio
    async def test_telegram_error_returns_false(self):
        bot = MagicMock()
        bot.send_message = AsyncMock(side_effect=NetworkError("timeout"))
        notifier = TelegramNotifier(bot)

        assert await notifier.send_message("12345", "hello") is False
