"""Telegram long-polling application that feeds text messages to the command router."""

from __future__ import annotations

import asyncio
import logging

from telegram import Update
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from codebot.chat.delivery import DeliveryError
from codebot.chat.router import CommandRouter
from codebot.config import TelegramSettings

logger = logging.getLogger(__name__)

TEXT_MESSAGES = filters.TEXT & filters.UpdateType.MESSAGE


class TelegramBot:
    """Polls Telegram and dispatches each text message to the router in order.

    Updates are processed one at a time. The router is synchronous and may
    block on deliveries, so it runs in a worker thread.
    """

    def __init__(self, *, settings: TelegramSettings, router: CommandRouter) -> None:
        self.settings = settings
        self.router = router

    def build_application(self) -> Application:
        api = self.settings.api_base_url.rstrip("/")
        application = (
            Application.builder()
            .token(self.settings.bot_token)
            .base_url(f"{api}/bot")
            .base_file_url(f"{api}/file/bot")
            .concurrent_updates(False)
            .build()
        )
        application.add_handler(MessageHandler(TEXT_MESSAGES, self.handle_update))
        application.add_error_handler(self.handle_error)
        return application

    async def handle_update(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        message = update.message
        if message is None or message.text is None:
            return
        try:
            await asyncio.to_thread(self.router.handle, str(message.chat_id), message.text)
        except DeliveryError as error:
            logger.warning("Reply to chat %s failed: %s", message.chat_id, error)

    async def handle_error(self, update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
        logger.warning("Telegram update failed: %s", context.error)

    def run(self) -> None:
        """Poll until interrupted (SIGINT/SIGTERM)."""

        logger.info("Telegram polling started")
        self.build_application().run_polling(
            allowed_updates=[Update.MESSAGE],
            timeout=self.settings.poll_timeout_seconds,
        )
        logger.info("Telegram polling stopped")
