"""Message delivery: Telegram through python-telegram-bot, and a console printer."""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from datetime import timedelta
from pathlib import Path
from typing import Any

import rich_click as click
from telegram import Bot, LinkPreviewOptions
from telegram.error import (
    BadRequest,
    Forbidden,
    InvalidToken,
    NetworkError,
    RetryAfter,
    TelegramError,
)

from codebot.config import TelegramSettings
from codebot.engine.loop_thread import LoopThread

logger = logging.getLogger(__name__)

MAX_CAPTION_CHARS = 1_024
NO_OUTPUT_TEXT = "(no output)"
_NO_PREVIEW = LinkPreviewOptions(is_disabled=True)


class DeliveryError(RuntimeError):
    """Message could not be delivered after all attempts."""


def chunk_text(text: str, size: int) -> list[str]:
    """Split text into fixed-size chunks; empty text becomes a placeholder."""

    if size <= 0:
        raise ValueError("Chunk size must be > 0.")
    value = text or NO_OUTPUT_TEXT
    return [value[start : start + size] for start in range(0, len(value), size)]


def build_bot(settings: TelegramSettings) -> Bot:
    api = settings.api_base_url.rstrip("/")
    return Bot(settings.bot_token, base_url=f"{api}/bot", base_file_url=f"{api}/file/bot")


class TelegramNotifier:
    """Throttled, retrying ``send_message``/``send_document`` calls.

    Every send waits ``send_delay_seconds`` first. ``RetryAfter`` sleeps the
    requested time plus one second; network errors back off linearly. Other
    API errors raise ``DeliveryError`` immediately.

    Callers are plain threads; the bot's coroutines run on a private loop.
    """

    def __init__(
        self,
        settings: TelegramSettings,
        *,
        bot: Bot | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self._sleep = sleep
        self._bot = bot or build_bot(settings)
        self._loop = LoopThread("telegram-delivery")
        self._initialized = False
        self._request_timeout = settings.poll_timeout_seconds + 15.0

    def send_message(self, chat_id: str, text: str) -> None:
        for chunk in chunk_text(text, self.settings.max_chars):
            self._sleep(self.settings.send_delay_seconds)
            self._with_retries(
                "sendMessage",
                lambda chunk=chunk: self._bot.send_message(
                    chat_id=chat_id,
                    text=chunk,
                    link_preview_options=_NO_PREVIEW,
                ),
            )

    def send_document(self, chat_id: str, path: Path, caption: str = "") -> None:
        self._sleep(self.settings.send_delay_seconds)
        self._with_retries(
            "sendDocument",
            lambda: self._bot.send_document(
                chat_id=chat_id,
                document=path.read_bytes(),
                filename=path.name,
                caption=caption[:MAX_CAPTION_CHARS] or None,
            ),
        )

    def close(self) -> None:
        if self._initialized:
            try:
                self._loop.run(self._bot.shutdown(), timeout=10)
            except (TelegramError, TimeoutError) as error:
                logger.warning("Telegram client shutdown failed: %s", error)
        self._loop.close()

    def _with_retries(self, method: str, send: Callable[[], Awaitable[Any]]) -> Any:
        last_error: Exception | None = None
        for attempt in range(self.settings.max_attempts):
            try:
                return self._loop.run(self._attempt(send), timeout=self._request_timeout)
            except RetryAfter as error:
                delay = _seconds(error.retry_after)
                logger.warning("Telegram %s rate limited, waiting %ss", method, delay)
                last_error = error
                self._sleep(delay + 1)
            except (BadRequest, Forbidden, InvalidToken) as error:
                raise DeliveryError(f"Telegram {method} error: {error.message}") from error
            except (NetworkError, TimeoutError) as error:
                logger.warning(
                    "Telegram %s network error (attempt %s): %s",
                    method,
                    attempt + 1,
                    error,
                )
                last_error = error
                self._sleep(1.5 + attempt * 0.75)
            except TelegramError as error:
                raise DeliveryError(f"Telegram {method} error: {error.message}") from error
        raise DeliveryError(
            f"Telegram {method} failed after {self.settings.max_attempts} attempts: {last_error}",
        )

    async def _attempt(self, send: Callable[[], Awaitable[Any]]) -> Any:
        if not self._initialized:
            await self._bot.initialize()
            self._initialized = True
        return await send()


def _seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class ConsoleNotifier:
    """Prints notifications for foreground CLI runs."""

    def __init__(self, echo: Callable[[str], None] = click.echo) -> None:
        self._echo = echo

    def send_message(self, chat_id: str, text: str) -> None:
        self._echo(f"[{chat_id}] {text}")

    def send_document(self, chat_id: str, path: Path, caption: str = "") -> None:
        label = f" ({caption.splitlines()[0]})" if caption else ""
        self._echo(f"[{chat_id}] log file: {path}{label}")
