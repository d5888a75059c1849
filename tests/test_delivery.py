from __future__ import annotations

from pathlib import Path
from typing import Any

import allure
import pytest
from telegram.error import BadRequest, NetworkError, RetryAfter

from codebot.chat.delivery import ConsoleNotifier, DeliveryError, TelegramNotifier, chunk_text
from codebot.config import TelegramSettings

pytestmark = [
    allure.epic("Chat"),
    allure.feature("Message Delivery"),
]


class FakeBot:
    """Stands in for ``telegram.Bot``; each call pops the next scripted failure."""

    def __init__(self, failures: list[Exception] | None = None) -> None:
        self.failures = list(failures or [])
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.initialized = 0
        self.shut_down = False

    async def initialize(self) -> None:
        self.initialized += 1

    async def shutdown(self) -> None:
        self.shut_down = True

    async def send_message(self, **kwargs: Any) -> None:
        self._record("send_message", kwargs)

    async def send_document(self, **kwargs: Any) -> None:
        self._record("send_document", kwargs)

    def _record(self, method: str, kwargs: dict[str, Any]) -> None:
        self.calls.append((method, kwargs))
        if self.failures:
            raise self.failures.pop(0)


@pytest.fixture()
def notifiers():
    created: list[TelegramNotifier] = []
    yield created
    for notifier in created:
        notifier.close()


def _notifier(
    notifiers: list[TelegramNotifier],
    bot: FakeBot,
    *,
    max_chars: int = 3_500,
) -> tuple[TelegramNotifier, list[float]]:
    sleeps: list[float] = []
    notifier = TelegramNotifier(
        TelegramSettings(bot_token="123:abc", max_chars=max_chars, send_delay_seconds=0.9),
        bot=bot,
        sleep=sleeps.append,
    )
    notifiers.append(notifier)
    return notifier, sleeps


def test_chunk_text() -> None:
    assert chunk_text("abcdefg", 3) == ["abc", "def", "g"]
    assert "".join(chunk_text("", 3)) == "(no output)"
    with pytest.raises(ValueError):
        chunk_text("x", 0)


def test_send_message_chunks_and_throttles(notifiers) -> None:
    bot = FakeBot()
    notifier, sleeps = _notifier(notifiers, bot, max_chars=4)

    notifier.send_message("42", "abcdefghij")

    assert [kwargs["text"] for _, kwargs in bot.calls] == ["abcd", "efgh", "ij"]
    assert all(kwargs["chat_id"] == "42" for _, kwargs in bot.calls)
    assert all(kwargs["link_preview_options"].is_disabled for _, kwargs in bot.calls)
    assert sleeps == [0.9, 0.9, 0.9]
    assert bot.initialized == 1


def test_send_message_honours_retry_after(notifiers) -> None:
    bot = FakeBot([RetryAfter(3)])
    notifier, sleeps = _notifier(notifiers, bot)

    notifier.send_message("42", "hi")

    assert sleeps == [0.9, 4.0]
    assert len(bot.calls) == 2


def test_send_message_retries_network_errors_then_gives_up(notifiers) -> None:
    bot = FakeBot([NetworkError("reset")] * 6)
    notifier, sleeps = _notifier(notifiers, bot)

    with pytest.raises(DeliveryError, match="after 6 attempts"):
        notifier.send_message("42", "hi")
    assert len(bot.calls) == 6
    assert sleeps[1:] == [1.5, 2.25, 3.0, 3.75, 4.5, 5.25]


def test_api_error_is_not_retried(notifiers) -> None:
    bot = FakeBot([BadRequest("Chat not found")])
    notifier, _sleeps = _notifier(notifiers, bot)

    with pytest.raises(DeliveryError, match="Chat not found"):
        notifier.send_message("42", "hi")
    assert len(bot.calls) == 1


def test_send_document_uploads_file_with_truncated_caption(notifiers, tmp_path: Path) -> None:
    path = tmp_path / "job-1.log.txt"
    path.write_text("log body", "utf-8")
    bot = FakeBot()
    notifier, _sleeps = _notifier(notifiers, bot)

    notifier.send_document("42", path, "c" * 2_000)

    method, kwargs = bot.calls[0]
    assert method == "send_document"
    assert kwargs["filename"] == "job-1.log.txt"
    assert kwargs["document"] == b"log body"
    assert kwargs["caption"] == "c" * 1_024


def test_close_shuts_the_client_down(tmp_path: Path) -> None:
    bot = FakeBot()
    notifier = TelegramNotifier(TelegramSettings(bot_token="t"), bot=bot, sleep=lambda _s: None)
    notifier.send_message("42", "hi")

    notifier.close()

    assert bot.shut_down is True
    with pytest.raises(RuntimeError, match="closed"):
        notifier.send_message("42", "again")


def test_console_notifier_prints_lines(tmp_path: Path) -> None:
    lines: list[str] = []
    notifier = ConsoleNotifier(echo=lines.append)

    notifier.send_message("42", "hello")
    notifier.send_document("42", tmp_path / "a.log", "📄 Job 1 FAILED\nModel: m")

    assert lines == [
        "[42] hello",
        f"[42] log file: {tmp_path / 'a.log'} (📄 Job 1 FAILED)",
    ]
