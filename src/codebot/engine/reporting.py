"""Job progress and result notifications sent through the delivery layer."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from codebot.engine.logs import extract_pr_urls, parse_tokens_used, read_log_text
from codebot.engine.models import ExecutionResult, Job, JobStatus

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Best-effort delivery primitives; chunking and retries live behind them."""

    def send_message(self, chat_id: str, text: str) -> None:
        """Send a text message to a chat."""

    def send_document(self, chat_id: str, path: Path, caption: str = "") -> None:
        """Send a file to a chat."""


class JobReporter:
    """Formats job notifications; delivery failures are logged, never raised."""

    def __init__(self, notifier: Notifier, *, max_inline_output_chars: int) -> None:
        self.notifier = notifier
        self.max_inline_output_chars = max_inline_output_chars

    def notify(self, chat_id: str, text: str) -> None:
        try:
            self.notifier.send_message(chat_id, text)
        except Exception as error:  # noqa: BLE001
            logger.warning("Message delivery to chat %s failed: %s", chat_id, error)

    def send_log(self, chat_id: str, path: Path, caption: str) -> None:
        try:
            self.notifier.send_document(chat_id, path, caption)
        except Exception as error:  # noqa: BLE001
            logger.warning("Document delivery to chat %s failed: %s", chat_id, error)

    def started(self, job: Job, *, model_label: str) -> None:
        lines = [
            f"🚀 Job {job.id} started.",
            f"Provider: {job.provider}",
            f"Working dir: {job.workdir}",
        ]
        if model_label:
            lines.append(f"Model: {model_label}")
        self.notify(job.chat_id, "\n".join(lines))

    def finished(self, job: Job, result: ExecutionResult, log_path: Path) -> None:
        """Send exactly one summary, plus the log file and PR links when relevant."""

        log_text = read_log_text(log_path)
        tokens = parse_tokens_used(log_text)
        status_label = job.status.value.upper()
        exit_info = result.exit_info

        summary_lines = [f"🧾 Job {job.id} {status_label}"]
        if result.model_label:
            summary_lines.append(f"Model: {result.model_label}")
        if tokens:
            summary_lines.append(f"Tokens used: {tokens:,}")
        summary_lines.append(f"Exit: code={exit_info.code} signal={exit_info.signal or 'none'}")
        tail = result.output_tail.strip() or "(no output)"
        summary = "\n".join(summary_lines) + f"\n\n--- Output tail ---\n{tail}"

        if len(summary) <= self.max_inline_output_chars:
            self.notify(job.chat_id, summary)
        else:
            self.notify(
                job.chat_id,
                f"🧾 Job {job.id} done. Output is large; sending log file…",
            )

        if len(log_text) > self.max_inline_output_chars or job.status != JobStatus.SUCCEEDED:
            caption_lines = [f"📄 Job {job.id} {status_label}"]
            if result.model_label:
                caption_lines.append(f"Model: {result.model_label}")
            if tokens:
                caption_lines.append(f"Tokens used: {tokens:,}")
            caption_lines.append(
                "✅ Completed." if exit_info.succeeded else "❌ Completed with errors.",
            )
            if log_path.exists():
                self.send_log(job.chat_id, log_path, "\n".join(caption_lines))

        pr_urls = extract_pr_urls(log_text)
        if pr_urls:
            self.notify(job.chat_id, "🔗 PR link(s):\n" + "\n".join(pr_urls))


def describe_job(job: Job, *, prompt_chars: int = 600) -> list[str]:
    """Status lines shared by the chat commands and the CLI."""

    prompt = job.prompt[:prompt_chars]
    if len(job.prompt) > prompt_chars:
        prompt += "…"
    lines = [
        f"Job {job.id}",
        f"Status: {job.status.value}",
        f"Provider: {job.provider}",
        f"Repo: {job.workdir}",
        f"Created: {job.created_at}",
    ]
    if job.started_at:
        lines.append(f"Started: {job.started_at}")
    if job.finished_at:
        lines.append(f"Finished: {job.finished_at}")
    if job.handle:
        lines.append(f"Handle: {job.handle}")
    if job.exit is not None:
        lines.append(f"Exit: code={job.exit.code} signal={job.exit.signal or 'none'}")
    lines.extend(["", f"Prompt: {prompt}"])
    return lines
