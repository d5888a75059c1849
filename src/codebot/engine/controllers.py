"""Controllers for codebot CLI commands."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from codebot.chat.bot import TelegramBot
from codebot.chat.delivery import ConsoleNotifier, TelegramNotifier
from codebot.chat.router import CommandRouter
from codebot.chat.workspace import ChatStateStore
from codebot.config import Settings
from codebot.engine.models import CancelReason
from codebot.engine.reporting import Notifier, describe_job
from codebot.engine.service import Engine, FixedWorkdir, build_engine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class JobsEnqueueCommand:
    """CLI input for queueing one job."""

    jobs_dir: Path | None
    chat_id: str
    prompt: str
    provider: str | None
    workdir: Path | None
    wait: bool


@dataclass(slots=True)
class JobsListCommand:
    """CLI input for recent-job listing."""

    jobs_dir: Path | None
    chat_id: str
    limit: int


@dataclass(slots=True)
class JobsShowCommand:
    jobs_dir: Path | None
    job_id: str


@dataclass(slots=True)
class JobsCancelCommand:
    jobs_dir: Path | None
    chat_id: str
    job_id: str


@dataclass(slots=True)
class JobsWorkerCommand:
    """CLI input for a foreground worker run."""

    jobs_dir: Path | None
    once: bool
    max_jobs: int | None


@dataclass(slots=True)
class ServeCommand:
    jobs_dir: Path | None


class CodebotCliController:
    """Coordinates queue, worker, inspection and bot CLI operations."""

    def __init__(self, notifier: Notifier | None = None) -> None:
        self.notifier = notifier

    def enqueue(self, command: JobsEnqueueCommand) -> list[str]:
        settings = _settings(command.jobs_dir)
        engine = self._engine(settings)
        queued = engine.enqueue(
            command.chat_id,
            command.prompt,
            provider_override=command.provider,
            workdir=command.workdir,
        )
        lines = [
            f"Job enqueued: job_id={queued.job_id} provider={queued.provider}",
            f"Workdir: {queued.workdir}",
        ]
        if not command.wait:
            return lines

        try:
            _drain_until_finished(engine, queued.job_id, settings.jobs.poll_interval_seconds)
        finally:
            engine.shutdown()
        job = engine.get_job(queued.job_id)
        if job is not None:
            lines.extend(describe_job(job))
        return lines

    def list_jobs(self, command: JobsListCommand) -> list[str]:
        engine = self._engine(_settings(command.jobs_dir))
        jobs = engine.list_recent_jobs(command.chat_id, command.limit)
        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.id} status={job.status.value} provider={job.provider} "
                f"created_at={job.created_at} workdir={job.workdir}",
            )
        return lines

    def show_job(self, command: JobsShowCommand) -> list[str]:
        engine = self._engine(_settings(command.jobs_dir))
        job = engine.get_job(command.job_id)
        if job is None:
            return [f"Job not found: {command.job_id}"]
        return describe_job(job, prompt_chars=len(job.prompt))

    def cancel_job(self, command: JobsCancelCommand) -> list[str]:
        engine = self._engine(_settings(command.jobs_dir))
        result = engine.cancel(command.chat_id, command.job_id)
        if result.ok:
            return [f"Job canceled: {command.job_id}"]
        if result.reason == CancelReason.NOT_FOUND:
            return [f"Job not found: {command.job_id}"]
        status = result.status.value if result.status is not None else "unknown"
        return [f"Job {command.job_id} is not running (status: {status})."]

    def run_worker(self, command: JobsWorkerCommand) -> list[str]:
        engine = self._engine(_settings(command.jobs_dir))
        max_jobs = 1 if command.once else command.max_jobs
        try:
            summary = engine.worker.run_forever(max_jobs=max_jobs, exit_when_idle=True)
        finally:
            engine.shutdown()
        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"failed={summary.failed} canceled={summary.canceled} "
            f"idle_polls={summary.idle_polls}",
        ]

    def serve(self, command: ServeCommand) -> list[str]:
        """Run the Telegram bot and the background worker until interrupted."""

        settings = _settings(command.jobs_dir)
        settings.validate_for_telegram()
        telegram = TelegramNotifier(settings.telegram)
        state = ChatStateStore(settings.jobs.chat_state_path, settings.workspace)
        engine = build_engine(settings, telegram, state)
        router = CommandRouter(
            engine=engine,
            state=state,
            notifier=telegram,
            logs_dir=settings.jobs.logs_dir,
            allowed_chat_id=settings.telegram.allowed_chat_id,
            max_error_chars=settings.telegram.max_chars,
            max_inline_chars=settings.jobs.max_inline_output_chars,
        )
        bot = TelegramBot(settings=settings.telegram, router=router)
        # queued jobs left by a previous run start without waiting for a new enqueue
        engine.worker.ensure_started()
        try:
            bot.run()
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            engine.shutdown()
            telegram.close()
        return ["Bot stopped."]

    def _engine(self, settings: Settings) -> Engine:
        return build_engine(
            settings,
            self.notifier or ConsoleNotifier(),
            FixedWorkdir(settings.workspace.default_workdir),
            autostart=False,
        )


def _settings(jobs_dir: Path | None) -> Settings:
    settings = Settings.from_env(jobs_dir=jobs_dir)
    settings.validate()
    return settings


def _drain_until_finished(engine: Engine, job_id: str, poll_interval_seconds: float) -> None:
    """Run the worker in this process until ``job_id`` reaches a terminal state."""

    while True:
        job = engine.get_job(job_id)
        if job is None or job.status.is_terminal:
            return
        if engine.worker.run_once() is None:
            time.sleep(poll_interval_seconds)
