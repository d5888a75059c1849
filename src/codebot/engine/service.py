"""Engine facade used by the chat router and the CLI."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from codebot.config import Settings
from codebot.engine.models import (
    CancelReason,
    CancelResult,
    EnqueueResult,
    Job,
    JobStatus,
    new_job_id,
    utc_now_iso,
)
from codebot.engine.providers.registry import ProviderRegistry, build_provider_registry
from codebot.engine.reporting import JobReporter, Notifier
from codebot.engine.store import JobStore
from codebot.engine.worker import WorkerLoop

logger = logging.getLogger(__name__)


class WorkdirResolver(Protocol):
    """Maps a chat to the directory its next job should run in."""

    def resolve_workdir(self, chat_id: str) -> Path:
        """Return the working directory currently selected for ``chat_id``."""


class FixedWorkdir:
    """Resolver that always answers with one directory."""

    def __init__(self, workdir: Path) -> None:
        self.workdir = workdir

    def resolve_workdir(self, chat_id: str) -> Path:  # noqa: ARG002
        return self.workdir


class Engine:
    """Queues jobs, starts the worker on demand, and handles cancellation.

    ``workdir`` and ``provider`` are resolved once, at enqueue time, and stored
    on the job; later changes to the chat's selection do not affect queued jobs.
    """

    def __init__(
        self,
        *,
        store: JobStore,
        providers: ProviderRegistry,
        worker: WorkerLoop,
        workdir_resolver: WorkdirResolver,
        autostart: bool = True,
    ) -> None:
        self.store = store
        self.providers = providers
        self.worker = worker
        self.workdir_resolver = workdir_resolver
        self.autostart = autostart

    def enqueue(
        self,
        chat_id: str,
        prompt: str,
        provider_override: str | None = None,
        *,
        workdir: Path | None = None,
    ) -> EnqueueResult:
        if not prompt.strip():
            raise ValueError("Prompt must not be empty.")
        resolved = workdir or self.workdir_resolver.resolve_workdir(chat_id)
        workdir_text = str(Path(resolved).expanduser().resolve())
        provider_name = self.providers.normalize(provider_override)
        now = utc_now_iso()
        job = Job(
            id=new_job_id(),
            chat_id=str(chat_id),
            status=JobStatus.QUEUED,
            prompt=prompt,
            workdir=workdir_text,
            provider=provider_name,
            created_at=now,
            updated_at=now,
        )
        self.store.upsert(job)
        logger.info(
            "Enqueued job %s (chat=%s provider=%s workdir=%s)",
            job.id,
            job.chat_id,
            provider_name,
            workdir_text,
        )
        if self.autostart:
            self.worker.ensure_started()
        return EnqueueResult(job_id=job.id, workdir=workdir_text, provider=provider_name)

    def cancel(self, chat_id: str, job_id: str) -> CancelResult:
        """Abort a running job owned by ``chat_id``.

        Queued jobs are not cancelable and report ``not_running``.
        """

        job = self.store.get(job_id)
        if job is None or job.chat_id != str(chat_id):
            return CancelResult(ok=False, reason=CancelReason.NOT_FOUND)
        if job.status != JobStatus.RUNNING:
            return CancelResult(ok=False, reason=CancelReason.NOT_RUNNING, status=job.status)

        marked = False

        def _mark_canceled(current: Job) -> None:
            nonlocal marked
            if current.status == JobStatus.RUNNING:
                current.status = JobStatus.CANCELED
                marked = True

        updated = self.store.update(job_id, _mark_canceled)
        if not marked:
            status = updated.status if updated is not None else None
            return CancelResult(ok=False, reason=CancelReason.NOT_RUNNING, status=status)

        provider = self.providers.get(job.provider)
        try:
            signaled = provider.abort(updated)
        except Exception as error:  # noqa: BLE001
            logger.warning("Abort of job %s failed: %s", job_id, error)
            signaled = False
        logger.info("Canceled job %s (signaled=%s)", job_id, signaled)
        return CancelResult(ok=True, status=JobStatus.CANCELED)

    def get_job(self, job_id: str) -> Job | None:
        return self.store.get(job_id)

    def list_recent_jobs(self, chat_id: str, limit: int = 10) -> list[Job]:
        """Jobs of one chat, newest first."""

        owned = [job for job in self.store.load() if job.chat_id == str(chat_id)]
        owned.sort(key=lambda job: job.created_at, reverse=True)
        return owned[: max(0, limit)]

    def last_job(self, chat_id: str) -> Job | None:
        recent = self.list_recent_jobs(chat_id, limit=1)
        return recent[0] if recent else None

    def shutdown(self, timeout: float | None = 15.0) -> None:
        self.worker.stop(timeout=timeout)
        self.providers.close()


def build_engine(
    settings: Settings,
    notifier: Notifier,
    workdir_resolver: WorkdirResolver,
    *,
    providers: ProviderRegistry | None = None,
    autostart: bool = True,
) -> Engine:
    """Wire store, providers, reporter and worker from settings."""

    store = JobStore(settings.jobs.db_path)
    registry = providers or build_provider_registry(settings)
    worker = WorkerLoop(
        store=store,
        providers=registry,
        reporter=JobReporter(
            notifier,
            max_inline_output_chars=settings.jobs.max_inline_output_chars,
        ),
        logs_dir=settings.jobs.logs_dir,
        tail_chars=settings.jobs.tail_chars,
        poll_interval_seconds=settings.jobs.poll_interval_seconds,
        error_backoff_seconds=settings.jobs.error_backoff_seconds,
    )
    return Engine(
        store=store,
        providers=registry,
        worker=worker,
        workdir_resolver=workdir_resolver,
        autostart=autostart,
    )
