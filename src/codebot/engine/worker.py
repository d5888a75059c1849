"""Single sequential worker that executes queued jobs."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path

from codebot.engine.logs import JobLogSink, job_log_path, job_meta_path, write_job_meta
from codebot.engine.models import ExecutionResult, ExitInfo, Job, JobStatus, utc_now_iso
from codebot.engine.providers.base import (
    ExecutionContext,
    Provider,
    ProviderError,
    SpawnError,
)
from codebot.engine.providers.registry import ProviderRegistry
from codebot.engine.reporting import JobReporter
from codebot.engine.store import JobStore

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    canceled: int = 0
    idle_polls: int = 0

    def add(self, status: JobStatus | None) -> None:
        if status is None:
            self.idle_polls += 1
            return
        self.processed += 1
        if status == JobStatus.SUCCEEDED:
            self.succeeded += 1
        elif status == JobStatus.CANCELED:
            self.canceled += 1
        else:
            self.failed += 1


class WorkerLoop:
    """Claims the oldest queued job, runs it to completion, then looks again.

    Only one job is ever running: the loop never claims a new job before the
    previous one has been finalized.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: JobStore,
        providers: ProviderRegistry,
        reporter: JobReporter,
        logs_dir: Path,
        tail_chars: int,
        poll_interval_seconds: float = 0.75,
        error_backoff_seconds: float = 1.5,
    ) -> None:
        self.store = store
        self.providers = providers
        self.reporter = reporter
        self.logs_dir = logs_dir
        self.tail_chars = tail_chars
        self.poll_interval_seconds = poll_interval_seconds
        self.error_backoff_seconds = error_backoff_seconds
        self._start_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def ensure_started(self) -> bool:
        """Start the background loop unless it is already running."""

        with self._start_lock:
            if self.is_running:
                return False
            self._stop.clear()
            self._thread = threading.Thread(
                target=self.run_forever,
                daemon=True,
                name="codebot-worker",
            )
            self._thread.start()
            logger.info("Worker loop started")
            return True

    def stop(self, timeout: float | None = 15.0) -> None:
        """Ask the loop to exit after the current job and wait for it."""

        self._stop.set()
        with self._start_lock:
            thread = self._thread
            self._thread = None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)
            logger.info("Worker loop stopped")

    def run_forever(
        self,
        *,
        max_jobs: int | None = None,
        exit_when_idle: bool = False,
    ) -> WorkerRunSummary:
        """Poll until stopped; optionally stop after ``max_jobs`` or on an empty queue."""

        summary = WorkerRunSummary()
        while not self._stop.is_set():
            if max_jobs is not None and summary.processed >= max_jobs:
                break
            try:
                status = self.run_once()
            except Exception:
                logger.exception("Worker loop error")
                self._stop.wait(self.error_backoff_seconds)
                continue
            summary.add(status)
            if status is None:
                if exit_when_idle:
                    break
                self._stop.wait(self.poll_interval_seconds)
        return summary

    def run_once(self) -> JobStatus | None:
        """Process at most one queued job; return its final status."""

        job = self.store.claim_next_queued()
        if job is None:
            return None
        logger.info("Claimed job %s (provider=%s)", job.id, job.provider)
        return self._run_job(job)

    def _run_job(self, job: Job) -> JobStatus:
        log_path = job_log_path(self.logs_dir, job.id)
        try:
            result = self._execute(job, log_path)
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s could not be executed", job.id)
            result = ExecutionResult(
                output_tail=f"[codebot] {type(error).__name__}: {error}",
                exit_info=ExitInfo(code=1, signal="provider_error"),
                model_label="",
                provider_name=job.provider,
            )

        final = self._finalize(job.id, result.exit_info)
        if final is None:
            logger.warning("Job %s disappeared from the store before finalization", job.id)
            apply_exit(job, result.exit_info)
            final = job
        logger.info(
            "Job %s finished: status=%s code=%s signal=%s",
            final.id,
            final.status.value,
            result.exit_info.code,
            result.exit_info.signal,
        )
        self.reporter.finished(final, result, log_path)
        return final.status

    def _execute(self, job: Job, log_path: Path) -> ExecutionResult:
        provider = self.providers.get(job.provider)
        model_label = provider.model_label

        with JobLogSink(log_path, tail_chars=self.tail_chars) as log:
            context = ExecutionContext(
                workdir=Path(job.workdir),
                log=log,
                register_handle=lambda handle: self._register_handle(job.id, handle, provider),
                notify=lambda text: self.reporter.notify(job.chat_id, text),
            )
            try:
                self._write_meta(job, provider.describe())
                self.reporter.started(job, model_label=model_label)
                return provider.execute(job, context)
            except Exception as error:  # noqa: BLE001
                return _failure_result(
                    error,
                    log,
                    provider_name=job.provider,
                    model_label=model_label,
                )

    def _register_handle(self, job_id: str, handle: str, provider: Provider) -> None:
        def _set_handle(job: Job) -> None:
            job.handle = handle

        updated = self.store.update(job_id, _set_handle)
        if updated is not None and updated.status == JobStatus.CANCELED:
            logger.info("Job %s was canceled before it started; aborting", job_id)
            provider.abort(updated)

    def _finalize(self, job_id: str, exit_info: ExitInfo) -> Job | None:
        return self.store.update(job_id, lambda job: apply_exit(job, exit_info))

    def _write_meta(self, job: Job, provider_fields: dict[str, object]) -> None:
        write_job_meta(
            job_meta_path(self.logs_dir, job.id),
            {
                "id": job.id,
                "chat_id": job.chat_id,
                "provider": job.provider,
                "workdir": job.workdir,
                "prompt": job.prompt,
                "started_at": job.started_at,
                **provider_fields,
            },
        )


def _failure_result(
    error: Exception,
    log: JobLogSink,
    *,
    provider_name: str,
    model_label: str,
) -> ExecutionResult:
    if isinstance(error, SpawnError):
        exit_info = ExitInfo(code=1, signal="spawn_error")
    else:
        exit_info = ExitInfo(code=1, signal="provider_error")
    if isinstance(error, ProviderError):
        logger.warning("Provider %s failed: %s", provider_name, error)
    else:
        logger.exception("Provider %s crashed", provider_name)
    log.write(f"\n[codebot] {type(error).__name__}: {error}\n")
    return ExecutionResult(
        output_tail=log.tail.text,
        exit_info=exit_info,
        model_label=model_label,
        provider_name=provider_name,
    )


def apply_exit(job: Job, exit_info: ExitInfo) -> None:
    """Record the exit and derive the terminal status, keeping ``canceled`` as is."""

    job.finished_at = utc_now_iso()
    job.exit = exit_info
    if job.status != JobStatus.CANCELED:
        job.status = JobStatus.SUCCEEDED if exit_info.succeeded else JobStatus.FAILED
