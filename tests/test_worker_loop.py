from __future__ import annotations

import json
import threading
from collections.abc import Callable
from pathlib import Path

import allure
from conftest import RecordingNotifier

from codebot.engine.logs import job_meta_path
from codebot.engine.models import ExecutionResult, ExitInfo, Job, JobStatus
from codebot.engine.providers.base import ExecutionContext, SpawnError
from codebot.engine.providers.registry import ProviderRegistry
from codebot.engine.reporting import JobReporter
from codebot.engine.store import JobStore
from codebot.engine.worker import WorkerLoop, apply_exit

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Worker Loop"),
]


class ScriptedProvider:
    """Provider whose execute behaviour is supplied by the test."""

    name = "codex"
    model_label = "fake-model"

    def __init__(self, behaviour: Callable[[Job, ExecutionContext], ExitInfo]) -> None:
        self.behaviour = behaviour
        self.executed: list[str] = []

    def describe(self) -> dict[str, object]:
        return {"fake": True}

    def execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
        self.executed.append(job.id)
        context.register_handle("4242")
        exit_info = self.behaviour(job, context)
        return ExecutionResult(
            output_tail=context.log.tail.text,
            exit_info=exit_info,
            model_label=self.model_label,
            provider_name=self.name,
        )

    def abort(self, job: Job) -> bool:
        return False


def _succeed(job: Job, context: ExecutionContext) -> ExitInfo:
    context.log.write(f"done {job.prompt}\n")
    return ExitInfo(code=0)


def _queue(store: JobStore, job_id: str, created_at: str, prompt: str = "task") -> None:
    store.upsert(
        Job(
            id=job_id,
            chat_id="42",
            status=JobStatus.QUEUED,
            prompt=prompt,
            workdir="/tmp",
            provider="codex",
            created_at=created_at,
            updated_at=created_at,
        ),
    )


def _worker(
    tmp_path: Path,
    provider: ScriptedProvider,
    notifier: RecordingNotifier,
    *,
    max_inline_output_chars: int = 12_000,
) -> tuple[WorkerLoop, JobStore]:
    store = JobStore(tmp_path / "jobs.json")
    worker = WorkerLoop(
        store=store,
        providers=ProviderRegistry({"codex": provider}, default="codex"),
        reporter=JobReporter(notifier, max_inline_output_chars=max_inline_output_chars),
        logs_dir=tmp_path / "logs",
        tail_chars=14_000,
        poll_interval_seconds=0.01,
        error_backoff_seconds=0.01,
    )
    return worker, store


def test_run_once_idle_returns_none(tmp_path: Path, notifier: RecordingNotifier) -> None:
    worker, _store = _worker(tmp_path, ScriptedProvider(_succeed), notifier)

    assert worker.run_once() is None
    assert notifier.messages == []


def test_jobs_run_in_fifo_order(tmp_path: Path, notifier: RecordingNotifier) -> None:
    provider = ScriptedProvider(_succeed)
    worker, store = _worker(tmp_path, provider, notifier)
    _queue(store, "2-bbbbbb", "2026-01-01T00:00:02+00:00")
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")
    _queue(store, "3-cccccc", "2026-01-01T00:00:03+00:00")

    summary = worker.run_forever(exit_when_idle=True)

    assert provider.executed == ["1-aaaaaa", "2-bbbbbb", "3-cccccc"]
    assert summary.processed == 3
    assert summary.succeeded == 3
    assert summary.idle_polls == 1
    assert {job.status for job in store.load()} == {JobStatus.SUCCEEDED}


def test_successful_job_is_finalized_and_reported(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    worker, store = _worker(tmp_path, ScriptedProvider(_succeed), notifier)
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00", prompt="hello")

    assert worker.run_once() == JobStatus.SUCCEEDED

    job = store.get("1-aaaaaa")
    assert job.exit == ExitInfo(code=0)
    assert job.handle == "4242"
    assert job.started_at <= job.finished_at
    started, summary = notifier.texts("42")
    assert started.startswith("🚀 Job 1-aaaaaa started.")
    assert "Model: fake-model" in started
    assert summary.startswith("🧾 Job 1-aaaaaa SUCCEEDED")
    assert "done hello" in summary
    assert notifier.documents == []
    meta = json.loads(job_meta_path(tmp_path / "logs", "1-aaaaaa").read_text("utf-8"))
    assert meta["prompt"] == "hello"
    assert meta["fake"] is True


def test_provider_exception_marks_job_failed(tmp_path: Path, notifier: RecordingNotifier) -> None:
    def _crash(job: Job, context: ExecutionContext) -> ExitInfo:
        raise RuntimeError("provider blew up")

    worker, store = _worker(tmp_path, ScriptedProvider(_crash), notifier)
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    assert worker.run_once() == JobStatus.FAILED

    job = store.get("1-aaaaaa")
    assert job.exit == ExitInfo(code=1, signal="provider_error")
    summary = notifier.texts("42")[-1]
    assert "FAILED" in summary
    assert "provider blew up" in summary
    assert len(notifier.documents) == 1
    assert notifier.documents[0][2].endswith("❌ Completed with errors.")


def test_spawn_error_is_reported_as_spawn_error(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    def _no_binary(job: Job, context: ExecutionContext) -> ExitInfo:
        raise SpawnError("Agent command not found: codex")

    worker, store = _worker(tmp_path, ScriptedProvider(_no_binary), notifier)
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    worker.run_once()

    assert store.get("1-aaaaaa").exit == ExitInfo(code=1, signal="spawn_error")


def test_unwritable_log_dir_still_finalizes_job(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    provider = ScriptedProvider(_succeed)
    worker, store = _worker(tmp_path, provider, notifier)
    (tmp_path / "logs").write_text("not a directory", "utf-8")
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    assert worker.run_once() == JobStatus.FAILED

    job = store.get("1-aaaaaa")
    assert job.status == JobStatus.FAILED
    assert job.exit == ExitInfo(code=1, signal="provider_error")
    assert job.finished_at is not None
    assert provider.executed == []
    assert "FAILED" in notifier.texts("42")[-1]


def test_cancel_during_execution_wins_over_success(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    store_holder: dict[str, JobStore] = {}

    def _canceled_midway(job: Job, context: ExecutionContext) -> ExitInfo:
        def _cancel(record: Job) -> None:
            record.status = JobStatus.CANCELED

        store_holder["store"].update(job.id, _cancel)
        return ExitInfo(code=0)

    worker, store = _worker(tmp_path, ScriptedProvider(_canceled_midway), notifier)
    store_holder["store"] = store
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    assert worker.run_once() == JobStatus.CANCELED

    job = store.get("1-aaaaaa")
    assert job.status == JobStatus.CANCELED
    assert job.exit == ExitInfo(code=0)
    assert job.finished_at is not None
    assert "CANCELED" in notifier.texts("42")[-1]


def test_large_output_sends_notice_and_log_document(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    def _chatty(job: Job, context: ExecutionContext) -> ExitInfo:
        context.log.write("y" * 500 + "\nhttps://github.com/acme/app/pull/9\ntokens used\n1,234\n")
        return ExitInfo(code=0)

    worker, store = _worker(
        tmp_path,
        ScriptedProvider(_chatty),
        notifier,
        max_inline_output_chars=200,
    )
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    worker.run_once()

    texts = notifier.texts("42")
    assert texts[1] == "🧾 Job 1-aaaaaa done. Output is large; sending log file…"
    assert texts[2] == "🔗 PR link(s):\nhttps://github.com/acme/app/pull/9"
    chat_id, path, caption = notifier.documents[0]
    assert chat_id == "42"
    assert path.name == "job-1-aaaaaa.log.txt"
    assert "Tokens used: 1,234" in caption
    assert caption.endswith("✅ Completed.")


def test_delivery_failures_do_not_break_the_worker(tmp_path: Path) -> None:
    class FailingNotifier(RecordingNotifier):
        def send_message(self, chat_id: str, text: str) -> None:
            raise RuntimeError("telegram down")

    worker, store = _worker(tmp_path, ScriptedProvider(_succeed), FailingNotifier())
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    assert worker.run_once() == JobStatus.SUCCEEDED


def test_ensure_started_is_idempotent_and_stop_joins(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    done = threading.Event()

    def _signal(job: Job, context: ExecutionContext) -> ExitInfo:
        done.set()
        return ExitInfo(code=0)

    worker, store = _worker(tmp_path, ScriptedProvider(_signal), notifier)

    assert worker.ensure_started() is True
    assert worker.ensure_started() is False
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")
    assert done.wait(5)
    worker.stop(timeout=5)

    assert not worker.is_running
    assert store.get("1-aaaaaa").status in {JobStatus.RUNNING, JobStatus.SUCCEEDED}


def test_apply_exit_keeps_canceled_status() -> None:
    job = Job(
        id="1",
        chat_id="42",
        status=JobStatus.CANCELED,
        prompt="p",
        workdir="/tmp",
        provider="codex",
        created_at="2026-01-01T00:00:00+00:00",
        updated_at="2026-01-01T00:00:00+00:00",
    )

    apply_exit(job, ExitInfo(code=1))

    assert job.status == JobStatus.CANCELED
    assert job.exit == ExitInfo(code=1)


def test_handle_registered_after_external_cancel_aborts_provider(
    tmp_path: Path,
    notifier: RecordingNotifier,
) -> None:
    aborted: list[str] = []

    class CanceledBeforeStart(ScriptedProvider):
        def execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
            def _cancel(record: Job) -> None:
                record.status = JobStatus.CANCELED

            store.update(job.id, _cancel)
            return super().execute(job, context)

        def abort(self, job: Job) -> bool:
            aborted.append(job.handle)
            return True

    worker, store = _worker(tmp_path, CanceledBeforeStart(_succeed), notifier)
    _queue(store, "1-aaaaaa", "2026-01-01T00:00:01+00:00")

    assert worker.run_once() == JobStatus.CANCELED
    assert aborted == ["4242"]
