from __future__ import annotations

import json
from pathlib import Path

import allure

from codebot.engine.models import ExitInfo, Job, JobStatus
from codebot.engine.store import JobStore

pytestmark = [
    allure.epic("Job Engine"),
    allure.feature("Job Store"),
]


def _job(job_id: str, *, created_at: str, status: JobStatus = JobStatus.QUEUED) -> Job:
    return Job(
        id=job_id,
        chat_id="42",
        status=status,
        prompt=f"task {job_id}",
        workdir="/tmp/repo",
        provider="codex",
        created_at=created_at,
        updated_at=created_at,
    )


def test_load_missing_file_returns_empty(tmp_path: Path) -> None:
    assert JobStore(tmp_path / "jobs.json").load() == []


def test_load_corrupt_file_returns_empty(tmp_path: Path) -> None:
    path = tmp_path / "jobs.json"
    path.write_text("{not json", "utf-8")

    assert JobStore(path).load() == []


def test_load_skips_invalid_records_and_keeps_the_rest(tmp_path: Path) -> None:
    path = tmp_path / "jobs.json"
    good = _job("1-aaaaaa", created_at="2026-01-01T00:00:01+00:00")
    path.write_text(
        json.dumps({"jobs": [{"id": 1}, "junk", good.to_dict()]}),
        "utf-8",
    )
    store = JobStore(path)

    assert [job.id for job in store.load()] == ["1-aaaaaa"]

    store.upsert(_job("2-bbbbbb", created_at="2026-01-01T00:00:02+00:00"))

    assert [job.id for job in store.load()] == ["1-aaaaaa", "2-bbbbbb"]


def test_upsert_persists_snake_case_document(tmp_path: Path) -> None:
    path = tmp_path / "state" / "jobs.json"
    store = JobStore(path)
    job = _job("1-aaaaaa", created_at="2026-01-01T00:00:00+00:00")
    job.exit = ExitInfo(code=0)

    store.upsert(job)

    payload = json.loads(path.read_text("utf-8"))
    assert list(payload) == ["jobs"]
    record = payload["jobs"][0]
    assert record["chat_id"] == "42"
    assert record["created_at"] == "2026-01-01T00:00:00+00:00"
    assert record["exit"] == {"code": 0, "signal": None}
    assert [p.name for p in path.parent.iterdir()] == ["jobs.json"]


def test_upsert_replaces_existing_record(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    job = _job("1-aaaaaa", created_at="2026-01-01T00:00:00+00:00")
    store.upsert(job)

    job.status = JobStatus.RUNNING
    store.upsert(job)

    jobs = store.load()
    assert len(jobs) == 1
    assert jobs[0].status == JobStatus.RUNNING
    assert store.get("1-aaaaaa") == jobs[0]
    assert store.get("missing") is None


def test_update_mutates_one_record_and_touches_updated_at(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    store.upsert(_job("1-aaaaaa", created_at="2026-01-01T00:00:00+00:00"))

    def _set_handle(job: Job) -> None:
        job.handle = "123"

    updated = store.update("1-aaaaaa", _set_handle)

    assert updated is not None
    assert updated.handle == "123"
    assert updated.updated_at != "2026-01-01T00:00:00+00:00"
    assert store.get("1-aaaaaa").handle == "123"
    assert store.update("missing", _set_handle) is None


def test_claim_next_queued_is_fifo_by_created_at(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    store.upsert(_job("3-cccccc", created_at="2026-01-01T00:00:03+00:00"))
    store.upsert(_job("1-aaaaaa", created_at="2026-01-01T00:00:01+00:00"))
    store.upsert(
        _job("0-running", created_at="2026-01-01T00:00:00+00:00", status=JobStatus.RUNNING),
    )
    store.upsert(_job("2-bbbbbb", created_at="2026-01-01T00:00:02+00:00"))

    claimed = [store.claim_next_queued() for _ in range(4)]

    assert [job.id if job else None for job in claimed] == [
        "1-aaaaaa",
        "2-bbbbbb",
        "3-cccccc",
        None,
    ]
    first = store.get("1-aaaaaa")
    assert first.status == JobStatus.RUNNING
    assert first.started_at is not None
    assert first.handle is None


def test_claim_keeps_insertion_order_for_equal_timestamps(tmp_path: Path) -> None:
    store = JobStore(tmp_path / "jobs.json")
    same = "2026-01-01T00:00:00+00:00"
    store.upsert(_job("1-ffffff", created_at=same))
    store.upsert(_job("1-000000", created_at=same))

    assert store.claim_next_queued().id == "1-ffffff"
    assert store.claim_next_queued().id == "1-000000"
