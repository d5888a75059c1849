"""Whole-document JSON store for job records.

Every operation reads or rewrites the full ``{"jobs": [...]}`` document.
Within one process, read-modify-write cycles are serialized by a lock; across
processes there is no locking and the last writer wins. The worker loop is the
only writer of ``running`` -> terminal transitions and the engine facade the
only writer of external cancellation, so conflicting writes are rare but
possible.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

from codebot.engine.models import Job, JobStatus, utc_now_iso

logger = logging.getLogger(__name__)


class StoreCorruptionError(ValueError):
    """Persisted job document could not be parsed."""


class JobStore:
    """Durable mapping from job id to job record."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.RLock()

    def load(self) -> list[Job]:
        """Return all jobs; a missing or corrupt document yields an empty list."""

        with self._lock:
            if not self.path.exists():
                return []
            try:
                return _parse_document(self.path.read_text("utf-8"))
            except (OSError, StoreCorruptionError) as error:
                logger.warning("Job store %s unreadable, treating as empty: %s", self.path, error)
                return []

    def save(self, jobs: list[Job]) -> None:
        with self._lock:
            write_json_atomic(self.path, {"jobs": [job.to_dict() for job in jobs]})

    def get(self, job_id: str) -> Job | None:
        for job in self.load():
            if job.id == job_id:
                return job
        return None

    def upsert(self, job: Job) -> None:
        """Insert or replace one record, re-loading the document first."""

        with self._lock:
            jobs = self.load()
            for index, existing in enumerate(jobs):
                if existing.id == job.id:
                    jobs[index] = job
                    break
            else:
                jobs.append(job)
            self.save(jobs)

    def update(self, job_id: str, mutate: Callable[[Job], None]) -> Job | None:
        """Re-load, apply ``mutate`` to one record, and save it.

        Returns the updated job, or ``None`` when the id is unknown.
        """

        with self._lock:
            jobs = self.load()
            for job in jobs:
                if job.id == job_id:
                    mutate(job)
                    job.updated_at = utc_now_iso()
                    self.save(jobs)
                    return job
            return None

    def claim_next_queued(self) -> Job | None:
        """Mark the oldest queued job as running and return it."""

        with self._lock:
            jobs = self.load()
            queued = [job for job in jobs if job.status == JobStatus.QUEUED]
            if not queued:
                return None
            # sorted() is stable, so same-timestamp jobs keep insertion order
            next_job = sorted(queued, key=lambda job: job.created_at)[0]
            now = utc_now_iso()
            next_job.status = JobStatus.RUNNING
            next_job.started_at = now
            next_job.updated_at = now
            next_job.handle = None
            self.save(jobs)
            return next_job


def _parse_document(text: str) -> list[Job]:
    try:
        payload: Any = json.loads(text)
    except json.JSONDecodeError as error:
        raise StoreCorruptionError(f"JSON parse error: {error}") from error
    if not isinstance(payload, dict):
        raise StoreCorruptionError("Expected JSON object at document root")
    raw_jobs = payload.get("jobs")
    if raw_jobs is None:
        return []
    if not isinstance(raw_jobs, list):
        raise StoreCorruptionError("jobs must be an array")

    jobs: list[Job] = []
    for index, item in enumerate(raw_jobs):
        if not isinstance(item, dict):
            logger.warning("Skipping job entry #%d: expected an object", index)
            continue
        try:
            jobs.append(Job.from_dict(item))
        except ValueError as error:
            logger.warning("Skipping invalid job record #%d: %s", index, error)
    return jobs


def write_json_atomic(path: Path, payload: Any) -> None:
    """Write JSON through a temp file in the same directory, then rename over ``path``."""

    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise
