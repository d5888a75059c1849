"""Per-job log files, bounded output tail, and metadata snapshots."""

from __future__ import annotations

import json
import re
import threading
from pathlib import Path
from types import TracebackType
from typing import Any

_TOKENS_USED_RE = re.compile(r"tokens used[\s:]*\n?\s*([\d,]+)", re.IGNORECASE)
_PR_URL_RE = re.compile(r"https://github\.com/[^\s]+/pull/\d+")


class TailBuffer:
    """Keeps only the most recent ``limit`` characters of a text stream."""

    def __init__(self, limit: int) -> None:
        if limit <= 0:
            raise ValueError("Tail limit must be > 0.")
        self.limit = limit
        self._text = ""
        self._lock = threading.Lock()

    def append(self, text: str) -> None:
        if not text:
            return
        with self._lock:
            combined = self._text + text
            if len(combined) > self.limit:
                combined = combined[-self.limit :]
            self._text = combined

    @property
    def text(self) -> str:
        with self._lock:
            return self._text

    def __len__(self) -> int:
        return len(self.text)


class JobLogSink:
    """Append-only text log for one job, mirrored into a tail buffer."""

    def __init__(self, path: Path, *, tail_chars: int) -> None:
        self.path = path
        self.tail = TailBuffer(tail_chars)
        self._lock = threading.Lock()
        path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = path.open("a", encoding="utf-8")

    def write(self, text: str) -> None:
        """Append output text to the file and to the in-memory tail."""

        self.write_raw(text)
        self.tail.append(text)

    def write_raw(self, text: str) -> None:
        """Append bookkeeping text to the file only."""

        if not text:
            return
        with self._lock:
            if self._handle.closed:
                return
            self._handle.write(text)
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()

    def __enter__(self) -> JobLogSink:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def job_log_path(logs_dir: Path, job_id: str) -> Path:
    return logs_dir / f"job-{job_id}.log.txt"


def job_meta_path(logs_dir: Path, job_id: str) -> Path:
    return logs_dir / f"job-{job_id}.meta.json"


def write_job_meta(path: Path, payload: dict[str, Any]) -> None:
    """Persist the audit snapshot written once when a job starts."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), "utf-8")


def read_log_text(path: Path) -> str:
    if not path.exists():
        return ""
    return path.read_text("utf-8", errors="replace")


def parse_tokens_used(output: str) -> int | None:
    """Extract the agent's "tokens used" counter from its output, if any."""

    match = _TOKENS_USED_RE.search(output)
    if match is None:
        return None
    return int(match.group(1).replace(",", ""))


def extract_pr_urls(output: str, *, limit: int = 3) -> list[str]:
    """Return the last ``limit`` unique GitHub pull-request URLs in order."""

    unique: list[str] = []
    for url in _PR_URL_RE.findall(output):
        if url not in unique:
            unique.append(url)
    return unique[-limit:]
