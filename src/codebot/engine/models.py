"""Domain models for the job queue and provider execution."""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.SUCCEEDED, JobStatus.FAILED, JobStatus.CANCELED})


class CancelReason(str, Enum):
    """Why a cancel request was rejected."""

    NOT_FOUND = "not_found"
    NOT_RUNNING = "not_running"


@dataclass(slots=True, frozen=True)
class ExitInfo:
    """Process-style exit report of one execution."""

    code: int | None
    signal: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.code == 0

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "signal": self.signal}

    @classmethod
    def from_dict(cls, raw: object) -> ExitInfo | None:
        if not isinstance(raw, dict):
            return None
        code = raw.get("code")
        signal = raw.get("signal")
        return cls(
            code=code if isinstance(code, int) else None,
            signal=signal if isinstance(signal, str) else None,
        )


@dataclass(slots=True)
class Job:
    """One user-submitted task plus its execution state."""

    id: str
    chat_id: str
    status: JobStatus
    prompt: str
    workdir: str
    provider: str
    created_at: str
    updated_at: str
    started_at: str | None = None
    finished_at: str | None = None
    handle: str | None = None
    exit: ExitInfo | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "chat_id": self.chat_id,
            "status": self.status.value,
            "prompt": self.prompt,
            "workdir": self.workdir,
            "provider": self.provider,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "handle": self.handle,
            "exit": self.exit.to_dict() if self.exit is not None else None,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Job:
        """Deserialize one stored record, raising on malformed required fields."""

        for key in ("id", "chat_id", "status", "prompt", "workdir", "provider", "created_at"):
            if not isinstance(raw.get(key), str):
                raise ValueError(f"job.{key} must be a string")
        handle = raw.get("handle")
        return cls(
            id=raw["id"],
            chat_id=raw["chat_id"],
            status=JobStatus(raw["status"]),
            prompt=raw["prompt"],
            workdir=raw["workdir"],
            provider=raw["provider"],
            created_at=raw["created_at"],
            updated_at=raw.get("updated_at") or raw["created_at"],
            started_at=raw.get("started_at"),
            finished_at=raw.get("finished_at"),
            handle=str(handle) if handle is not None else None,
            exit=ExitInfo.from_dict(raw.get("exit")),
        )


@dataclass(slots=True)
class ExecutionResult:
    """Outcome returned by a provider call; not persisted."""

    output_tail: str
    exit_info: ExitInfo
    model_label: str
    provider_name: str


@dataclass(slots=True)
class EnqueueResult:
    """Identifiers captured when a job is queued."""

    job_id: str
    workdir: str
    provider: str


@dataclass(slots=True)
class CancelResult:
    """Outcome of a cancel request."""

    ok: bool
    reason: CancelReason | None = None
    status: JobStatus | None = None


def utc_now_iso() -> str:
    """Current UTC timestamp as ISO-8601 text."""

    return datetime.now(tz=UTC).isoformat()


def new_job_id() -> str:
    """Creation-ordered id: epoch milliseconds plus a random suffix."""

    return f"{int(time.time() * 1000)}-{secrets.token_hex(3)}"
