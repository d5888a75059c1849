"""Provider interface for job execution backends."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from codebot.engine.logs import JobLogSink
from codebot.engine.models import ExecutionResult, Job


class ProviderError(RuntimeError):
    """Execution failure with a human-readable cause."""


class SpawnError(ProviderError):
    """External command could not be started."""


@dataclass(slots=True)
class ExecutionContext:
    """Collaborators a provider needs while executing one job."""

    workdir: Path
    log: JobLogSink
    register_handle: Callable[[str], None]
    notify: Callable[[str], None]


class RecentIds:
    """Insertion-ordered set of job ids that forgets the oldest beyond ``limit``."""

    def __init__(self, limit: int = 256) -> None:
        self.limit = limit
        self._ids: dict[str, None] = {}

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)

    def add(self, job_id: str) -> None:
        self._ids.pop(job_id, None)
        self._ids[job_id] = None
        while len(self._ids) > self.limit:
            del self._ids[next(iter(self._ids))]

    def discard(self, job_id: str) -> None:
        self._ids.pop(job_id, None)


class Provider(Protocol):
    """Protocol implemented by execution backends."""

    name: str

    @property
    def model_label(self) -> str:
        """Model name shown in notifications; empty when not applicable."""

    def execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
        """Run the job's prompt and return its execution result."""

    def abort(self, job: Job) -> bool:
        """Best-effort cancellation; return whether a live target was signaled."""

    def describe(self) -> dict[str, object]:
        """Provider-specific fields for the job metadata snapshot."""


OPERATING_CONSTRAINTS = "\n".join(
    [
        "You are operating in a local git repo. Follow these constraints:",
        "- Keep output concise. Do NOT paste large diffs into the chat output.",
        "- If you generate a diff, write it to a patch file instead (e.g. /tmp/changes.patch).",
        "- Use git commits and branches. Prefer small commits.",
        "- If asked to open a PR: use GitHub CLI (gh) to create it,"
        " and print the PR URL at the end.",
        "- Always finish with a short summary: files changed, commands run, what to verify next.",
    ],
)


def build_task_prompt(user_prompt: str) -> str:
    """Prefix the user task with the fixed operating-constraints preamble."""

    return "\n".join([OPERATING_CONSTRAINTS, "", "User task:", user_prompt.strip()])
