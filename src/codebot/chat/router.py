"""Chat command routing on top of the engine facade."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from pathlib import Path

from codebot.chat.workspace import ChatStateStore, GitError, run_git
from codebot.engine.logs import job_log_path
from codebot.engine.models import CancelReason
from codebot.engine.reporting import Notifier, describe_job
from codebot.engine.service import Engine

logger = logging.getLogger(__name__)

RECENT_JOBS_LIMIT = 10


class CommandRouter:
    """Parses slash commands from one chat message and replies through the notifier."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        engine: Engine,
        state: ChatStateStore,
        notifier: Notifier,
        logs_dir: Path,
        allowed_chat_id: str | None = None,
        max_error_chars: int = 3_500,
        max_inline_chars: int = 12_000,
    ) -> None:
        self.engine = engine
        self.state = state
        self.notifier = notifier
        self.logs_dir = logs_dir
        self.allowed_chat_id = allowed_chat_id
        self.max_error_chars = max_error_chars
        self.max_inline_chars = max_inline_chars
        self._commands: dict[str, Callable[[str, str], None]] = {
            "/start": self._help,
            "/help": self._help,
            "/repo": self._repo,
            "/repos": self._repos,
            "/setrepo": self._setrepo,
            "/status": self._status,
            "/diff": self._diff,
            "/provider": self._provider,
            "/codex": lambda chat_id, args: self._queue(chat_id, args, "codex"),
            "/gemini": lambda chat_id, args: self._queue(chat_id, args, "gemini"),
            "/ask": lambda chat_id, args: self._queue(chat_id, args, None),
            "/jobs": self._jobs,
            "/job": self._job,
            "/last": self._last,
            "/cancel": self._cancel,
        }

    def is_allowed(self, chat_id: str) -> bool:
        return self.allowed_chat_id is None or str(chat_id) == str(self.allowed_chat_id)

    def handle(self, chat_id: str, text: str) -> None:
        """Dispatch one incoming message; errors are reported back to the chat."""

        chat_id = str(chat_id)
        if not self.is_allowed(chat_id):
            logger.info("Ignoring message from chat %s", chat_id)
            return
        message = (text or "").strip()
        if not message:
            return
        command, _, args = message.partition(" ")
        command = command.split("@", 1)[0].lower()
        handler = self._commands.get(command)
        try:
            if handler is None:
                self._reply(chat_id, "Unknown command. Try /help")
                return
            handler(chat_id, args.strip())
        except Exception as error:  # noqa: BLE001
            logger.exception("Command %s failed for chat %s", command, chat_id)
            self._reply(chat_id, f"❌ Bot error:\n{str(error)[: self.max_error_chars]}")

    def _reply(self, chat_id: str, text: str) -> None:
        self.notifier.send_message(chat_id, text)

    def _help(self, chat_id: str, _args: str) -> None:
        lines = [
            "✅ CodeBot online.",
            "",
            "Repo:",
            "/repo                   - show current repo for this chat",
            "/repos                  - list git repos under the repos base dir",
            "/setrepo <name|path>    - set current repo for this chat",
            "/status                 - git status -sb in current repo",
            "/diff                   - git diff in current repo",
            "",
            "Jobs:",
            "/codex <task>           - queue a job for the local coding agent",
            "/gemini <task>          - queue a job for the remote model with tools",
            "/ask <task>             - queue a job with this chat's provider",
            "/provider [name]        - show or set this chat's provider",
            "/jobs                   - list recent jobs",
            "/job <id>               - show job status",
            "/last                   - show last job",
            "/cancel <id>            - cancel running job",
            "",
            f"Current repo: {self.state.resolve_workdir(chat_id)}",
            f"Provider: {self._chat_provider(chat_id)}",
            f"Repos base dir: {self.state.settings.repos_base_dir}",
        ]
        self._reply(chat_id, "\n".join(lines))

    def _repo(self, chat_id: str, _args: str) -> None:
        self._reply(chat_id, f"📌 Current repo:\n{self.state.resolve_workdir(chat_id)}")

    def _repos(self, chat_id: str, _args: str) -> None:
        base = self.state.settings.repos_base_dir
        repos = self.state.list_repos()
        if not repos:
            self._reply(chat_id, f"No git repos found in:\n{base}")
            return
        self._reply(chat_id, f"📂 Repos in {base}:\n" + "\n".join(f"- {repo}" for repo in repos))

    def _setrepo(self, chat_id: str, args: str) -> None:
        if not args:
            self._reply(chat_id, "Usage: /setrepo <repo-name | /absolute/path>")
            return
        workdir = self.state.resolve_repo(args)
        if workdir is None:
            self._reply(
                chat_id,
                "❌ Repo not found or not a git repo.\nTried:\n"
                f"- {self.state.settings.repos_base_dir / args}\n- {args}",
            )
            return
        self.state.set_workdir(chat_id, args, workdir)
        self._reply(chat_id, f"✅ Switched repo.\nWORKDIR:\n{workdir}")

    def _status(self, chat_id: str, _args: str) -> None:
        workdir = self.state.resolve_workdir(chat_id)
        self._reply(chat_id, self._git(workdir, "status", "-sb") or "(clean)")

    def _diff(self, chat_id: str, _args: str) -> None:
        workdir = self.state.resolve_workdir(chat_id)
        diff = self._git(workdir, "diff")
        if not diff:
            self._reply(chat_id, "(no diff)")
            return
        if len(diff) <= self.max_inline_chars:
            self._reply(chat_id, diff)
            return
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        patch = self.logs_dir / f"diff-{int(time.time() * 1000)}.patch"
        patch.write_text(diff + "\n", "utf-8")
        self._reply(chat_id, "Diff is large; sending as file…")
        self.notifier.send_document(chat_id, patch, "git diff")

    @staticmethod
    def _git(workdir: Path, *args: str) -> str:
        try:
            return run_git(workdir, *args)
        except GitError as error:
            raise RuntimeError(f"git {args[0]} failed in {workdir}: {error}") from error

    def _provider(self, chat_id: str, args: str) -> None:
        known = self.engine.providers.names()
        if not args:
            self._reply(
                chat_id,
                f"Provider: {self._chat_provider(chat_id)}\nAvailable: {', '.join(known)}",
            )
            return
        name = args.strip().lower()
        if name not in known:
            self._reply(chat_id, f"Unknown provider: {name}. Available: {', '.join(known)}")
            return
        self.state.set_provider(chat_id, name)
        self._reply(chat_id, f"✅ Provider set to {name}.")

    def _queue(self, chat_id: str, prompt: str, provider: str | None) -> None:
        if not prompt:
            self._reply(chat_id, f"Usage: /{provider or 'ask'} <task>")
            return
        queued = self.engine.enqueue(
            chat_id,
            prompt,
            provider_override=provider or self.state.get_provider(chat_id),
        )
        self._reply(
            chat_id,
            f"✅ Queued job {queued.job_id} ({queued.provider}) in {queued.workdir}.\n"
            f"Use /job {queued.job_id} or /jobs.",
        )

    def _jobs(self, chat_id: str, _args: str) -> None:
        recent = self.engine.list_recent_jobs(chat_id, RECENT_JOBS_LIMIT)
        if not recent:
            self._reply(chat_id, "No jobs yet.")
            return
        lines = [
            f"{job.id}  {job.status.value:<9}  {job.created_at.replace('T', ' ')[:19]}"
            f"  ({Path(job.workdir).name}, {job.provider})"
            for job in recent
        ]
        self._reply(chat_id, "Recent jobs:\n" + "\n".join(lines))

    def _job(self, chat_id: str, args: str) -> None:
        if not args:
            self._reply(chat_id, "Usage: /job <id>")
            return
        job = self.engine.get_job(args)
        if job is None or job.chat_id != chat_id:
            self._reply(chat_id, "Job not found.")
            return
        self._reply(chat_id, "\n".join(describe_job(job)))
        log_path = job_log_path(self.logs_dir, job.id)
        if job.status.is_terminal and log_path.exists():
            self.notifier.send_document(chat_id, log_path, f"Job {job.id} log")

    def _last(self, chat_id: str, _args: str) -> None:
        job = self.engine.last_job(chat_id)
        if job is None:
            self._reply(chat_id, "No jobs yet.")
            return
        self._reply(
            chat_id,
            f"Last job: {job.id}\nStatus: {job.status.value}\nUse /job {job.id}",
        )

    def _cancel(self, chat_id: str, args: str) -> None:
        if not args:
            self._reply(chat_id, "Usage: /cancel <id>")
            return
        result = self.engine.cancel(chat_id, args)
        if result.ok:
            self._reply(chat_id, f"🛑 Canceled job {args}.")
        elif result.reason == CancelReason.NOT_FOUND:
            self._reply(chat_id, "Job not found.")
        else:
            status = result.status.value if result.status is not None else "unknown"
            self._reply(chat_id, f"Job {args} is not running (status: {status}).")

    def _chat_provider(self, chat_id: str) -> str:
        return self.engine.providers.normalize(self.state.get_provider(chat_id))

