"""Per-chat repository and provider selection."""

from __future__ import annotations

import json
import logging
import subprocess
import threading
from pathlib import Path
from typing import Any

from codebot.config import WorkspaceSettings
from codebot.engine.models import utc_now_iso
from codebot.engine.store import write_json_atomic

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120.0


class GitError(RuntimeError):
    """A git command failed in the chat workdir."""


class ChatStateStore:
    """Remembers each chat's selected workdir and provider in a JSON file.

    Document shape: ``{"chats": {"<chat id>": {"repo", "workdir", "provider",
    "updated_at"}}}``. A missing or unreadable file means every chat uses the
    defaults.
    """

    def __init__(self, path: Path, settings: WorkspaceSettings) -> None:
        self.path = path
        self.settings = settings
        self._lock = threading.RLock()

    def resolve_workdir(self, chat_id: str) -> Path:
        entry = self._entry(chat_id)
        workdir = entry.get("workdir")
        if isinstance(workdir, str) and workdir:
            return Path(workdir)
        return self.settings.default_workdir

    def selected_repo(self, chat_id: str) -> str | None:
        repo = self._entry(chat_id).get("repo")
        return repo if isinstance(repo, str) and repo else None

    def set_workdir(self, chat_id: str, repo: str, workdir: Path) -> None:
        self._update(chat_id, {"repo": repo, "workdir": str(workdir)})

    def get_provider(self, chat_id: str) -> str | None:
        provider = self._entry(chat_id).get("provider")
        return provider if isinstance(provider, str) and provider else None

    def set_provider(self, chat_id: str, provider: str) -> None:
        self._update(chat_id, {"provider": provider})

    def resolve_repo(self, token: str) -> Path | None:
        """Map an absolute path or a folder name under the base dir to a git checkout."""

        value = (token or "").strip()
        if not value:
            return None
        candidates: list[Path] = []
        if value.startswith("/"):
            candidates.append(Path(value))
        candidates.append(self.settings.repos_base_dir / value)
        for candidate in candidates:
            if candidate.is_dir() and (candidate / ".git").exists():
                return candidate
        return None

    def list_repos(self) -> list[str]:
        base = self.settings.repos_base_dir
        if not base.is_dir():
            return []
        return sorted(
            child.name for child in base.iterdir() if child.is_dir() and (child / ".git").exists()
        )

    def _entry(self, chat_id: str) -> dict[str, Any]:
        entry = self._load().get(str(chat_id))
        return entry if isinstance(entry, dict) else {}

    def _update(self, chat_id: str, values: dict[str, str]) -> None:
        with self._lock:
            chats = self._load()
            entry = chats.get(str(chat_id))
            if not isinstance(entry, dict):
                entry = {}
            entry.update(values)
            entry["updated_at"] = utc_now_iso()
            chats[str(chat_id)] = entry
            write_json_atomic(self.path, {"chats": chats})

    def _load(self) -> dict[str, Any]:
        with self._lock:
            if not self.path.exists():
                return {}
            try:
                payload = json.loads(self.path.read_text("utf-8"))
            except (OSError, json.JSONDecodeError) as error:
                logger.warning("Chat state %s unreadable, using defaults: %s", self.path, error)
                return {}
            chats = payload.get("chats") if isinstance(payload, dict) else None
            return chats if isinstance(chats, dict) else {}


def run_git(workdir: Path, *args: str, timeout: float = GIT_TIMEOUT_SECONDS) -> str:
    """Run ``git <args>`` in ``workdir`` and return trimmed output."""

    if not workdir.is_dir():
        raise GitError(f"workdir not found: {workdir}")
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=workdir,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
        )
    except FileNotFoundError as error:
        raise GitError("git executable not found") from error
    except subprocess.TimeoutExpired as error:
        raise GitError(f"git {' '.join(args)} timed out after {timeout:g}s") from error
    if completed.returncode != 0:
        message = (completed.stderr or completed.stdout).strip()
        raise GitError(message or f"git exited {completed.returncode}")
    return (completed.stdout or completed.stderr).strip()
