"""Shared test fixtures."""

from __future__ import annotations

import os
import sys
from dataclasses import replace
from pathlib import Path

import pytest

from codebot.config import LocalAgentSettings, Settings

SRC_DIR = Path(__file__).resolve().parents[1] / "src"


def echo_agent_template(*extra: str) -> str:
    """Command template running the deterministic echo agent with extra flags."""

    parts = [sys.executable, "-m", "codebot.engine.providers.echo_agent", "--prompt", "{prompt}"]
    return " ".join([*parts, *extra])


class RecordingNotifier:
    """Notifier that keeps every delivery in memory."""

    def __init__(self) -> None:
        self.messages: list[tuple[str, str]] = []
        self.documents: list[tuple[str, Path, str]] = []

    def send_message(self, chat_id: str, text: str) -> None:
        self.messages.append((str(chat_id), text))

    def send_document(self, chat_id: str, path: Path, caption: str = "") -> None:
        self.documents.append((str(chat_id), path, caption))

    def texts(self, chat_id: str | None = None) -> list[str]:
        return [text for target, text in self.messages if chat_id is None or target == chat_id]


@pytest.fixture()
def subprocess_pythonpath(monkeypatch):
    """Make ``codebot`` importable in child interpreters started by tests."""

    existing = os.environ.get("PYTHONPATH")
    value = str(SRC_DIR) if not existing else os.pathsep.join([str(SRC_DIR), existing])
    monkeypatch.setenv("PYTHONPATH", value)


@pytest.fixture()
def agent_settings(subprocess_pythonpath) -> LocalAgentSettings:
    return LocalAgentSettings(
        command_template=echo_agent_template(),
        timeout_seconds=30.0,
        heartbeat_seconds=3_600.0,
        use_pty=False,
    )


@pytest.fixture()
def settings(tmp_path: Path, agent_settings: LocalAgentSettings) -> Settings:
    base = Settings()
    return replace(
        base,
        jobs=replace(base.jobs, jobs_dir=tmp_path / "state", poll_interval_seconds=0.05),
        agent=agent_settings,
        workspace=replace(
            base.workspace,
            default_workdir=tmp_path,
            repos_base_dir=tmp_path / "repos",
        ),
    )


@pytest.fixture()
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture()
def echo_agent(monkeypatch, tmp_path: Path, subprocess_pythonpath):
    """Monkeypatch Settings.from_env so CLI runs use the echo agent without a pty."""

    original_from_env = Settings.from_env

    def _patched_from_env(jobs_dir=None):
        settings = original_from_env(jobs_dir=jobs_dir)
        agent = replace(settings.agent, command_template=echo_agent_template(), use_pty=False)
        workspace = replace(settings.workspace, default_workdir=tmp_path)
        return replace(settings, agent=agent, workspace=workspace)

    monkeypatch.setattr(Settings, "from_env", staticmethod(_patched_from_env))
