"""Runtime configuration for the job engine and chat collaborators."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_JOBS_DIR = Path.home() / ".codebot"


@dataclass(slots=True)
class JobsSettings:
    """Queue, worker, and reporting settings."""

    jobs_dir: Path = DEFAULT_JOBS_DIR
    poll_interval_seconds: float = 0.75
    error_backoff_seconds: float = 1.5
    max_inline_output_chars: int = 12_000
    tail_chars: int = 14_000
    default_provider: str = "codex"

    @property
    def db_path(self) -> Path:
        return self.jobs_dir / "jobs.json"

    @property
    def logs_dir(self) -> Path:
        return self.jobs_dir / "logs"

    @property
    def chat_state_path(self) -> Path:
        return self.jobs_dir / "chat-state.json"


@dataclass(slots=True)
class LocalAgentSettings:
    """Settings for the process-backed coding agent."""

    binary: str = "codex"
    model: str = "gpt-5.1-codex-max"
    command_template: str | None = None
    timeout_seconds: float = 3_600.0
    heartbeat_seconds: float = 25.0
    unsafe_bypass: bool = True
    use_pty: bool = True


@dataclass(slots=True)
class ToolLoopSettings:
    """Settings for the remote generative model with tool calls."""

    api_key: str = ""
    model: str = "gemini-1.5-pro"
    base_url: str = "https://generativelanguage.googleapis.com"
    max_rounds: int = 5
    stream: bool = True
    request_timeout_seconds: float = 120.0
    mcp_config_path: Path | None = None
    tool_timeout_seconds: float = 120.0


@dataclass(slots=True)
class TelegramSettings:
    """Telegram delivery settings."""

    bot_token: str = ""
    allowed_chat_id: str | None = None
    api_base_url: str = "https://api.telegram.org"
    send_delay_seconds: float = 0.9
    max_chars: int = 3_500
    max_attempts: int = 6
    poll_timeout_seconds: int = 30


@dataclass(slots=True)
class WorkspaceSettings:
    """Repository selection settings."""

    default_workdir: Path = field(default_factory=Path.cwd)
    repos_base_dir: Path = Path.home() / "Projects" / "work"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    jobs: JobsSettings = field(default_factory=JobsSettings)
    agent: LocalAgentSettings = field(default_factory=LocalAgentSettings)
    tool_loop: ToolLoopSettings = field(default_factory=ToolLoopSettings)
    telegram: TelegramSettings = field(default_factory=TelegramSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)

    @classmethod
    def from_env(cls, jobs_dir: Path | None = None) -> Settings:
        """Load settings from environment with defaults for local use."""

        return cls(
            jobs=JobsSettings(
                jobs_dir=jobs_dir
                or Path(os.getenv("CODEBOT_JOBS_DIR", str(DEFAULT_JOBS_DIR))).expanduser(),
                poll_interval_seconds=float(os.getenv("CODEBOT_POLL_INTERVAL_SECONDS", "0.75")),
                error_backoff_seconds=float(os.getenv("CODEBOT_ERROR_BACKOFF_SECONDS", "1.5")),
                max_inline_output_chars=int(
                    os.getenv("CODEBOT_MAX_INLINE_OUTPUT_CHARS", "12000"),
                ),
                tail_chars=int(os.getenv("CODEBOT_TAIL_CHARS", "14000")),
                default_provider=os.getenv("CODEBOT_DEFAULT_PROVIDER", "codex").strip().lower(),
            ),
            agent=LocalAgentSettings(
                binary=os.getenv("CODEBOT_CODEX_BIN", "codex"),
                model=os.getenv("CODEBOT_CODEX_MODEL", "gpt-5.1-codex-max"),
                command_template=os.getenv("CODEBOT_CODEX_COMMAND_TEMPLATE") or None,
                timeout_seconds=float(os.getenv("CODEBOT_CODEX_TIMEOUT_SECONDS", "3600")),
                heartbeat_seconds=float(os.getenv("CODEBOT_HEARTBEAT_SECONDS", "25")),
                unsafe_bypass=_env_bool("CODEBOT_UNSAFE_CODEX", default=True),
                use_pty=_env_bool("CODEBOT_CODEX_USE_PTY", default=True),
            ),
            tool_loop=ToolLoopSettings(
                api_key=os.getenv("CODEBOT_GEMINI_API_KEY", os.getenv("GEMINI_API_KEY", "")),
                model=os.getenv(
                    "CODEBOT_GEMINI_MODEL",
                    os.getenv("GEMINI_MODEL", "gemini-1.5-pro"),
                ),
                base_url=os.getenv(
                    "CODEBOT_GEMINI_BASE_URL",
                    "https://generativelanguage.googleapis.com",
                ),
                max_rounds=int(os.getenv("CODEBOT_GEMINI_MAX_ROUNDS", "5")),
                stream=_env_bool("CODEBOT_GEMINI_STREAM", default=True),
                request_timeout_seconds=float(
                    os.getenv("CODEBOT_GEMINI_REQUEST_TIMEOUT_SECONDS", "120"),
                ),
                mcp_config_path=Path(os.getenv("CODEBOT_MCP_CONFIG", "mcp.json")).expanduser(),
                tool_timeout_seconds=float(os.getenv("CODEBOT_TOOL_TIMEOUT_SECONDS", "120")),
            ),
            telegram=TelegramSettings(
                bot_token=os.getenv(
                    "CODEBOT_TELEGRAM_BOT_TOKEN",
                    os.getenv("TELEGRAM_BOT_TOKEN", ""),
                ),
                allowed_chat_id=os.getenv("CODEBOT_ALLOWED_CHAT_ID") or None,
                api_base_url=os.getenv("CODEBOT_TELEGRAM_API_URL", "https://api.telegram.org"),
                send_delay_seconds=float(os.getenv("CODEBOT_TELEGRAM_SEND_DELAY_SECONDS", "0.9")),
                max_chars=int(os.getenv("CODEBOT_TELEGRAM_MAX_CHARS", "3500")),
                max_attempts=int(os.getenv("CODEBOT_TELEGRAM_MAX_ATTEMPTS", "6")),
                poll_timeout_seconds=int(os.getenv("CODEBOT_TELEGRAM_POLL_TIMEOUT_SECONDS", "30")),
            ),
            workspace=WorkspaceSettings(
                default_workdir=Path(os.getenv("CODEBOT_WORKDIR", str(Path.cwd()))).expanduser(),
                repos_base_dir=Path(
                    os.getenv("CODEBOT_REPOS_BASE_DIR", str(Path.home() / "Projects" / "work")),
                ).expanduser(),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the engine cannot run with."""

        if self.jobs.poll_interval_seconds <= 0:
            raise ValueError("CODEBOT_POLL_INTERVAL_SECONDS must be > 0.")
        if self.jobs.tail_chars <= 0:
            raise ValueError("CODEBOT_TAIL_CHARS must be > 0.")
        if self.jobs.max_inline_output_chars <= 0:
            raise ValueError("CODEBOT_MAX_INLINE_OUTPUT_CHARS must be > 0.")
        if self.agent.timeout_seconds <= 0:
            raise ValueError("CODEBOT_CODEX_TIMEOUT_SECONDS must be > 0.")
        if self.agent.heartbeat_seconds <= 0:
            raise ValueError("CODEBOT_HEARTBEAT_SECONDS must be > 0.")
        template = self.agent.command_template
        if template is not None and "{prompt}" not in template:
            raise ValueError("CODEBOT_CODEX_COMMAND_TEMPLATE must include {prompt}.")
        if not 1 <= self.tool_loop.max_rounds <= 50:
            raise ValueError("CODEBOT_GEMINI_MAX_ROUNDS must be between 1 and 50.")
        parsed = urlparse(self.tool_loop.base_url)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValueError(
                f"Invalid CODEBOT_GEMINI_BASE_URL: {self.tool_loop.base_url!r}. "
                "Expected an absolute http(s) URL.",
            )

    def validate_for_telegram(self) -> None:
        """Raise configuration error if the bot cannot be started."""

        self.validate()
        if not self.telegram.bot_token.strip():
            raise ValueError(
                "Telegram bot token is required. Set CODEBOT_TELEGRAM_BOT_TOKEN.",
            )
        if self.telegram.max_chars <= 0 or self.telegram.max_chars > 4096:
            raise ValueError("CODEBOT_TELEGRAM_MAX_CHARS must be between 1 and 4096.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
