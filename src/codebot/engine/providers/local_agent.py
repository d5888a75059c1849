"""Process-backed provider that supervises a local coding-agent CLI."""

from __future__ import annotations

import codecs
import logging
import os
import shlex
import shutil
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import IO

from codebot.config import LocalAgentSettings
from codebot.engine.logs import JobLogSink
from codebot.engine.models import ExecutionResult, ExitInfo, Job, utc_now_iso
from codebot.engine.providers.base import (
    ExecutionContext,
    ProviderError,
    RecentIds,
    SpawnError,
    build_task_prompt,
)

logger = logging.getLogger(__name__)

TIMEOUT_EXIT = ExitInfo(code=124, signal="timeout")
_READ_CHUNK_BYTES = 4096
_HEARTBEAT_CHECK_SECONDS = 1.0


class LocalAgentProvider:
    """Runs the agent as a child process inside the job workdir."""

    name = "codex"

    def __init__(self, settings: LocalAgentSettings) -> None:
        self.settings = settings
        self._lock = threading.Lock()
        self._running: dict[str, subprocess.Popen[bytes]] = {}
        self._pending_abort = RecentIds()
        self._completed = RecentIds()

    @property
    def model_label(self) -> str:
        return self.settings.model

    def describe(self) -> dict[str, object]:
        return {
            "codex_bin": self.settings.binary,
            "codex_model": self.settings.model,
            "unsafe_bypass": self.settings.unsafe_bypass,
        }

    def execute(self, job: Job, context: ExecutionContext) -> ExecutionResult:
        run_args = build_run_args(
            settings=self.settings,
            prompt=build_task_prompt(job.prompt),
            workdir=context.workdir,
        )
        if self.settings.use_pty and shutil.which("script"):
            run_args = wrap_in_pty(run_args)

        context.log.write_raw(
            f"== job {job.id} ==\nstarted: {utc_now_iso()}\n"
            f"cmd: {shlex.join(run_args)}\n\n",
        )
        process = _spawn(run_args, workdir=context.workdir)
        abort_requested = self._register(job.id, process)
        context.register_handle(str(process.pid))
        if abort_requested:
            logger.info("Job %s was canceled before start; killing pid %s", job.id, process.pid)
            _kill(process)

        reader = threading.Thread(
            target=_pump_output,
            args=(process.stdout, context.log),
            daemon=True,
            name=f"codex-output-{job.id}",
        )
        reader.start()
        heartbeat = Heartbeat(
            interval_seconds=self.settings.heartbeat_seconds,
            check_seconds=_HEARTBEAT_CHECK_SECONDS,
            send=lambda: context.notify(f"⏳ Job {job.id} still running…"),
        )
        heartbeat.start()
        try:
            exit_info = self._wait(process, context.log)
        finally:
            heartbeat.stop()
            reader.join(timeout=5)
            self._unregister(job.id)

        context.log.write_raw(
            f"\n\nended: {utc_now_iso()}\n"
            f"exit: code={exit_info.code} signal={exit_info.signal or 'none'}\n",
        )
        return ExecutionResult(
            output_tail=context.log.tail.text,
            exit_info=exit_info,
            model_label=self.settings.model,
            provider_name=self.name,
        )

    def abort(self, job: Job) -> bool:
        with self._lock:
            process = self._running.pop(job.id, None)
            if process is None:
                if job.id in self._completed:
                    return False
                pid = _handle_pid(job.handle)
                if pid is None:
                    self._pending_abort.add(job.id)
                    return False
        if process is None:
            # Started by another process; the persisted pid leads its process group.
            return _kill_group(pid)
        if process.poll() is not None:
            return False
        _kill(process)
        return True

    def _register(self, job_id: str, process: subprocess.Popen[bytes]) -> bool:
        with self._lock:
            self._running[job_id] = process
            return job_id in self._pending_abort

    def _unregister(self, job_id: str) -> None:
        with self._lock:
            self._running.pop(job_id, None)
            self._pending_abort.discard(job_id)
            self._completed.add(job_id)

    def _wait(self, process: subprocess.Popen[bytes], log: JobLogSink) -> ExitInfo:
        try:
            returncode = process.wait(timeout=self.settings.timeout_seconds)
        except subprocess.TimeoutExpired:
            log.write_raw(
                f"\n\n[codebot] timeout after {self.settings.timeout_seconds:g}s; "
                "killing process.\n",
            )
            _kill(process)
            process.wait()
            return TIMEOUT_EXIT
        return exit_info_from_returncode(returncode)


class Heartbeat:
    """Periodic checker that fires ``send`` once ``interval_seconds`` have elapsed.

    The check runs on its own thread every ``check_seconds`` and compares the
    elapsed time since the last heartbeat, so a late check never skips or
    doubles a notification.
    """

    def __init__(
        self,
        *,
        interval_seconds: float,
        send: Callable[[], None],
        check_seconds: float = _HEARTBEAT_CHECK_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_seconds = interval_seconds
        self.check_seconds = check_seconds
        self._send = send
        self._clock = clock
        self._last_beat = clock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._last_beat = self._clock()
        self._thread = threading.Thread(target=self._run, daemon=True, name="codex-heartbeat")
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self.check_seconds * 2)
            self._thread = None

    def check(self) -> bool:
        """Send a heartbeat if one is due; return whether it fired."""

        now = self._clock()
        if now - self._last_beat < self.interval_seconds:
            return False
        self._last_beat = now
        try:
            self._send()
        except Exception as error:  # noqa: BLE001
            logger.warning("Heartbeat delivery failed: %s", error)
        return True

    def _run(self) -> None:
        while not self._stop.wait(self.check_seconds):
            self.check()


def build_run_args(*, settings: LocalAgentSettings, prompt: str, workdir: Path) -> list[str]:
    """Render the agent command template into an argv list."""

    template = (settings.command_template or default_command_template(settings)).strip()
    if not template:
        raise ProviderError("Agent command template is empty.")
    if "{prompt}" not in template:
        raise ProviderError("Agent command template must include {prompt}.")
    try:
        rendered = template.format(
            binary=shlex.quote(settings.binary),
            model=shlex.quote(settings.model),
            prompt=shlex.quote(prompt),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise ProviderError(f"Unsupported command template placeholder: {error}") from error

    argv = shlex.split(rendered)
    if not argv:
        raise ProviderError("Agent command template rendered empty command.")
    return argv


def default_command_template(settings: LocalAgentSettings) -> str:
    sandbox = (
        "--dangerously-bypass-approvals-and-sandbox"
        if settings.unsafe_bypass
        else "--sandbox workspace-write -a never"
    )
    return "{binary} exec --model {model} " + sandbox + " -C {workdir} {prompt}"


def wrap_in_pty(run_args: list[str]) -> list[str]:
    """Run the command under ``script`` so the agent sees a terminal."""

    return ["script", "-qefc", shlex.join(run_args), "/dev/null"]


def exit_info_from_returncode(returncode: int) -> ExitInfo:
    if returncode >= 0:
        return ExitInfo(code=returncode, signal=None)
    try:
        name = signal.Signals(-returncode).name
    except ValueError:
        name = str(-returncode)
    return ExitInfo(code=None, signal=name)


def _spawn(run_args: list[str], *, workdir: Path) -> subprocess.Popen[bytes]:
    try:
        return subprocess.Popen(  # noqa: S603
            run_args,
            cwd=workdir,
            env=os.environ.copy(),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            bufsize=0,
            start_new_session=hasattr(os, "killpg"),
        )
    except FileNotFoundError as error:
        raise SpawnError(f"Agent command not found: {run_args[0]}") from error
    except OSError as error:
        raise SpawnError(f"Agent failed to start: {error}") from error


def _pump_output(stream: IO[bytes] | None, log: JobLogSink) -> None:
    if stream is None:
        return
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    try:
        while True:
            chunk = stream.read(_READ_CHUNK_BYTES)
            if not chunk:
                break
            log.write(decoder.decode(chunk))
        log.write(decoder.decode(b"", final=True))
    except (OSError, ValueError) as error:
        logger.debug("Output reader stopped: %s", error)
    finally:
        stream.close()


def _kill(process: subprocess.Popen[bytes]) -> None:
    if process.poll() is not None:
        return
    if hasattr(os, "killpg"):
        try:
            os.killpg(process.pid, signal.SIGKILL)
            return
        except (ProcessLookupError, PermissionError):
            pass
    try:
        process.kill()
    except OSError:
        return


def _handle_pid(handle: str | None) -> int | None:
    if not handle or not handle.isdigit():
        return None
    pid = int(handle)
    return pid if pid > 1 else None


def _kill_group(pid: int) -> bool:
    if not hasattr(os, "killpg"):
        return False
    try:
        os.killpg(pid, signal.SIGKILL)
    except ProcessLookupError:
        return False
    except PermissionError as error:
        logger.warning("Cannot kill process group %s: %s", pid, error)
        return False
    logger.info("Killed process group %s", pid)
    return True
