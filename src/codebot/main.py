"""CLI entrypoint for codebot."""

import logging
from pathlib import Path

import rich_click as click

from codebot import __version__
from codebot.engine.controllers import (
    CodebotCliController,
    JobsCancelCommand,
    JobsEnqueueCommand,
    JobsListCommand,
    JobsShowCommand,
    JobsWorkerCommand,
    ServeCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = CodebotCliController()

JOBS_DIR_OPTION = click.option(
    "--jobs-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="State directory (jobs.json, logs/). Defaults to CODEBOT_JOBS_DIR or ~/.codebot.",
)


@click.group()
@click.version_option(version=__version__, prog_name="codebot")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging level for diagnostics on stderr.",
)
def codebot(log_level: str) -> None:
    """Chat-driven coding job runner."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@codebot.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@JOBS_DIR_OPTION
@click.option("--chat-id", required=True, help="Owner chat id for the job.")
@click.option("--prompt", required=True, help="Task text for the provider.")
@click.option("--provider", default=None, help="Provider name (codex, gemini).")
@click.option(
    "--workdir",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Working directory. Defaults to CODEBOT_WORKDIR or the current directory.",
)
@click.option(
    "--wait/--no-wait",
    default=False,
    show_default=True,
    help="Run the worker in the foreground until this job finishes.",
)
def jobs_enqueue(  # noqa: PLR0913
    jobs_dir: Path | None,
    chat_id: str,
    prompt: str,
    provider: str | None,
    workdir: Path | None,
    wait: bool,
) -> None:
    """Queue one job."""

    try:
        lines = CONTROLLER.enqueue(
            JobsEnqueueCommand(
                jobs_dir=jobs_dir,
                chat_id=chat_id,
                prompt=prompt,
                provider=provider.lower() if provider is not None else None,
                workdir=workdir,
                wait=wait,
            ),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@jobs.command("list")
@JOBS_DIR_OPTION
@click.option("--chat-id", required=True, help="Owner chat id.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=10,
    show_default=True,
    help="Max jobs to show, newest first.",
)
def jobs_list(jobs_dir: Path | None, chat_id: str, limit: int) -> None:
    """List recent jobs of one chat."""

    _emit_lines(
        CONTROLLER.list_jobs(JobsListCommand(jobs_dir=jobs_dir, chat_id=chat_id, limit=limit)),
    )


@jobs.command("show")
@JOBS_DIR_OPTION
@click.option("--job-id", required=True, help="Job id.")
def jobs_show(jobs_dir: Path | None, job_id: str) -> None:
    """Show one job."""

    _emit_lines(CONTROLLER.show_job(JobsShowCommand(jobs_dir=jobs_dir, job_id=job_id)))


@jobs.command("cancel")
@JOBS_DIR_OPTION
@click.option("--chat-id", required=True, help="Owner chat id.")
@click.option("--job-id", required=True, help="Job id.")
def jobs_cancel(jobs_dir: Path | None, chat_id: str, job_id: str) -> None:
    """Cancel a running job."""

    _emit_lines(
        CONTROLLER.cancel_job(
            JobsCancelCommand(jobs_dir=jobs_dir, chat_id=chat_id, job_id=job_id),
        ),
    )


@jobs.command("worker")
@JOBS_DIR_OPTION
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Process one job or loop until the queue is empty.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in loop mode.",
)
def jobs_worker(jobs_dir: Path | None, once: bool, max_jobs: int | None) -> None:
    """Run the worker in the foreground, printing notifications."""

    _emit_lines(
        CONTROLLER.run_worker(
            JobsWorkerCommand(jobs_dir=jobs_dir, once=once, max_jobs=max_jobs),
        ),
    )


@codebot.command("serve")
@JOBS_DIR_OPTION
def serve(jobs_dir: Path | None) -> None:
    """Run the Telegram bot with its background worker."""

    try:
        lines = CONTROLLER.serve(ServeCommand(jobs_dir=jobs_dir))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    codebot()
