"""CLI entrypoint for auto-resume."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from auto_resume import __version__
from auto_resume.supervisor.controllers import (
    LockReleaseCommand,
    QueueAddCommand,
    QueueListCommand,
    QueuePruneCommand,
    QueueRetryCommand,
    QueueTaskCommand,
    RunCommand,
    StatusCommand,
    SupervisorCliController,
)
from auto_resume.supervisor.errors import SupervisorError
from auto_resume.supervisor.models import TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SupervisorCliController()

_STATE_DIR_OPTION = click.option(
    "--state-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="State directory (queue.db and checkpoints). Defaults to AUTO_RESUME_STATE_DIR.",
)
_TASK_STATUSES = [status.value for status in TaskStatus]


@click.group()
@click.version_option(version=__version__, prog_name="auto-resume")
@click.option(
    "--log-level",
    type=click.Choice(["CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"], case_sensitive=False),
    default=None,
    help="Logging level. Defaults to AUTO_RESUME_LOG_LEVEL or INFO.",
)
def auto_resume(log_level: str | None) -> None:
    """Supervise a CLI agent in tmux: run queued tasks and resume after usage limits."""

    level = (log_level or os.getenv("AUTO_RESUME_LOG_LEVEL", "INFO")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@auto_resume.command("run")
@_STATE_DIR_OPTION
@click.option("--once", is_flag=True, default=False, help="Run a single loop iteration.")
@click.option(
    "--max-iterations",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many iterations (default: until the queue is empty).",
)
def run(state_dir: Path | None, once: bool, max_iterations: int | None) -> None:
    """Run the monitor loop until the queue drains or a stop signal arrives."""

    _emit(lambda: CONTROLLER.run(RunCommand(state_dir=state_dir, once=once, max_iterations=max_iterations)))


@auto_resume.command("status")
@_STATE_DIR_OPTION
@click.option(
    "--check-session/--no-check-session",
    default=True,
    show_default=True,
    help="Ask tmux whether the agent session is running.",
)
def status(state_dir: Path | None, check_session: bool) -> None:
    """Show supervisor lock, pending wait, session and queue state."""

    _emit(lambda: CONTROLLER.status(StatusCommand(state_dir=state_dir, check_session=check_session)))


@auto_resume.group()
def queue() -> None:
    """Task queue commands."""


@queue.command("add")
@_STATE_DIR_OPTION
@click.argument("payload")
@click.option("--max-attempts", type=click.IntRange(min=1), default=None, help="Attempt budget.")
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Wall-clock budget in seconds, excluding usage-limit waits.",
)
@click.option(
    "--clear-context/--keep-context",
    default=None,
    help="Override whether agent context is cleared before this task.",
)
def queue_add(
    state_dir: Path | None,
    payload: str,
    max_attempts: int | None,
    timeout_seconds: int | None,
    clear_context: bool | None,
) -> None:
    """Enqueue one task; PAYLOAD is the instruction sent to the agent."""

    _emit(
        lambda: CONTROLLER.add_task(
            QueueAddCommand(
                state_dir=state_dir,
                payload=payload,
                max_attempts=max_attempts,
                timeout_seconds=timeout_seconds,
                clear_context=clear_context,
            ),
        ),
    )


@queue.command("list")
@_STATE_DIR_OPTION
@click.option("--status", "status_filter", type=click.Choice(_TASK_STATUSES), default=None)
@click.option("--limit", type=click.IntRange(min=1, max=1000), default=50, show_default=True)
def queue_list(state_dir: Path | None, status_filter: str | None, limit: int) -> None:
    """List tasks in queue order."""

    _emit(
        lambda: CONTROLLER.list_tasks(
            QueueListCommand(state_dir=state_dir, status=status_filter, limit=limit),
        ),
    )


@queue.command("inspect")
@_STATE_DIR_OPTION
@click.argument("task_id")
def queue_inspect(state_dir: Path | None, task_id: str) -> None:
    """Show one task with its event trail."""

    _emit(lambda: CONTROLLER.inspect_task(QueueTaskCommand(state_dir=state_dir, task_id=task_id)))


@queue.command("retry")
@_STATE_DIR_OPTION
@click.argument("task_id")
@click.option("--force", is_flag=True, default=False, help="Ignore the attempt budget.")
def queue_retry(state_dir: Path | None, task_id: str, force: bool) -> None:
    """Return a failed or timed-out task to pending."""

    _emit(
        lambda: CONTROLLER.retry_task(
            QueueRetryCommand(state_dir=state_dir, task_id=task_id, force=force),
        ),
    )


@queue.command("remove")
@_STATE_DIR_OPTION
@click.argument("task_id")
def queue_remove(state_dir: Path | None, task_id: str) -> None:
    """Delete a task that is not running."""

    _emit(lambda: CONTROLLER.remove_task(QueueTaskCommand(state_dir=state_dir, task_id=task_id)))


@queue.command("prune")
@_STATE_DIR_OPTION
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([TaskStatus.COMPLETED.value, TaskStatus.FAILED.value, TaskStatus.TIMEOUT.value]),
    help="Status to delete. Can be repeated. Defaults to completed.",
)
def queue_prune(state_dir: Path | None, statuses: tuple[str, ...]) -> None:
    """Delete finished tasks."""

    _emit(lambda: CONTROLLER.prune(QueuePruneCommand(state_dir=state_dir, statuses=statuses)))


@auto_resume.group()
def lock() -> None:
    """Supervisor lock commands."""


@lock.command("release")
@_STATE_DIR_OPTION
@click.option("--force", is_flag=True, default=False, help="Release even if the holder looks alive.")
def lock_release(state_dir: Path | None, force: bool) -> None:
    """Release a stale supervisor lock."""

    _emit(lambda: CONTROLLER.release_lock(LockReleaseCommand(state_dir=state_dir, force=force)))


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SupervisorError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    auto_resume()
