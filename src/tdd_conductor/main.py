"""CLI entrypoint for tdd-conductor."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from tdd_conductor import __version__
from tdd_conductor.orchestrator.controllers import (
    JobEnqueueCommand,
    JobInspectCommand,
    JobListCommand,
    OrchestratorCliController,
    SessionCreateCommand,
    SessionGenerateTestsCommand,
    SessionMutateCommand,
    SessionStartTddCommand,
    SuiteListCommand,
    WorkerReclaimCommand,
    WorkerRunCommand,
)
from tdd_conductor.orchestrator.gateway import SessionStateError
from tdd_conductor.orchestrator.models import AgentMode, JobStatus
from tdd_conductor.orchestrator.tdd_cycle import CycleStateError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_DB_PATH_HELP = "SQLite DB path."


@click.group()
@click.version_option(version=__version__, prog_name="tdd-conductor")
def tdd_conductor() -> None:
    """Orchestrate AI coding agents through test-driven development sessions."""


@tdd_conductor.group()
def jobs() -> None:
    """Job queue commands."""


@jobs.command("enqueue")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--project-id", required=True, help="Project the job belongs to.")
@click.option("--prompt", required=True, help="Prompt passed to the agent CLI.")
@click.option("--provider", default=None, help="Agent provider, defaults to configured one.")
@click.option(
    "--mode",
    type=click.Choice([mode.value for mode in AgentMode]),
    default=AgentMode.AGENT.value,
    show_default=True,
    help="Agent mode.",
)
@click.option("--work-dir", default=None, help="Working directory for the agent process.")
def jobs_enqueue(  # noqa: PLR0913
    db_path: Path | None,
    project_id: str,
    prompt: str,
    provider: str | None,
    mode: str,
    work_dir: str | None,
) -> None:
    """Enqueue a standalone agent job outside any coding session."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.enqueue_job(
            JobEnqueueCommand(
                db_path=db_path,
                project_id=project_id,
                prompt=prompt,
                provider=provider.lower() if provider else None,
                mode=mode,
                work_dir=work_dir,
            ),
        ),
    )


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--status",
    type=click.Choice([status.value for status in JobStatus]),
    default=None,
    help="Only show jobs in this status.",
)
@click.option("--session-id", default=None, help="Only show jobs of this coding session.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(db_path: Path | None, status: str | None, session_id: str | None, limit: int) -> None:
    """List jobs, newest first."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_jobs(
            JobListCommand(db_path=db_path, status=status, session_id=session_id, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("job_id")
def jobs_inspect(db_path: Path | None, job_id: str) -> None:
    """Show one job with its event history."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.inspect_job(JobInspectCommand(db_path, job_id)))


@tdd_conductor.group()
def worker() -> None:
    """Dispatcher commands."""


@worker.command("run")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run one reclaim-and-poll cycle or loop until stopped.",
)
@click.option(
    "--max-polls",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for poll cycles in loop mode.",
)
@click.option(
    "--max-concurrency",
    type=click.IntRange(min=1),
    default=None,
    help="Override TDD_CONDUCTOR_MAX_CONCURRENCY.",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Logging level for dispatcher output.",
)
def worker_run(
    db_path: Path | None,
    once: bool,
    max_polls: int | None,
    max_concurrency: int | None,
    log_level: str,
) -> None:
    """Run the job dispatcher.

    In loop mode the dispatcher stops on **SIGINT**/**SIGTERM** and waits for
    in-flight jobs before exiting.
    """

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _run(
        lambda: ORCHESTRATOR_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_polls=max_polls,
                max_concurrency=max_concurrency,
            ),
        ),
    )


@worker.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
def worker_reclaim(db_path: Path | None) -> None:
    """Fail running jobs that exceeded the stuck timeout."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.reclaim(WorkerReclaimCommand(db_path=db_path)))


@tdd_conductor.group()
def sessions() -> None:
    """Coding session commands."""


@sessions.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--project-id", required=True, help="Project the session belongs to.")
@click.option("--unit-id", default=None, help="Unit of work the session implements.")
@click.option(
    "--programmer-type",
    default="fullstack",
    show_default=True,
    help="Role used to group generated suites, for example backend.",
)
def sessions_create(
    db_path: Path | None,
    project_id: str,
    unit_id: str | None,
    programmer_type: str,
) -> None:
    """Create a pending coding session."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.create_session(
            SessionCreateCommand(
                db_path=db_path,
                project_id=project_id,
                unit_id=unit_id,
                programmer_type=programmer_type,
            ),
        ),
    )


@sessions.command("generate-tests")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--unit", default=None, help="Unit description embedded in the default prompt.")
@click.option("--prompt", default=None, help="Full prompt overriding the default template.")
@click.option("--work-dir", default=None, help="Working directory for the agent process.")
@click.option("--provider", default=None, help="Agent provider, defaults to configured one.")
@click.argument("session_id")
def sessions_generate_tests(  # noqa: PLR0913
    db_path: Path | None,
    unit: str | None,
    prompt: str | None,
    work_dir: str | None,
    provider: str | None,
    session_id: str,
) -> None:
    """Queue test generation for a pending session."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.generate_tests(
            SessionGenerateTestsCommand(
                db_path=db_path,
                session_id=session_id,
                unit=unit,
                prompt=prompt,
                work_dir=work_dir,
                provider=provider.lower() if provider else None,
            ),
        ),
    )


@sessions.command("start-tdd")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option(
    "--tests-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    required=True,
    help="JSON file with a list of `{name, code}` tests.",
)
@click.argument("session_id")
def sessions_start_tdd(db_path: Path | None, tests_file: Path, session_id: str) -> None:
    """Start a red-green-refactor cycle over the given tests."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.start_tdd(
            SessionStartTddCommand(db_path=db_path, session_id=session_id, tests_file=tests_file),
        ),
    )


@sessions.command("pause")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("session_id")
def sessions_pause(db_path: Path | None, session_id: str) -> None:
    """Stop claiming new jobs for a session."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.pause_session(SessionMutateCommand(db_path, session_id)))


@sessions.command("resume")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("session_id")
def sessions_resume(db_path: Path | None, session_id: str) -> None:
    """Make a paused session's jobs eligible again."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.resume_session(SessionMutateCommand(db_path, session_id)))


@sessions.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("session_id")
def sessions_cancel(db_path: Path | None, session_id: str) -> None:
    """Fail a session and drop its queued jobs."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.cancel_session(SessionMutateCommand(db_path, session_id)))


@sessions.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("session_id")
def sessions_retry(db_path: Path | None, session_id: str) -> None:
    """Restart a failed session."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.retry_session(SessionMutateCommand(db_path, session_id)))


@sessions.command("status")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.argument("session_id")
def sessions_status(db_path: Path | None, session_id: str) -> None:
    """Show session progress and event history."""

    _run(lambda: ORCHESTRATOR_CONTROLLER.session_status(SessionMutateCommand(db_path, session_id)))


@tdd_conductor.group()
def suites() -> None:
    """Generated test suite commands."""


@suites.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help=_DB_PATH_HELP)
@click.option("--session-id", required=True, help="Coding session that generated the suites.")
def suites_list(db_path: Path | None, session_id: str) -> None:
    """List suites of a session with their QA executions."""

    _run(
        lambda: ORCHESTRATOR_CONTROLLER.list_suites(
            SuiteListCommand(db_path=db_path, session_id=session_id),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (SessionStateError, CycleStateError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    tdd_conductor()
