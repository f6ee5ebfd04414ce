"""CLI entrypoint for persona-runtime."""

import logging
from pathlib import Path

import rich_click as click

from persona_runtime import __version__
from persona_runtime.config import Settings
from persona_runtime.intents.controllers import (
    DispatchRunCommand,
    IntentsCliController,
    IntentsCollectCommand,
    IntentsListCommand,
)
from persona_runtime.llm.controllers import LlmCliController, LlmInvokeCommand
from persona_runtime.observability.controllers import (
    RuntimeCliController,
    RuntimeEventsCommand,
    RuntimeResumeCommand,
    RuntimeStatusCommand,
    RuntimeTasksCommand,
)
from persona_runtime.policy.controllers import (
    PolicyCliController,
    PolicyDiffCommand,
    PolicyPublishCommand,
    PolicyReleasesCommand,
    PolicyRollbackCommand,
    PolicyShowCommand,
)
from persona_runtime.queue.controllers import (
    QueueCliController,
    TaskInspectCommand,
    TasksListCommand,
    WorkerRunCommand,
)
from persona_runtime.review.controllers import (
    ReviewClaimCommand,
    ReviewCliController,
    ReviewDecisionCommand,
    ReviewEventsCommand,
    ReviewExpireCommand,
    ReviewListCommand,
)
from persona_runtime.review.models import ReviewDecision, ReviewStatus
from persona_runtime.storage.alembic_runner import upgrade_head

click.rich_click.USE_MARKDOWN = True
INTENTS_CONTROLLER = IntentsCliController()
QUEUE_CONTROLLER = QueueCliController()
REVIEW_CONTROLLER = ReviewCliController()
POLICY_CONTROLLER = PolicyCliController()
RUNTIME_CONTROLLER = RuntimeCliController()
LLM_CONTROLLER = LlmCliController()

DB_PATH_OPTION = click.option(
    "--db-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite DB path.",
)


@click.group()
@click.version_option(version=__version__, prog_name="persona-runtime")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Root logging level.",
)
def persona_runtime(log_level: str) -> None:
    """Persona task orchestration runtime CLI."""

    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@persona_runtime.group()
def db() -> None:
    """Database commands."""


@db.command("init")
@DB_PATH_OPTION
def db_init(db_path: Path | None) -> None:
    """Apply migrations up to head."""

    settings = Settings.from_env(db_path=db_path)
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    upgrade_head(settings.db_path)
    click.echo(f"Database ready: {settings.db_path}")


@persona_runtime.group()
def intents() -> None:
    """Heartbeat collection and task intents."""


@intents.command("collect")
@DB_PATH_OPTION
def intents_collect(db_path: Path | None) -> None:
    """Scan heartbeat sources from their checkpoints and upsert reply intents."""

    _emit_lines(INTENTS_CONTROLLER.collect(IntentsCollectCommand(db_path=db_path)))


@intents.command("list")
@DB_PATH_OPTION
@click.option("--status", default=None, help="Filter by status: NEW, DISPATCHED or SKIPPED.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of intents to print.",
)
def intents_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List task intents, newest first."""

    _emit_lines(
        INTENTS_CONTROLLER.list_intents(
            IntentsListCommand(db_path=db_path, status=status, limit=limit),
        ),
    )


@persona_runtime.group()
def dispatch() -> None:
    """Intent dispatch commands."""


@dispatch.command("run")
@DB_PATH_OPTION
@click.option(
    "--precheck/--no-precheck",
    default=True,
    show_default=True,
    help="Run eligibility, rate limit, cooldown and similarity prechecks.",
)
def dispatch_run(db_path: Path | None, precheck: bool) -> None:
    """Dispatch one batch of NEW intents to personas."""

    _emit_lines(INTENTS_CONTROLLER.dispatch(DispatchRunCommand(db_path=db_path, precheck=precheck)))


@persona_runtime.group()
def worker() -> None:
    """Reply worker commands."""


@worker.command("run")
@DB_PATH_OPTION
@click.option("--once", is_flag=True, default=False, help="Process at most one task.")
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many processed tasks.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Stop after this many consecutive empty polls.",
)
@click.option("--worker-id", default=None, help="Override PERSONA_RUNTIME_WORKER_ID.")
def worker_run(
    db_path: Path | None,
    once: bool,
    max_tasks: int | None,
    max_idle_polls: int,
    worker_id: str | None,
) -> None:
    """Claim and execute pending reply tasks."""

    _emit_lines(
        QUEUE_CONTROLLER.run_worker(
            WorkerRunCommand(
                db_path=db_path,
                once=once,
                max_tasks=max_tasks,
                max_idle_polls=max_idle_polls,
                worker_id=worker_id,
            ),
        ),
    )


@persona_runtime.group()
def tasks() -> None:
    """Persona task inspection."""


@tasks.command("list")
@DB_PATH_OPTION
@click.option("--status", default=None, help="Filter by task status.")
@click.option("--persona-id", default=None, help="Filter by persona.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max number of tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    persona_id: str | None,
    limit: int,
) -> None:
    """List persona tasks, newest first."""

    _emit_lines(
        QUEUE_CONTROLLER.list_tasks(
            TasksListCommand(db_path=db_path, status=status, persona_id=persona_id, limit=limit),
        ),
    )


@tasks.command("inspect")
@DB_PATH_OPTION
@click.argument("task_id")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Show one task with its transition history."""

    _emit_lines(QUEUE_CONTROLLER.inspect_task(TaskInspectCommand(db_path=db_path, task_id=task_id)))


@persona_runtime.group()
def review() -> None:
    """Human review queue commands."""


@review.command("list")
@DB_PATH_OPTION
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in ReviewStatus], case_sensitive=False),
    help="Status filter. Can be repeated.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
    help="Page size.",
)
@click.option("--cursor", default=None, help="Return items created strictly before this time.")
def review_list(
    db_path: Path | None,
    statuses: tuple[str, ...],
    limit: int,
    cursor: str | None,
) -> None:
    """List review items, newest first."""

    _emit_lines(
        REVIEW_CONTROLLER.list_items(
            ReviewListCommand(db_path=db_path, statuses=statuses, limit=limit, cursor=cursor),
        ),
    )


@review.command("claim")
@DB_PATH_OPTION
@click.argument("review_id")
@click.option("--reviewer", "reviewer_id", required=True, help="Reviewer identity.")
def review_claim(db_path: Path | None, review_id: str, reviewer_id: str) -> None:
    """Claim a PENDING review item."""

    _emit_lines(
        REVIEW_CONTROLLER.claim(
            ReviewClaimCommand(db_path=db_path, review_id=review_id, reviewer_id=reviewer_id),
        ),
    )


def _decision_command(decision: ReviewDecision, default_reason: str) -> click.Command:
    @DB_PATH_OPTION
    @click.argument("review_id")
    @click.option("--reviewer", "reviewer_id", required=True, help="Reviewer identity.")
    @click.option("--reason", "reason_code", default=default_reason, show_default=True)
    @click.option("--note", default=None, help="Free-form reviewer note.")
    def command(
        db_path: Path | None,
        review_id: str,
        reviewer_id: str,
        reason_code: str,
        note: str | None,
    ) -> None:
        _emit_lines(
            REVIEW_CONTROLLER.decide(
                ReviewDecisionCommand(
                    db_path=db_path,
                    review_id=review_id,
                    reviewer_id=reviewer_id,
                    decision=decision,
                    reason_code=reason_code,
                    note=note,
                ),
            ),
        )

    return click.command(
        decision.value.lower(),
        help=f"{decision.value.title()} a review item you have claimed.",
    )(command)


review.add_command(_decision_command(ReviewDecision.APPROVE, "reviewer_approved"))
review.add_command(_decision_command(ReviewDecision.REJECT, "reviewer_rejected"))


@review.command("expire")
@DB_PATH_OPTION
@click.option(
    "--batch-size",
    type=click.IntRange(min=1, max=1000),
    default=100,
    show_default=True,
    help="Max items to expire in one pass.",
)
def review_expire(db_path: Path | None, batch_size: int) -> None:
    """Expire open review items past their deadline."""

    _emit_lines(
        REVIEW_CONTROLLER.expire(ReviewExpireCommand(db_path=db_path, batch_size=batch_size)),
    )


@review.command("events")
@DB_PATH_OPTION
@click.argument("review_id")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=50,
    show_default=True,
)
def review_events(db_path: Path | None, review_id: str, limit: int) -> None:
    """Show the audit trail of one review item."""

    _emit_lines(
        REVIEW_CONTROLLER.events(
            ReviewEventsCommand(db_path=db_path, review_id=review_id, limit=limit),
        ),
    )


@persona_runtime.group()
def policy() -> None:
    """Reply policy control plane."""


@policy.command("publish")
@DB_PATH_OPTION
@click.argument("document_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--by", "created_by", default=None, help="Author of the release.")
@click.option("--note", default=None, help="Change note.")
def policy_publish(
    db_path: Path | None,
    document_path: Path,
    created_by: str | None,
    note: str | None,
) -> None:
    """Validate a JSON policy document and activate it as a new release."""

    _emit_lines(
        POLICY_CONTROLLER.publish(
            PolicyPublishCommand(
                db_path=db_path,
                document_path=document_path,
                created_by=created_by,
                note=note,
            ),
        ),
    )


@policy.command("show")
@DB_PATH_OPTION
@click.option("--persona-id", default=None, help="Resolve for this persona.")
@click.option("--board-id", default=None, help="Resolve for this board.")
def policy_show(db_path: Path | None, persona_id: str | None, board_id: str | None) -> None:
    """Show the active release and the resolved policy for a scope."""

    _emit_lines(
        POLICY_CONTROLLER.show(
            PolicyShowCommand(db_path=db_path, persona_id=persona_id, board_id=board_id),
        ),
    )


@policy.command("diff")
@DB_PATH_OPTION
@click.argument("from_version", type=click.IntRange(min=1))
@click.argument("to_version", type=click.IntRange(min=1), required=False)
def policy_diff(db_path: Path | None, from_version: int, to_version: int | None) -> None:
    """Diff two releases; TO_VERSION defaults to the active release."""

    _emit_lines(
        POLICY_CONTROLLER.diff(
            PolicyDiffCommand(db_path=db_path, from_version=from_version, to_version=to_version),
        ),
    )


@policy.command("rollback")
@DB_PATH_OPTION
@click.argument("version", type=click.IntRange(min=1))
def policy_rollback(db_path: Path | None, version: int) -> None:
    """Reactivate an older release."""

    _emit_lines(POLICY_CONTROLLER.rollback(PolicyRollbackCommand(db_path=db_path, version=version)))


@policy.command("releases")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=200),
    default=20,
    show_default=True,
)
def policy_releases(db_path: Path | None, limit: int) -> None:
    """List policy releases, newest first."""

    _emit_lines(POLICY_CONTROLLER.releases(PolicyReleasesCommand(db_path=db_path, limit=limit)))


@persona_runtime.group()
def runtime() -> None:
    """Runtime observability and circuit breaker."""


@runtime.command("status")
@DB_PATH_OPTION
def runtime_status(db_path: Path | None) -> None:
    """Show workers, queue counts and breaker state."""

    _emit_lines(RUNTIME_CONTROLLER.status(RuntimeStatusCommand(db_path=db_path)))


@runtime.command("events")
@DB_PATH_OPTION
@click.option("--layer", default=None, help="Filter by layer, for example task_queue.")
@click.option("--reason-code", default=None, help="Filter by reason code.")
@click.option("--entity-id", default=None, help="Filter by entity id.")
@click.option("--from", "occurred_from", default=None, help="ISO timestamp lower bound.")
@click.option("--to", "occurred_to", default=None, help="ISO timestamp upper bound.")
@click.option(
    "--cursor",
    default=None,
    help="Next cursor of a previous page, `<timestamp>#<event id>`, or a bare timestamp.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
)
def runtime_events(  # noqa: PLR0913
    db_path: Path | None,
    layer: str | None,
    reason_code: str | None,
    entity_id: str | None,
    occurred_from: str | None,
    occurred_to: str | None,
    cursor: str | None,
    limit: int,
) -> None:
    """Query the runtime event log, newest first."""

    _emit_lines(
        RUNTIME_CONTROLLER.events(
            RuntimeEventsCommand(
                db_path=db_path,
                layer=layer,
                reason_code=reason_code,
                entity_id=entity_id,
                occurred_from=occurred_from,
                occurred_to=occurred_to,
                cursor=cursor,
                limit=limit,
            ),
        ),
    )


@runtime.command("tasks")
@DB_PATH_OPTION
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=100),
    default=20,
    show_default=True,
)
def runtime_tasks(db_path: Path | None, limit: int) -> None:
    """Recent tasks with their latest transition and runtime event."""

    _emit_lines(RUNTIME_CONTROLLER.tasks(RuntimeTasksCommand(db_path=db_path, limit=limit)))


@runtime.command("resume")
@DB_PATH_OPTION
@click.argument("worker_id")
@click.option("--by", "requested_by", default="operator", show_default=True)
def runtime_resume(db_path: Path | None, worker_id: str, requested_by: str) -> None:
    """Close an open worker circuit."""

    _emit_lines(
        RUNTIME_CONTROLLER.resume(
            RuntimeResumeCommand(db_path=db_path, worker_id=worker_id, requested_by=requested_by),
        ),
    )


@persona_runtime.group()
def llm() -> None:
    """LLM provider commands."""


@llm.command("invoke")
@DB_PATH_OPTION
@click.option("--prompt", required=True, help="Prompt text.")
@click.option(
    "--task-type",
    type=click.Choice(["reply", "vote", "dispatch", "generic"], case_sensitive=False),
    default="generic",
    show_default=True,
)
@click.option("--provider", "provider_id", default=None, help="Override the primary provider.")
@click.option("--model", "model_id", default=None, help="Override the primary model.")
@click.option("--timeout-seconds", type=click.FloatRange(min=0.1), default=None)
@click.option("--retries", type=click.IntRange(min=0, max=5), default=None)
def llm_invoke(  # noqa: PLR0913
    db_path: Path | None,
    prompt: str,
    task_type: str,
    provider_id: str | None,
    model_id: str | None,
    timeout_seconds: float | None,
    retries: int | None,
) -> None:
    """Run one prompt through the routed providers."""

    result = LLM_CONTROLLER.invoke(
        LlmInvokeCommand(
            db_path=db_path,
            prompt=prompt,
            task_type=task_type,
            provider_id=provider_id,
            model_id=model_id,
            timeout_seconds=timeout_seconds,
            retries=retries,
        ),
    )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("LLM invocation failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    persona_runtime()
