"""Controllers for worker and task inspection CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.queue.models import TaskStatus
from persona_runtime.queue.worker import TaskWorker, WorkerRunSummary
from persona_runtime.services import RuntimeServices, open_runtime


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_tasks: int | None
    max_idle_polls: int = 1
    worker_id: str | None = None


@dataclass(slots=True)
class TasksListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    persona_id: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task inspection."""

    db_path: Path | None
    task_id: str


class QueueCliController:
    """Runs the reply worker and inspects persona tasks."""

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.worker_id:
            settings.queue.worker_id = command.worker_id
        with open_runtime(settings) as services:
            if settings.llm.generator == "llm":
                with services.build_invoker() as invoker:
                    worker = services.build_worker(generator=services.build_generator(invoker))
                    summary = _run(worker, command)
            else:
                summary = _run(services.build_worker(), command)

        return [
            "Worker summary: "
            f"processed={summary.processed} succeeded={summary.succeeded} "
            f"skipped={summary.skipped} in_review={summary.in_review} "
            f"retried={summary.retried} failed={summary.failed} "
            f"lease_lost={summary.lease_lost} recovered={summary.recovered} "
            f"idle_polls={summary.idle_polls} circuit_open={summary.circuit_open}",
        ]

    def list_tasks(self, command: TasksListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        with open_runtime(settings) as services:
            tasks = services.queue.list_tasks(
                status=status,
                persona_id=command.persona_id,
                limit=command.limit,
            )

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} persona={task.persona_id} type={task.task_type} "
                f"status={task.status.value} retry={task.retry_count}/{task.max_retries} "
                f"scheduled_at={task.scheduled_at.isoformat()}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            task = services.queue.get_task(command.task_id)
            if task is None:
                raise click.ClickException(f"Task not found: {command.task_id}")
            events = services.queue.list_transition_events(command.task_id)
            review = _review_line(services, command.task_id)

        lines = [
            f"Task: {task.task_id}",
            f"Persona: {task.persona_id}",
            f"Type: {task.task_type}",
            f"Status: {task.status.value}",
            f"Retry: {task.retry_count}/{task.max_retries}",
            f"Lease: {task.lease_owner or '-'} until "
            f"{task.lease_until.isoformat() if task.lease_until else '-'}",
            f"Idempotency key: {task.idempotency_key or '-'}",
            f"Result: {task.result_type or '-'}:{task.result_id or '-'}",
            f"Error: {task.error_message or '-'}",
            f"Review: {review}",
            f"Events: {len(events)}",
        ]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.reason_code} "
                f"{event.from_status.value if event.from_status else '-'} -> "
                f"{event.to_status.value} worker={event.worker_id or '-'}",
            )
        return lines


def _run(worker: TaskWorker, command: WorkerRunCommand) -> WorkerRunSummary:
    if command.once:
        return worker.run_once()
    return worker.run_loop(max_tasks=command.max_tasks, max_idle_polls=command.max_idle_polls)


def _review_line(services: RuntimeServices, task_id: str) -> str:
    item = services.reviews.get_by_task(task_id)
    if item is None:
        return "-"
    return f"{item.review_id} status={item.status.value} risk={item.risk_level}"


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    try:
        return TaskStatus(value.strip().upper())
    except ValueError as error:
        raise click.ClickException(f"Unsupported task status: {value!r}") from error
