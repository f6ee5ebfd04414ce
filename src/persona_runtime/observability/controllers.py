"""Controllers for runtime observability CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.observability.events import RuntimeEvent
from persona_runtime.observability.models import RuntimeEventCursor
from persona_runtime.services import open_runtime
from persona_runtime.storage.common import dump_json, from_iso


@dataclass(slots=True)
class RuntimeStatusCommand:
    db_path: Path | None


@dataclass(slots=True)
class RuntimeEventsCommand:
    """CLI input for the runtime event log query."""

    db_path: Path | None
    layer: str | None
    reason_code: str | None
    entity_id: str | None
    occurred_from: str | None
    occurred_to: str | None
    cursor: str | None
    limit: int


@dataclass(slots=True)
class RuntimeTasksCommand:
    db_path: Path | None
    limit: int


@dataclass(slots=True)
class RuntimeResumeCommand:
    db_path: Path | None
    worker_id: str
    requested_by: str


class RuntimeCliController:
    """Worker health, queue counts, the event log and circuit resume."""

    def status(self, command: RuntimeStatusCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            snapshot = services.observability.get_runtime_status()

        counts = " ".join(f"{status}={count}" for status, count in snapshot.queue_counts.items())
        lines = [
            f"Runtime status at {snapshot.generated_at.isoformat()}",
            f"Queue: {counts}",
            f"Breaker open: {snapshot.breaker_open} "
            f"workers={','.join(snapshot.open_circuit_workers) or '-'}",
            "Last event: "
            f"{snapshot.last_event_at.isoformat() if snapshot.last_event_at else '-'}",
            f"Workers: {len(snapshot.workers)}",
        ]
        for worker in snapshot.workers:
            lines.append(
                f"  {worker.worker_id} status={worker.status.value} "
                f"circuit_open={worker.circuit_open} reason={worker.circuit_reason or '-'} "
                f"heartbeat={worker.last_heartbeat_at.isoformat()}",
            )
        return lines

    def events(self, command: RuntimeEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            page = services.observability.list_runtime_events(
                layer=command.layer,
                reason_code=command.reason_code,
                entity_id=command.entity_id,
                occurred_from=_parse_time(command.occurred_from, "--from"),
                occurred_to=_parse_time(command.occurred_to, "--to"),
                cursor=_parse_cursor(command.cursor),
                limit=command.limit,
            )

        lines = [f"Runtime events: {len(page.items)}"]
        lines.extend(_event_line(event) for event in page.items)
        if page.has_more and page.next_cursor is not None:
            lines.append(f"Next cursor: {page.next_cursor.encode()}")
        return lines

    def tasks(self, command: RuntimeTasksCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            recent = services.observability.list_recent_tasks(limit=command.limit)

        lines = [f"Recent tasks: {len(recent)}"]
        for entry in recent:
            latest = entry.latest_runtime_event
            lines.append(
                f"  {entry.task.task_id} persona={entry.task.persona_id} "
                f"status={entry.task.status.value} "
                f"transition={entry.latest_transition_reason or '-'} "
                f"event={f'{latest.layer}/{latest.reason_code}' if latest else '-'}",
            )
        return lines

    def resume(self, command: RuntimeResumeCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            try:
                worker = services.observability.try_resume_worker_circuit(
                    worker_id=command.worker_id,
                    requested_by=command.requested_by,
                )
            except LookupError as error:
                raise click.ClickException(str(error)) from error
        return [
            f"Worker resumed: {worker.worker_id} status={worker.status.value} "
            f"circuit_open={worker.circuit_open}",
        ]


def _event_line(event: RuntimeEvent) -> str:
    metadata = dump_json(event.metadata) if event.metadata else "{}"
    return (
        f"  {event.occurred_at.isoformat()} {event.layer}/{event.operation} "
        f"{event.reason_code} entity={event.entity_id} metadata={metadata}"
    )


def _parse_cursor(value: str | None) -> RuntimeEventCursor | None:
    if not value:
        return None
    try:
        return RuntimeEventCursor.parse(value)
    except ValueError as error:
        raise click.ClickException(f"Invalid --cursor value: {value!r}") from error


def _parse_time(value: str | None, option: str) -> datetime | None:
    if not value:
        return None
    try:
        return from_iso(value)
    except ValueError as error:
        raise click.ClickException(f"Invalid {option} timestamp: {value!r}") from error
