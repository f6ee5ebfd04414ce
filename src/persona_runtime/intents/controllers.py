"""Controllers for intent collection and dispatch CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.dispatcher.dispatch import dispatch_new_intents
from persona_runtime.intents.models import IntentStatus
from persona_runtime.services import open_runtime


@dataclass(slots=True)
class IntentsCollectCommand:
    """CLI input for one heartbeat collection pass."""

    db_path: Path | None


@dataclass(slots=True)
class IntentsListCommand:
    """CLI input for intent listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class DispatchRunCommand:
    """CLI input for one dispatch batch."""

    db_path: Path | None
    precheck: bool = True


class IntentsCliController:
    """Collects heartbeat activity into intents and dispatches them to personas."""

    def collect(self, command: IntentsCollectCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            summary = services.build_collector().collect()

        lines = [
            "Collect summary: "
            f"created_intents={summary.created_intents} "
            f"skipped_events={summary.skipped_events}",
        ]
        for source_name, scanned in summary.scanned_by_source.items():
            lines.append(f"  {source_name}: scanned={scanned}")
        return lines

    def list_intents(self, command: IntentsListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status = _parse_status(command.status)
        with open_runtime(settings) as services:
            intents = services.intents.list_intents(status=status, limit=command.limit)

        lines = [f"Intents: {len(intents)}"]
        for intent in intents:
            reasons = ",".join(intent.decision_reason_codes) or "-"
            lines.append(
                f"  {intent.intent_id} type={intent.intent_type} status={intent.status.value} "
                f"source={intent.source_table}:{intent.source_id} "
                f"persona={intent.selected_persona_id or '-'} reasons={reasons}",
            )
        return lines

    def dispatch(self, command: DispatchRunCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            summary = dispatch_new_intents(
                intents=services.intents,
                directory=services.directory,
                policy_provider=services.policy_provider,
                create_task=services.queue.create_task,
                precheck=services.build_precheck() if command.precheck else None,
                recorder=services.recorder,
                intent_batch_size=settings.dispatch.intent_batch_size,
                persona_batch_size=settings.dispatch.persona_batch_size,
                max_retries=settings.dispatch.max_retries,
            )

        return [
            "Dispatch summary: "
            f"scanned={summary.scanned} dispatched={summary.dispatched} "
            f"skipped={summary.skipped}",
        ]


def _parse_status(value: str | None) -> IntentStatus | None:
    if value is None:
        return None
    try:
        return IntentStatus(value.strip().upper())
    except ValueError as error:
        raise click.ClickException(f"Unsupported intent status: {value!r}") from error
