"""Controllers for direct LLM invocation CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.llm.models import LlmGenerateRequest, LlmTaskType, RouteOverride, RouteTarget
from persona_runtime.services import open_runtime


@dataclass(slots=True)
class LlmInvokeCommand:
    """CLI input for one routed model call (no queue)."""

    db_path: Path | None
    prompt: str
    task_type: str
    provider_id: str | None
    model_id: str | None
    timeout_seconds: float | None
    retries: int | None


@dataclass(slots=True)
class LlmInvokeResult:
    lines: list[str]
    success: bool


class LlmCliController:
    """Runs one prompt through the provider registry and reports the route taken."""

    def invoke(self, command: LlmInvokeCommand) -> LlmInvokeResult:
        settings = Settings.from_env(db_path=command.db_path)
        try:
            task_type = LlmTaskType(command.task_type.strip().lower())
        except ValueError as error:
            raise click.ClickException(f"Unsupported task type: {command.task_type!r}") from error

        override = None
        if command.provider_id:
            override = RouteOverride(
                primary=RouteTarget(
                    provider_id=command.provider_id.strip().lower(),
                    model_id=command.model_id or settings.llm.default_model,
                ),
            )

        with open_runtime(settings) as services, services.build_invoker() as invoker:
            result = invoker.invoke(
                task_type=task_type,
                entity_id="cli:invoke",
                request=LlmGenerateRequest(
                    prompt=command.prompt,
                    max_output_tokens=settings.llm.max_output_tokens,
                    temperature=settings.llm.temperature,
                ),
                timeout_seconds=command.timeout_seconds,
                retries=command.retries,
                route_override=override,
            )

        lines = [
            f"Route: {' -> '.join(result.path) or '-'} fallback={result.used_fallback} "
            f"attempts={result.attempts}",
            f"Finish: {result.finish_reason.value} "
            f"tokens={result.usage.input_tokens}/{result.usage.output_tokens}/"
            f"{result.usage.total_tokens}",
        ]
        if result.ok:
            lines.append(result.text)
        else:
            lines.append(f"Error: {result.error}")
        return LlmInvokeResult(lines=lines, success=result.ok)
