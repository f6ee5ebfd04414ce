"""Controllers for policy control plane CLI commands."""

from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.policy.control_plane import diff_policy_documents
from persona_runtime.policy.models import PolicyDocument, PolicyRelease, ReplyPolicyScope
from persona_runtime.policy.store import PolicyDocumentInvalidError
from persona_runtime.services import open_runtime


@dataclass(slots=True)
class PolicyPublishCommand:
    """CLI input for publishing a policy document from a JSON file."""

    db_path: Path | None
    document_path: Path
    created_by: str | None
    note: str | None


@dataclass(slots=True)
class PolicyShowCommand:
    """CLI input for showing the active release and a resolved scope."""

    db_path: Path | None
    persona_id: str | None
    board_id: str | None


@dataclass(slots=True)
class PolicyDiffCommand:
    db_path: Path | None
    from_version: int
    to_version: int | None


@dataclass(slots=True)
class PolicyRollbackCommand:
    db_path: Path | None
    version: int


@dataclass(slots=True)
class PolicyReleasesCommand:
    db_path: Path | None
    limit: int


class PolicyCliController:
    """Publish, inspect, diff and roll back reply policy releases."""

    def publish(self, command: PolicyPublishCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        document = _read_document(command.document_path)
        with open_runtime(settings) as services:
            previous = services.policy_store.fetch_latest_active()
            try:
                release = services.policy_store.publish_release(
                    document,
                    created_by=command.created_by,
                    note=command.note,
                )
            except (PolicyDocumentInvalidError, RuntimeError) as error:
                raise click.ClickException(str(error)) from error

        lines = [f"Policy published: version={release.version}"]
        lines.extend(
            _diff_lines(previous.document if previous is not None else None, release),
        )
        return lines

    def show(self, command: PolicyShowCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        scope = ReplyPolicyScope(persona_id=command.persona_id, board_id=command.board_id)
        with open_runtime(settings) as services:
            release = services.policy_store.fetch_latest_active()
            resolved = services.policy_provider.get_reply_policy(scope)
            status = services.policy_provider.get_status()

        lines = [
            f"Active release: {release.version if release is not None else '-'}",
            f"Provider: reason={status.last_reason_code.value if status.last_reason_code else '-'} "
            f"last_error={status.last_load_error or '-'}",
            f"Resolved policy (persona={scope.persona_id or '-'} board={scope.board_id or '-'}):",
        ]
        for key, value in resolved.to_document_patch().items():
            lines.append(f"  {key}={value}")
        if release is not None:
            lines.append("Document:")
            lines.append(json.dumps(release.document.to_dict(), indent=2, sort_keys=True))
        return lines

    def diff(self, command: PolicyDiffCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            base = services.policy_store.get_release(command.from_version)
            target = (
                services.policy_store.get_release(command.to_version)
                if command.to_version is not None
                else services.policy_store.fetch_latest_active()
            )
        if base is None:
            raise click.ClickException(f"Policy release not found: {command.from_version}")
        if target is None:
            raise click.ClickException(
                f"Policy release not found: {command.to_version or 'active'}",
            )
        return [
            f"Policy diff: {base.version} -> {target.version}",
            *_diff_lines(base.document, target),
        ]

    def rollback(self, command: PolicyRollbackCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            try:
                release = services.policy_store.rollback_to(command.version)
            except LookupError as error:
                raise click.ClickException(str(error)) from error
            services.policy_provider.invalidate()
        return [f"Policy rolled back: active version={release.version}"]

    def releases(self, command: PolicyReleasesCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            releases = services.policy_store.list_releases(limit=command.limit)

        lines = [f"Policy releases: {len(releases)}"]
        for release in releases:
            lines.append(
                f"  v{release.version} active={release.is_active} "
                f"created_at={release.created_at.isoformat()} "
                f"by={release.created_by or '-'} note={release.note or '-'}",
            )
        return lines


def _read_document(path: Path) -> dict[str, Any]:
    try:
        raw = json.loads(path.read_text("utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise click.ClickException(f"Cannot read policy document {path}: {error}") from error
    if not isinstance(raw, dict):
        raise click.ClickException("Policy document must be a JSON object.")
    return raw


def _diff_lines(previous: PolicyDocument | None, release: PolicyRelease) -> list[str]:
    entries = diff_policy_documents(previous, release.document)
    if not entries:
        return ["  (no changes)"]
    return [f"  {entry.path}: {entry.previous} -> {entry.next}" for entry in entries]
