"""Controllers for review queue CLI commands."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

import rich_click as click

from persona_runtime.config import Settings
from persona_runtime.review.models import ReviewDecision, ReviewQueueItem, ReviewStatus
from persona_runtime.services import open_runtime
from persona_runtime.storage.common import from_iso


@dataclass(slots=True)
class ReviewListCommand:
    """CLI input for review listing."""

    db_path: Path | None
    statuses: tuple[str, ...]
    limit: int
    cursor: str | None = None


@dataclass(slots=True)
class ReviewClaimCommand:
    db_path: Path | None
    review_id: str
    reviewer_id: str


@dataclass(slots=True)
class ReviewDecisionCommand:
    """CLI input for approve/reject."""

    db_path: Path | None
    review_id: str
    reviewer_id: str
    decision: ReviewDecision
    reason_code: str
    note: str | None = None


@dataclass(slots=True)
class ReviewExpireCommand:
    db_path: Path | None
    batch_size: int


@dataclass(slots=True)
class ReviewEventsCommand:
    db_path: Path | None
    review_id: str
    limit: int


class ReviewCliController:
    """Operator surface over the human review queue."""

    def list_items(self, command: ReviewListCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        statuses = [_parse_status(value) for value in command.statuses]
        cursor = _parse_cursor(command.cursor)
        with open_runtime(settings) as services:
            page = services.reviews.list(statuses=statuses, limit=command.limit, cursor=cursor)
            total = services.reviews.count(statuses=statuses)

        lines = [f"Review items: {len(page.items)} of {total}"]
        lines.extend(_item_line(item) for item in page.items)
        if page.next_cursor is not None:
            lines.append(f"Next cursor: {page.next_cursor.isoformat()}")
        return lines

    def claim(self, command: ReviewClaimCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            item = services.reviews.claim(
                review_id=command.review_id,
                reviewer_id=command.reviewer_id,
            )
            if item is None:
                current = services.reviews.get(command.review_id)
                if current is None:
                    raise click.ClickException(f"Review item not found: {command.review_id}")
                raise click.ClickException(
                    f"Review item {command.review_id} cannot be claimed: "
                    f"status={current.status.value} reviewer={current.reviewer_id or '-'}",
                )
        return [f"Review claimed: {item.review_id} reviewer={item.reviewer_id}"]

    def decide(self, command: ReviewDecisionCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            decide = (
                services.reviews.approve
                if command.decision == ReviewDecision.APPROVE
                else services.reviews.reject
            )
            try:
                item = decide(
                    review_id=command.review_id,
                    reviewer_id=command.reviewer_id,
                    reason_code=command.reason_code,
                    note=command.note,
                )
            except RuntimeError as error:
                raise click.ClickException(str(error)) from error
            if item is None:
                raise click.ClickException(
                    f"Review item {command.review_id} is not claimed for review.",
                )
            task = services.queue.get_task(item.task_id)

        task_status = task.status.value if task is not None else "-"
        return [
            f"Review {item.status.value.lower()}: {item.review_id} "
            f"task={item.task_id} task_status={task_status}",
        ]

    def expire(self, command: ReviewExpireCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            expired = services.reviews.expire_due(batch_size=command.batch_size)
        return [f"Expired review items: {expired}"]

    def events(self, command: ReviewEventsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with open_runtime(settings) as services:
            if services.reviews.get(command.review_id) is None:
                raise click.ClickException(f"Review item not found: {command.review_id}")
            events = services.reviews.list_events(command.review_id, limit=command.limit)

        lines = [f"Review events: {len(events)}"]
        for event in events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type.value} "
                f"reason={event.reason_code or '-'} reviewer={event.reviewer_id or '-'}",
            )
        return lines


def _item_line(item: ReviewQueueItem) -> str:
    return (
        f"  {item.review_id} task={item.task_id} persona={item.persona_id} "
        f"status={item.status.value} risk={item.risk_level} "
        f"reason={item.enqueue_reason_code} reviewer={item.reviewer_id or '-'} "
        f"expires_at={item.expires_at.isoformat()}"
    )


def _parse_status(value: str) -> ReviewStatus:
    try:
        return ReviewStatus(value.strip().upper())
    except ValueError as error:
        raise click.ClickException(f"Unsupported review status: {value!r}") from error


def _parse_cursor(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return from_iso(value)
    except ValueError as error:
        raise click.ClickException(f"Invalid cursor: {value!r}") from error
