"""Turn heartbeat events into deduplicated, checkpointed task intents."""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

from persona_runtime.forum.directory import ForumDirectory
from persona_runtime.forum.models import NON_INTERACTABLE_POST_STATUSES
from persona_runtime.intents.models import (
    CollectSummary,
    HeartbeatSourceName,
    IntentType,
    SourceCheckpoint,
    SourceCursor,
    SourceEvent,
    TaskIntentUpsert,
)
from persona_runtime.intents.repository import HeartbeatSource, TaskIntentRepository
from persona_runtime.observability.events import RuntimeEventRecorder, RuntimeLayer

logger = logging.getLogger(__name__)

DEFAULT_SOURCES: tuple[str, ...] = tuple(source.value for source in HeartbeatSourceName)
DEFAULT_BATCH_SIZE = 500

TargetPredicate = Callable[[str], bool]


class TaskIntentCollector:
    """Scans each source from its checkpoint and upserts reply intents.

    A single bad event never aborts the run; it is counted as skipped.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        source: HeartbeatSource,
        intents: TaskIntentRepository,
        sources: Sequence[str] = DEFAULT_SOURCES,
        batch_size: int = DEFAULT_BATCH_SIZE,
        target_is_eligible: TargetPredicate | None = None,
        recorder: RuntimeEventRecorder | None = None,
    ) -> None:
        self.source = source
        self.intents = intents
        self.sources = tuple(sources)
        self.batch_size = max(1, batch_size)
        self.target_is_eligible = target_is_eligible
        self.recorder = recorder

    def collect(self, now: datetime | None = None) -> CollectSummary:
        summary = CollectSummary(scanned_by_source=dict.fromkeys(self.sources, 0))
        eligibility_cache: dict[str, bool] = {}

        for source_name in self.sources:
            checkpoint = self.source.get_checkpoint(source_name)
            since = checkpoint.last_captured_at - timedelta(
                seconds=checkpoint.safety_overlap_seconds,
            )

            scanned = 0
            created = 0
            skipped = 0
            watermark: datetime | None = None
            cursor: SourceCursor | None = None
            while True:
                events = self.source.fetch_recent_events(
                    source_name,
                    since=since,
                    limit=self.batch_size,
                    after=cursor,
                )
                scanned += len(events)
                for event in events:
                    if self._collect_event(event, eligibility_cache=eligibility_cache):
                        created += 1
                    else:
                        skipped += 1
                if events:
                    newest = max(event.created_at for event in events)
                    watermark = newest if watermark is None else max(watermark, newest)
                if len(events) < self.batch_size:
                    break
                # A full page may hide more events at or after its last position.
                last = events[-1]
                cursor = SourceCursor(created_at=last.created_at, source_id=last.source_id)

            summary.scanned_by_source[source_name] = scanned
            summary.created_intents += created
            summary.skipped_events += skipped

            if watermark is not None:
                self.source.upsert_checkpoint(
                    SourceCheckpoint(
                        source_name=source_name,
                        last_captured_at=watermark,
                        safety_overlap_seconds=checkpoint.safety_overlap_seconds,
                    ),
                )

            if self.recorder is not None:
                self.recorder.record(
                    layer=RuntimeLayer.INTENT_COLLECTOR,
                    operation="COLLECT",
                    reason_code="intentsCollected",
                    entity_id=source_name,
                    occurred_at=now,
                    metadata={"scanned": scanned, "created": created, "skipped": skipped},
                )

        logger.info(
            "Collected %d intents (%d events skipped) from %s",
            summary.created_intents,
            summary.skipped_events,
            ", ".join(f"{name}={count}" for name, count in summary.scanned_by_source.items()),
        )
        return summary

    def _collect_event(self, event: SourceEvent, *, eligibility_cache: dict[str, bool]) -> bool:
        """Upsert the intent for one event; False when the event is skipped."""

        try:
            intent = self._to_intent(event, eligibility_cache=eligibility_cache)
            if intent is None:
                return False
            self.intents.upsert_intent(intent)
        except Exception as error:  # noqa: BLE001
            logger.warning(
                "Skipping heartbeat event %s/%s: %s",
                event.source_name,
                event.source_id,
                error,
            )
            return False
        return True

    def _to_intent(
        self,
        event: SourceEvent,
        *,
        eligibility_cache: dict[str, bool],
    ) -> TaskIntentUpsert | None:
        author_id = event.payload.get("authorId")
        if not isinstance(author_id, str) or not author_id:
            return None

        if event.source_name == HeartbeatSourceName.POSTS.value:
            post_id = event.source_id
            payload = {
                "postId": post_id,
                "parentCommentId": None,
                "trigger": "new_post",
                "sourceName": event.source_name,
            }
        elif event.source_name == HeartbeatSourceName.COMMENTS.value:
            post_id = event.payload.get("postId")
            if not isinstance(post_id, str) or not post_id:
                return None
            payload = {
                "postId": post_id,
                "parentCommentId": event.source_id,
                "trigger": "new_comment",
                "sourceName": event.source_name,
            }
        else:
            # Only reply intents are produced; other sources are observed.
            return None

        if not self._is_eligible(post_id, eligibility_cache):
            return None
        return TaskIntentUpsert(
            intent_type=IntentType.REPLY,
            source_table=event.source_name,
            source_id=event.source_id,
            source_created_at=event.created_at,
            payload=payload,
        )

    def _is_eligible(self, post_id: str, cache: dict[str, bool]) -> bool:
        if self.target_is_eligible is None:
            return True
        if post_id not in cache:
            cache[post_id] = self.target_is_eligible(post_id)
        return cache[post_id]


def forum_target_predicate(directory: ForumDirectory) -> TargetPredicate:
    """Post exists, is interactable, and its board is not archived."""

    def is_eligible(post_id: str) -> bool:
        post = directory.get_post(post_id)
        if post is None or post.status in NON_INTERACTABLE_POST_STATUSES:
            return False
        return not directory.is_board_archived(post.board_id)

    return is_eligible
