"""Composition root: build the runtime object graph from settings."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy.engine import Engine

from persona_runtime.config import Settings
from persona_runtime.dispatcher.precheck import ReplyDispatchPrecheck, recent_replies_from_directory
from persona_runtime.forum.directory import SqlForumDirectory
from persona_runtime.intents.collector import TaskIntentCollector, forum_target_predicate
from persona_runtime.intents.repository import SqlHeartbeatSource, SqlTaskIntentRepository
from persona_runtime.llm.invoker import LlmInvoker
from persona_runtime.llm.providers.mock import MockProvider
from persona_runtime.llm.providers.xai import XaiProvider
from persona_runtime.llm.registry import ProviderRegistry, ProviderRoutes
from persona_runtime.llm.runtime_config import CachedLlmRuntimeConfigProvider
from persona_runtime.observability.events import RuntimeEventRecorder, SqlRuntimeEventSink
from persona_runtime.observability.store import RuntimeObservabilityStore
from persona_runtime.policy.control_plane import CachedReplyPolicyProvider
from persona_runtime.policy.models import DispatcherPolicy
from persona_runtime.policy.store import SqlPolicyReleaseStore
from persona_runtime.queue.executor import ReplyExecutionAgent
from persona_runtime.queue.generator import (
    LlmReplyGenerator,
    ReplyGenerator,
    TemplateReplyGenerator,
)
from persona_runtime.queue.repository import TaskQueueRepository
from persona_runtime.queue.worker import TaskWorker
from persona_runtime.review.repository import SqlReviewQueueStore
from persona_runtime.safety.gate import RuleBasedReplySafetyGate
from persona_runtime.storage.alembic_runner import upgrade_head
from persona_runtime.storage.common import build_sqlite_engine

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RuntimeServices:
    """Shared engine, recorder and the stores built on top of them."""

    settings: Settings
    engine: Engine
    recorder: RuntimeEventRecorder
    directory: SqlForumDirectory
    intents: SqlTaskIntentRepository
    heartbeat: SqlHeartbeatSource
    queue: TaskQueueRepository
    reviews: SqlReviewQueueStore
    policy_store: SqlPolicyReleaseStore
    policy_provider: CachedReplyPolicyProvider
    observability: RuntimeObservabilityStore

    def build_collector(self) -> TaskIntentCollector:
        return TaskIntentCollector(
            source=self.heartbeat,
            intents=self.intents,
            sources=self.settings.collector.sources,
            batch_size=self.settings.collector.batch_size,
            target_is_eligible=forum_target_predicate(self.directory),
            recorder=self.recorder,
        )

    def build_precheck(self) -> ReplyDispatchPrecheck:
        return ReplyDispatchPrecheck(
            directory=self.directory,
            recent_reply_hints=recent_replies_from_directory(self.directory),
            max_length=self.settings.safety.max_length,
            recorder=self.recorder,
        )

    def build_invoker(self) -> LlmInvoker:
        llm = self.settings.llm
        registry = ProviderRegistry(ProviderRoutes.from_settings(llm))
        registry.register(
            XaiProvider(
                api_key=llm.xai_api_key,
                base_url=llm.xai_base_url,
                default_model=llm.default_model,
            ),
        )
        registry.register(MockProvider())
        return LlmInvoker(
            registry=registry,
            recorder=self.recorder,
            runtime_config=CachedLlmRuntimeConfigProvider(
                store=self.policy_store,
                recorder=self.recorder,
                ttl_seconds=self.settings.policy.cache_ttl_seconds,
            ),
            default_timeout_seconds=llm.timeout_seconds,
            default_retries=llm.retries,
        )

    def build_generator(self, invoker: LlmInvoker | None = None) -> ReplyGenerator:
        llm = self.settings.llm
        template = TemplateReplyGenerator(self.directory)
        if llm.generator != "llm":
            return template
        return LlmReplyGenerator(
            directory=self.directory,
            invoker=invoker or self.build_invoker(),
            template=template,
            recorder=self.recorder,
            max_iterations=llm.tool_loop_max_iterations,
            loop_timeout_seconds=llm.tool_loop_timeout_seconds,
            max_output_tokens=llm.max_output_tokens,
            temperature=llm.temperature,
            get_global_policy=lambda: self.policy_provider.get_reply_policy().to_document_patch(),
        )

    def build_worker(self, *, generator: ReplyGenerator | None = None) -> TaskWorker:
        queue_settings = self.settings.queue
        agent = ReplyExecutionAgent(
            queue=self.queue,
            generator=generator or self.build_generator(),
            safety_gate=RuleBasedReplySafetyGate(
                max_length=self.settings.safety.max_length,
                similarity_threshold=self.settings.safety.similarity_threshold,
                review_similarity_margin=self.settings.safety.review_similarity_margin,
            ),
            worker_id=queue_settings.worker_id,
            review_store=self.reviews,
            recorder=self.recorder,
            lease_seconds=queue_settings.lease_seconds,
            retry_base_seconds=queue_settings.retry_base_seconds,
            retry_max_seconds=queue_settings.retry_max_seconds,
        )
        return TaskWorker(
            agent=agent,
            queue=self.queue,
            observability=self.observability,
            worker_id=queue_settings.worker_id,
            poll_interval_seconds=queue_settings.poll_interval_seconds,
            circuit_failure_threshold=self.settings.observability.circuit_failure_threshold,
        )


def build_services(settings: Settings, engine: Engine) -> RuntimeServices:
    recorder = RuntimeEventRecorder(
        SqlRuntimeEventSink(engine),
        max_events=settings.observability.recorder_max_events,
    )
    policy_store = SqlPolicyReleaseStore(engine)
    return RuntimeServices(
        settings=settings,
        engine=engine,
        recorder=recorder,
        directory=SqlForumDirectory(engine),
        intents=SqlTaskIntentRepository(engine),
        heartbeat=SqlHeartbeatSource(engine),
        queue=TaskQueueRepository(engine, recorder=recorder),
        reviews=SqlReviewQueueStore(
            engine,
            recorder=recorder,
            expiry_days=settings.review.expiry_days,
        ),
        policy_store=policy_store,
        policy_provider=CachedReplyPolicyProvider(
            store=policy_store,
            recorder=recorder,
            ttl_seconds=settings.policy.cache_ttl_seconds,
            fallback_policy=fallback_policy(settings),
        ),
        observability=RuntimeObservabilityStore(engine, recorder=recorder),
    )


def fallback_policy(settings: Settings) -> DispatcherPolicy:
    policy = settings.policy
    return DispatcherPolicy(
        reply_enabled=policy.reply_enabled,
        precheck_enabled=policy.precheck_enabled,
        per_persona_hourly_reply_limit=policy.per_persona_hourly_reply_limit,
        per_post_cooldown_seconds=policy.per_post_cooldown_seconds,
        precheck_similarity_threshold=policy.precheck_similarity_threshold,
    ).normalize()


@contextmanager
def open_runtime(settings: Settings) -> Iterator[RuntimeServices]:
    """Migrate the database to head and yield services sharing one engine."""

    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    upgrade_head(settings.db_path)
    engine = build_sqlite_engine(
        db_path=settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    try:
        yield build_services(settings, engine)
    finally:
        engine.dispose()
