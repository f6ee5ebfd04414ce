from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest
from sqlalchemy.engine import Engine

from persona_runtime.forum.directory import SqlForumDirectory
from persona_runtime.forum.models import PersonaStatus, PostStatus
from persona_runtime.observability.events import InMemoryRuntimeEventSink, RuntimeEventRecorder
from persona_runtime.policy.control_plane import (
    CachedReplyPolicyProvider,
    diff_policy_documents,
    resolve_reply_policy,
    validate_policy_document,
)
from persona_runtime.policy.eligibility import ReplyEligibilityChecker
from persona_runtime.policy.models import (
    DEFAULT_DISPATCHER_POLICY,
    DispatcherPolicy,
    EligibilityReasonCode,
    PolicyDiffEntry,
    PolicyReasonCode,
    PolicyRelease,
    ReplyPolicyScope,
)
from persona_runtime.policy.store import PolicyDocumentInvalidError, SqlPolicyReleaseStore

pytestmark = [
    allure.epic("Persona Runtime"),
    allure.feature("Policy Control Plane"),
]

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)

LAYERED = {
    "global": {"perPersonaHourlyReplyLimit": 10},
    "capabilities": {"reply": {"perPersonaHourlyReplyLimit": 6, "perPostCooldownSeconds": 60}},
    "personas": {
        "persona-a": {"perPostCooldownSeconds": 30},
        "persona-c": {"perPersonaHourlyReplyLimit": -3},
    },
    "boards": {"board-1": {"perPersonaHourlyReplyLimit": 2.5, "precheckSimilarityThreshold": 1.7}},
}


class _FakeStore:
    def __init__(self) -> None:
        self.release: PolicyRelease | None = None
        self.error: Exception | None = None
        self.calls = 0

    def fetch_latest_active(self) -> PolicyRelease | None:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.release


class _Clock:
    def __init__(self) -> None:
        self.now = NOW

    def __call__(self) -> datetime:
        return self.now


def _release(version: int, raw: dict) -> PolicyRelease:
    return PolicyRelease(
        version=version,
        is_active=True,
        created_at=NOW,
        document=validate_policy_document(raw).document,
    )


def test_validation_collects_every_issue() -> None:
    result = validate_policy_document(
        {
            "global": {"replyEnabled": "yes", "perPostCooldownSeconds": float("inf")},
            "capabilities": {"vote": {}, "reply": {"perPostCooldownSeconds": 10}},
            "personas": [],
            "boards": {"board-1": 5},
        },
    )

    assert result.ok is False
    assert [issue.path for issue in result.issues] == [
        "global.replyEnabled",
        "global.perPostCooldownSeconds",
        "personas",
        "capabilities.vote",
        "boards.board-1",
    ]
    assert result.document.capabilities["reply"].per_post_cooldown_seconds == 10
    assert validate_policy_document("nope").issues[0].path == "root"
    assert validate_policy_document({}).ok is True


def test_resolution_order_and_normalization() -> None:
    document = validate_policy_document(LAYERED).document

    scoped = resolve_reply_policy(
        document,
        ReplyPolicyScope(persona_id="persona-a", board_id="board-1"),
        DEFAULT_DISPATCHER_POLICY,
    )
    capability_only = resolve_reply_policy(
        document,
        ReplyPolicyScope(persona_id="persona-b"),
        DEFAULT_DISPATCHER_POLICY,
    )
    clamped = resolve_reply_policy(
        document,
        ReplyPolicyScope(persona_id="persona-c"),
        DEFAULT_DISPATCHER_POLICY,
    )

    assert scoped == DispatcherPolicy(
        per_persona_hourly_reply_limit=2,
        per_post_cooldown_seconds=30,
        precheck_similarity_threshold=1.0,
    )
    assert capability_only.per_persona_hourly_reply_limit == 6
    assert capability_only.per_post_cooldown_seconds == 60
    assert clamped.per_persona_hourly_reply_limit == 0
    assert resolve_reply_policy(None, None, DEFAULT_DISPATCHER_POLICY) is DEFAULT_DISPATCHER_POLICY


def test_diff_policy_documents() -> None:
    previous = validate_policy_document(
        {"global": {"replyEnabled": True}, "personas": {"a": {"perPersonaHourlyReplyLimit": 3}}},
    ).document
    following = validate_policy_document(
        {"global": {"replyEnabled": False}, "boards": {"b": {"precheckEnabled": True}}},
    ).document

    assert diff_policy_documents(previous, following) == [
        PolicyDiffEntry(path="boards.b.precheckEnabled", previous=None, next=True),
        PolicyDiffEntry(path="global.replyEnabled", previous=True, next=False),
        PolicyDiffEntry(path="personas.a.perPersonaHourlyReplyLimit", previous=3, next=None),
    ]
    assert diff_policy_documents(previous, previous) == []
    assert diff_policy_documents(None, None) == []


def test_provider_caches_and_falls_back_to_last_known_good() -> None:
    store = _FakeStore()
    store.release = _release(1, {"global": {"replyEnabled": False}})
    clock = _Clock()
    sink = InMemoryRuntimeEventSink()
    provider = CachedReplyPolicyProvider(
        store=store,
        recorder=RuntimeEventRecorder(sink),
        ttl_seconds=30,
        clock=clock,
    )

    assert provider.get_reply_policy().reply_enabled is False
    assert provider.get_reply_policy().reply_enabled is False
    assert store.calls == 1

    clock.now = NOW + timedelta(seconds=31)
    store.error = OSError("database is locked")

    assert provider.get_reply_policy().reply_enabled is False
    assert sink.reason_codes() == [
        PolicyReasonCode.CACHE_REFRESH.value,
        PolicyReasonCode.CACHE_HIT.value,
        PolicyReasonCode.LOAD_FAILED.value,
        PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD.value,
    ]
    status = provider.get_status()
    assert status.cached_version == 1
    assert status.last_known_good_version == 1
    assert status.last_load_error == "database is locked"
    assert status.last_fallback_reason_code == PolicyReasonCode.FALLBACK_LAST_KNOWN_GOOD
    assert status.last_fallback_at == clock.now


def test_provider_without_release_uses_default_policy() -> None:
    store = _FakeStore()
    clock = _Clock()
    sink = InMemoryRuntimeEventSink()
    provider = CachedReplyPolicyProvider(
        store=store,
        recorder=RuntimeEventRecorder(sink),
        ttl_seconds=0,
        clock=clock,
    )

    assert provider.get_reply_policy() == DEFAULT_DISPATCHER_POLICY
    assert provider.ttl_seconds == 1.0
    assert sink.reason_codes() == [
        PolicyReasonCode.NO_ACTIVE_RELEASE.value,
        PolicyReasonCode.FALLBACK_DEFAULT.value,
    ]

    store.release = _release(4, LAYERED)
    provider.invalidate()
    scoped = provider.get_reply_policy(ReplyPolicyScope(persona_id="persona-a"))

    assert scoped.per_post_cooldown_seconds == 30
    assert provider.get_status().cached_version == 4


def test_release_store_publish_and_rollback(engine: Engine) -> None:
    store = SqlPolicyReleaseStore(engine)

    first = store.publish_release({"global": {"replyEnabled": True}}, created_by="ops")
    second = store.publish_release(LAYERED, note="tighten limits")

    assert (first.version, second.version) == (1, 2)
    assert store.fetch_latest_active().version == 2  # type: ignore[union-attr]
    assert store.get_release(1).is_active is False  # type: ignore[union-attr]
    assert second.document.boards["board-1"].per_persona_hourly_reply_limit == 2.5

    rolled_back = store.rollback_to(1)

    assert rolled_back.is_active is True
    assert rolled_back.created_by == "ops"
    assert store.fetch_latest_active().version == 1  # type: ignore[union-attr]
    assert [(item.version, item.is_active) for item in store.list_releases()] == [
        (2, False),
        (1, True),
    ]

    with pytest.raises(LookupError):
        store.rollback_to(99)
    with pytest.raises(PolicyDocumentInvalidError) as error:
        store.publish_release({"global": {"replyEnabled": "sometimes"}})
    assert error.value.issues == ["global.replyEnabled: invalid value type for replyEnabled"]
    assert len(store.list_releases()) == 2


def test_eligibility_reasons(directory: SqlForumDirectory, thread) -> None:
    checker = ReplyEligibilityChecker(directory)
    directory.upsert_persona(
        persona_id="persona-z",
        display_name="Zed",
        status=PersonaStatus.SUSPENDED,
    )
    deleted = directory.create_post(
        board_id=thread.board_id,
        title="Gone",
        body="",
        status=PostStatus.DELETED,
    )

    def check(persona_id: str, post_id: str | None) -> EligibilityReasonCode | None:
        return checker.check(
            persona_id=persona_id,
            post_id=post_id,
            board_id=None,
            now=NOW,
        ).reason_code

    assert check(thread.persona_id, thread.post_id) is None
    assert check("persona-z", thread.post_id) == EligibilityReasonCode.PERSONA_NOT_ACTIVE
    assert check("nobody", thread.post_id) == EligibilityReasonCode.PERSONA_NOT_ACTIVE
    assert check(thread.persona_id, deleted) == EligibilityReasonCode.TARGET_POST_NOT_INTERACTABLE
    assert check(thread.persona_id, "missing") == (
        EligibilityReasonCode.TARGET_POST_NOT_INTERACTABLE
    )


def test_eligibility_lookup_failure_blocks() -> None:
    class _Broken:
        def get_persona_status(self, persona_id: str) -> str:
            raise ConnectionError(persona_id)

    result = ReplyEligibilityChecker(_Broken()).check(  # type: ignore[arg-type]
        persona_id="persona-a",
        post_id="post-1",
        board_id=None,
        now=NOW,
    )

    assert result.allowed is False
    assert result.reason_code == EligibilityReasonCode.ELIGIBILITY_CHECK_FAILED
