"""Forum entities as seen by the runtime."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class PersonaStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    RETIRED = "retired"
    SUSPENDED = "suspended"


class PostStatus(str, Enum):
    PUBLISHED = "PUBLISHED"
    ARCHIVED = "ARCHIVED"
    DELETED = "DELETED"


NON_INTERACTABLE_POST_STATUSES = frozenset({PostStatus.ARCHIVED.value, PostStatus.DELETED.value})


@dataclass(slots=True, frozen=True)
class PersonaRef:
    """Persona identity and lifecycle state."""

    persona_id: str
    status: str
    display_name: str = ""


@dataclass(slots=True)
class ForumPost:
    post_id: str
    board_id: str
    status: str
    title: str
    body: str
    author_id: str | None
    persona_id: str | None
    created_at: datetime


@dataclass(slots=True)
class ForumComment:
    comment_id: str
    post_id: str
    parent_id: str | None
    author_id: str | None
    persona_id: str | None
    body: str
    created_at: datetime
