"""SQL adapter over personas, boards, posts, comments and board bans."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from persona_runtime.forum.models import (
    ForumComment,
    ForumPost,
    PersonaRef,
    PersonaStatus,
    PostStatus,
)
from persona_runtime.storage.common import (
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from persona_runtime.storage.sqlmodel_models import (
    Board,
    BoardPersonaBan,
    Comment,
    Persona,
    Post,
)


class ForumDirectory(Protocol):
    """Read side of the forum used by eligibility, precheck, and generators."""

    def get_persona_status(self, persona_id: str) -> str | None: ...

    def list_active_personas(self, *, limit: int) -> list[PersonaRef]: ...

    def get_post(self, post_id: str) -> ForumPost | None: ...

    def is_board_archived(self, board_id: str) -> bool: ...

    def is_persona_banned_on_board(
        self,
        *,
        board_id: str,
        persona_id: str,
        now: datetime,
    ) -> bool: ...

    def list_post_comments(self, post_id: str, *, limit: int = 200) -> list[ForumComment]: ...

    def list_recent_persona_replies(self, persona_id: str, *, limit: int) -> list[str]: ...

    def count_persona_replies_since(self, persona_id: str, *, since: datetime) -> int: ...

    def latest_persona_reply_at_on_post(
        self,
        *,
        persona_id: str,
        post_id: str,
    ) -> datetime | None: ...


class SqlForumDirectory:
    """Forum mirror stored next to the runtime tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def get_persona_status(self, persona_id: str) -> str | None:
        with Session(self.engine) as session:
            row = session.get(Persona, persona_id)
            return row.status if row is not None else None

    def list_active_personas(self, *, limit: int) -> list[PersonaRef]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Persona)
                .where(Persona.status == PersonaStatus.ACTIVE.value)
                .order_by(col(Persona.created_at).asc(), col(Persona.persona_id).asc())
                .limit(limit),
            ).all()
        return [
            PersonaRef(persona_id=row.persona_id, status=row.status, display_name=row.display_name)
            for row in rows
        ]

    def get_post(self, post_id: str) -> ForumPost | None:
        with Session(self.engine) as session:
            row = session.get(Post, post_id)
            if row is None:
                return None
            return ForumPost(
                post_id=row.post_id,
                board_id=row.board_id,
                status=row.status,
                title=row.title,
                body=row.body,
                author_id=row.author_id,
                persona_id=row.persona_id,
                created_at=to_utc_aware_datetime(row.created_at),
            )

    def is_board_archived(self, board_id: str) -> bool:
        with Session(self.engine) as session:
            row = session.get(Board, board_id)
            return bool(row is not None and row.is_archived)

    def is_persona_banned_on_board(
        self,
        *,
        board_id: str,
        persona_id: str,
        now: datetime,
    ) -> bool:
        with Session(self.engine) as session:
            ban = session.exec(
                select(BoardPersonaBan).where(
                    BoardPersonaBan.board_id == board_id,
                    BoardPersonaBan.persona_id == persona_id,
                ),
            ).one_or_none()
        if ban is None:
            return False
        expires_at = optional_utc(ban.expires_at)
        if expires_at is None:
            return True
        return expires_at > to_utc_aware_datetime(now)

    def list_post_comments(self, post_id: str, *, limit: int = 200) -> list[ForumComment]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Comment)
                .where(Comment.post_id == post_id, col(Comment.is_deleted).is_(False))
                .order_by(col(Comment.created_at).asc(), col(Comment.comment_id).asc())
                .limit(limit),
            ).all()
        return [_to_comment(row) for row in rows]

    def get_comment(self, comment_id: str) -> ForumComment | None:
        with Session(self.engine) as session:
            row = session.get(Comment, comment_id)
            return _to_comment(row) if row is not None else None

    def list_recent_persona_replies(self, persona_id: str, *, limit: int) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Comment.body)
                .where(Comment.persona_id == persona_id, col(Comment.is_deleted).is_(False))
                .order_by(col(Comment.created_at).desc())
                .limit(limit),
            ).all()
        return [str(body) for body in rows]

    def count_persona_replies_since(self, persona_id: str, *, since: datetime) -> int:
        with Session(self.engine) as session:
            count = session.exec(
                select(func.count())
                .select_from(Comment)
                .where(
                    Comment.persona_id == persona_id,
                    col(Comment.is_deleted).is_(False),
                    col(Comment.created_at) >= to_db_datetime(since),
                ),
            ).one()
        return int(count)

    def latest_persona_reply_at_on_post(
        self,
        *,
        persona_id: str,
        post_id: str,
    ) -> datetime | None:
        with Session(self.engine) as session:
            latest = session.exec(
                select(func.max(Comment.created_at)).where(
                    Comment.persona_id == persona_id,
                    Comment.post_id == post_id,
                    col(Comment.is_deleted).is_(False),
                ),
            ).one()
        return optional_utc(latest)

    # Forum-side writes used by seeding commands and tests.

    def upsert_persona(
        self,
        *,
        persona_id: str,
        display_name: str,
        status: PersonaStatus | str = PersonaStatus.ACTIVE,
    ) -> None:
        status_value = status.value if isinstance(status, PersonaStatus) else status
        with Session(self.engine) as session:
            row = session.get(Persona, persona_id)
            if row is None:
                row = Persona(
                    persona_id=persona_id,
                    display_name=display_name,
                    status=status_value,
                    created_at=to_db_datetime(utc_now()),
                )
            else:
                row.display_name = display_name
                row.status = status_value
            session.add(row)
            session.commit()

    def create_board(self, *, board_id: str, name: str, is_archived: bool = False) -> None:
        with Session(self.engine) as session:
            session.add(
                Board(
                    board_id=board_id,
                    name=name,
                    is_archived=is_archived,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()

    def create_post(  # noqa: PLR0913
        self,
        *,
        board_id: str,
        title: str,
        body: str,
        post_id: str | None = None,
        author_id: str | None = None,
        persona_id: str | None = None,
        status: PostStatus | str = PostStatus.PUBLISHED,
        created_at: datetime | None = None,
    ) -> str:
        resolved_id = post_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Post(
                    post_id=resolved_id,
                    board_id=board_id,
                    author_id=author_id,
                    persona_id=persona_id,
                    title=title,
                    body=body,
                    status=status.value if isinstance(status, PostStatus) else status,
                    created_at=to_db_datetime(created_at or utc_now()),
                ),
            )
            session.commit()
        return resolved_id

    def create_comment(  # noqa: PLR0913
        self,
        *,
        post_id: str,
        body: str,
        comment_id: str | None = None,
        parent_id: str | None = None,
        author_id: str | None = None,
        persona_id: str | None = None,
        created_at: datetime | None = None,
    ) -> str:
        resolved_id = comment_id or str(uuid4())
        with Session(self.engine) as session:
            session.add(
                Comment(
                    comment_id=resolved_id,
                    post_id=post_id,
                    parent_id=parent_id,
                    author_id=author_id,
                    persona_id=persona_id,
                    body=body,
                    created_at=to_db_datetime(created_at or utc_now()),
                ),
            )
            session.commit()
        return resolved_id

    def ban_persona_on_board(
        self,
        *,
        board_id: str,
        persona_id: str,
        expires_at: datetime | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.add(
                BoardPersonaBan(
                    board_id=board_id,
                    persona_id=persona_id,
                    expires_at=to_db_datetime(expires_at) if expires_at is not None else None,
                    created_at=to_db_datetime(utc_now()),
                ),
            )
            session.commit()


def _to_comment(row: Comment) -> ForumComment:
    return ForumComment(
        comment_id=row.comment_id,
        post_id=row.post_id,
        parent_id=row.parent_id,
        author_id=row.author_id,
        persona_id=row.persona_id,
        body=row.body,
        created_at=to_utc_aware_datetime(row.created_at),
    )
