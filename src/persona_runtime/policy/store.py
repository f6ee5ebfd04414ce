"""Policy release persistence backed by SQLModel."""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, col, select

from persona_runtime.policy.control_plane import validate_policy_document
from persona_runtime.policy.models import PolicyRelease
from persona_runtime.storage.common import dump_json, to_db_datetime, to_utc_aware_datetime, utc_now
from persona_runtime.storage.sqlmodel_models import PolicyReleaseRow


class PolicyDocumentInvalidError(ValueError):
    """Raised when an operator publishes a document with validation issues."""

    def __init__(self, issues: list[str]) -> None:
        super().__init__("Invalid policy document: " + "; ".join(issues))
        self.issues = issues


class SqlPolicyReleaseStore:
    """Versioned policy releases; at most one is active."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def fetch_latest_active(self) -> PolicyRelease | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(PolicyReleaseRow)
                .where(col(PolicyReleaseRow.is_active).is_(True))
                .order_by(col(PolicyReleaseRow.version).desc())
                .limit(1),
            ).one_or_none()
        return _to_release(row) if row is not None else None

    def publish_release(
        self,
        raw_document: Mapping[str, Any],
        *,
        created_by: str | None = None,
        note: str | None = None,
    ) -> PolicyRelease:
        """Validate the document and activate it as version N+1."""

        validation = validate_policy_document(raw_document)
        if not validation.ok:
            raise PolicyDocumentInvalidError(
                [f"{issue.path}: {issue.message}" for issue in validation.issues],
            )

        now = utc_now()
        with Session(self.engine) as session:
            session.exec(
                sa_update(PolicyReleaseRow)
                .where(col(PolicyReleaseRow.is_active).is_(True))
                .values(is_active=False),
            )
            current_max = session.exec(select(func.max(PolicyReleaseRow.version))).one()
            row = PolicyReleaseRow(
                version=int(current_max or 0) + 1,
                policy_json=dump_json(validation.document.to_dict()),
                is_active=True,
                created_by=created_by,
                change_note=note,
                created_at=to_db_datetime(now),
            )
            session.add(row)
            try:
                session.commit()
            except IntegrityError as error:
                session.rollback()
                raise RuntimeError(
                    "Policy release version changed concurrently; please retry command.",
                ) from error
            session.refresh(row)
            return _to_release(row)

    def rollback_to(self, version: int) -> PolicyRelease:
        """Reactivate an older release."""

        with Session(self.engine) as session:
            target = session.get(PolicyReleaseRow, version)
            if target is None:
                raise LookupError(f"Policy release not found: {version}")
            session.exec(
                sa_update(PolicyReleaseRow)
                .where(
                    col(PolicyReleaseRow.is_active).is_(True),
                    col(PolicyReleaseRow.version) != version,
                )
                .values(is_active=False),
            )
            session.exec(
                sa_update(PolicyReleaseRow)
                .where(col(PolicyReleaseRow.version) == version)
                .values(is_active=True),
            )
            session.commit()
            session.refresh(target)
            return _to_release(target)

    def get_release(self, version: int) -> PolicyRelease | None:
        with Session(self.engine) as session:
            row = session.get(PolicyReleaseRow, version)
            return _to_release(row) if row is not None else None

    def list_releases(self, *, limit: int = 20) -> list[PolicyRelease]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(PolicyReleaseRow)
                .order_by(col(PolicyReleaseRow.version).desc())
                .limit(limit),
            ).all()
        return [_to_release(row) for row in rows]


def _to_release(row: PolicyReleaseRow) -> PolicyRelease:
    return PolicyRelease(
        version=row.version,
        is_active=bool(row.is_active),
        created_at=to_utc_aware_datetime(row.created_at),
        document=validate_policy_document(json.loads(row.policy_json)).document,
        created_by=row.created_by,
        note=row.change_note,
    )
