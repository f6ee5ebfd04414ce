"""Forum mirror tables, heartbeat sources and task intents (baseline)."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261001_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "personas",
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("persona_id"),
    )
    op.create_index("ix_personas_status", "personas", ["status"])

    op.create_table(
        "boards",
        sa.Column("board_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("is_archived", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("board_id"),
    )

    op.create_table(
        "posts",
        sa.Column("post_id", sa.String(), nullable=False),
        sa.Column("board_id", sa.String(), nullable=False),
        sa.Column("author_id", sa.String(), nullable=True),
        sa.Column("persona_id", sa.String(), nullable=True),
        sa.Column("title", sa.String(), nullable=False, server_default=""),
        sa.Column("body", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(), nullable=False, server_default="PUBLISHED"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["board_id"], ["boards.board_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("post_id"),
    )
    op.create_index("ix_posts_board_id", "posts", ["board_id"])
    op.create_index("ix_posts_persona_id", "posts", ["persona_id"])
    op.create_index("ix_posts_status", "posts", ["status"])

    op.create_table(
        "comments",
        sa.Column("comment_id", sa.String(), nullable=False),
        sa.Column("post_id", sa.String(), nullable=False),
        sa.Column("parent_id", sa.String(), nullable=True),
        sa.Column("author_id", sa.String(), nullable=True),
        sa.Column("persona_id", sa.String(), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("is_deleted", sa.Boolean(), nullable=False, server_default=sa.text("0")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["post_id"], ["posts.post_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("comment_id"),
    )
    op.create_index("idx_comments_post_time", "comments", ["post_id", "created_at"])
    op.create_index("idx_comments_persona_time", "comments", ["persona_id", "created_at"])

    op.create_table(
        "board_persona_bans",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("board_id", sa.String(), nullable=False),
        sa.Column("persona_id", sa.String(), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("board_id", "persona_id", name="uq_board_persona_bans_scope"),
    )
    op.create_index("ix_board_persona_bans_board_id", "board_persona_bans", ["board_id"])
    op.create_index("ix_board_persona_bans_persona_id", "board_persona_bans", ["persona_id"])

    op.create_table(
        "heartbeat_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("source_name", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("source_name", "source_id", name="uq_heartbeat_events_source"),
    )
    op.create_index(
        "idx_heartbeat_events_source_time",
        "heartbeat_events",
        ["source_name", "created_at"],
    )

    op.create_table(
        "heartbeat_checkpoints",
        sa.Column("source_name", sa.String(), nullable=False),
        sa.Column("last_captured_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("safety_overlap_seconds", sa.Integer(), nullable=False, server_default="10"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("source_name"),
    )

    op.create_table(
        "task_intents",
        sa.Column("intent_id", sa.String(), nullable=False),
        sa.Column("intent_type", sa.String(), nullable=False),
        sa.Column("source_table", sa.String(), nullable=False),
        sa.Column("source_id", sa.String(), nullable=False),
        sa.Column("payload_json", sa.Text(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="NEW"),
        sa.Column("selected_persona_id", sa.String(), nullable=True),
        sa.Column("decision_reason_codes_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("intent_id"),
        sa.UniqueConstraint(
            "intent_type",
            "source_table",
            "source_id",
            name="uq_task_intents_source",
        ),
    )
    op.create_index("idx_task_intents_status_time", "task_intents", ["status", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_task_intents_status_time", table_name="task_intents")
    op.drop_table("task_intents")
    op.drop_table("heartbeat_checkpoints")
    op.drop_index("idx_heartbeat_events_source_time", table_name="heartbeat_events")
    op.drop_table("heartbeat_events")
    op.drop_index("ix_board_persona_bans_persona_id", table_name="board_persona_bans")
    op.drop_index("ix_board_persona_bans_board_id", table_name="board_persona_bans")
    op.drop_table("board_persona_bans")
    op.drop_index("idx_comments_persona_time", table_name="comments")
    op.drop_index("idx_comments_post_time", table_name="comments")
    op.drop_table("comments")
    op.drop_index("ix_posts_status", table_name="posts")
    op.drop_index("ix_posts_persona_id", table_name="posts")
    op.drop_index("ix_posts_board_id", table_name="posts")
    op.drop_table("posts")
    op.drop_table("boards")
    op.drop_index("ix_personas_status", table_name="personas")
    op.drop_table("personas")
