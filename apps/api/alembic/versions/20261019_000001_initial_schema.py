"""create initial schema

Revision ID: 20261019_000001
Revises:
Create Date: 2026-10-19 00:00:01.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _index(table: str, *columns: str, unique: bool = False) -> None:
    for column in columns:
        op.create_index(op.f(f"ix_{table}_{column}"), table, [column], unique=unique)


def _drop_indexes(table: str, *columns: str) -> None:
    for column in columns:
        op.drop_index(op.f(f"ix_{table}_{column}"), table_name=table)


def upgrade() -> None:
    op.create_table(
        "drafts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("drafts", "user_id")

    op.create_table(
        "bsky_accounts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("did", sa.String(), nullable=False),
        sa.Column("handle", sa.String(), nullable=False),
        sa.Column("service", sa.String(), nullable=False),
        sa.Column("access_jwt_encrypted", sa.Text(), nullable=True),
        sa.Column("refresh_jwt_encrypted", sa.Text(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "did", name="uq_bsky_accounts_user_did"),
    )
    _index("bsky_accounts", "user_id", "did")

    op.create_table(
        "scheduled_posts",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("account_did", sa.String(), nullable=True),
        sa.Column("draft_id", sa.String(), nullable=False),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("last_error", sa.String(), nullable=True),
        sa.Column("posted_uri", sa.String(), nullable=True),
        sa.Column("posted_cid", sa.String(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["draft_id"], ["drafts.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("scheduled_posts", "user_id", "account_did", "draft_id", "run_at", "status", "locked_at")

    op.create_table(
        "ai_jobs",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("model", sa.String(), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("negative_prompt", sa.Text(), nullable=True),
        sa.Column("params", sa.JSON(), nullable=True),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error", sa.String(), nullable=True),
        sa.Column("provider_request_id", sa.String(), nullable=True),
        sa.Column("locked_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("locked_by", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("ai_jobs", "user_id", "status", "locked_at", "created_at")

    op.create_table(
        "ai_assets",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("storage_bucket", sa.String(), nullable=False),
        sa.Column("storage_path", sa.String(), nullable=False),
        sa.Column("mime_type", sa.String(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["job_id"], ["ai_jobs.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("ai_assets", "job_id", unique=True)
    _index("ai_assets", "user_id")

    op.create_table(
        "indexed_posts",
        sa.Column("uri", sa.String(), nullable=False),
        sa.Column("cid", sa.String(), nullable=True),
        sa.Column("author_did", sa.String(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lang", sa.String(), nullable=True),
        sa.Column("raw", sa.JSON(), nullable=True),
        sa.Column("indexed_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("uri"),
    )
    _index("indexed_posts", "author_did", "created_at", "lang")

    op.create_table(
        "feeds",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("slug", sa.String(), nullable=False),
        sa.Column("display_name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("is_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("source_strategy", sa.String(), nullable=False, server_default="curated"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("feeds", "slug", unique=True)
    _index("feeds", "user_id", "is_enabled")

    op.create_table(
        "feed_rules",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("include_keywords", sa.JSON(), nullable=False),
        sa.Column("exclude_keywords", sa.JSON(), nullable=False),
        sa.Column("include_mode", sa.String(), nullable=False, server_default="any"),
        sa.Column("case_insensitive", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("lang", sa.String(), nullable=True),
        sa.Column("enrollment_tag", sa.String(), nullable=True),
        sa.Column("enrollment_mode", sa.String(), nullable=False, server_default="public"),
        sa.Column("submission_tag", sa.String(), nullable=True),
        sa.Column("submission_enabled", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["feed_id"], ["feeds.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("feed_rules", "feed_id", unique=True)

    op.create_table(
        "feed_sources",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("source_type", sa.String(), nullable=False, server_default="account_list"),
        sa.Column("account_did", sa.String(), nullable=True),
        sa.Column("added_via", sa.String(), nullable=False, server_default="curated"),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["feed_id"], ["feeds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("feed_id", "account_did", name="uq_feed_sources_feed_account"),
    )
    _index("feed_sources", "feed_id", "account_did")

    op.create_table(
        "feed_join_requests",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("feed_id", sa.String(), nullable=False),
        sa.Column("requester_did", sa.String(), nullable=False),
        sa.Column("status", sa.String(), nullable=False, server_default="pending"),
        sa.Column("source_uri", sa.String(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.ForeignKeyConstraint(["feed_id"], ["feeds.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("feed_id", "requester_did", name="uq_feed_join_requests_feed_requester"),
    )
    _index("feed_join_requests", "feed_id", "requester_did", "status", "created_at")

    op.create_table(
        "worker_heartbeats",
        sa.Column("worker_id", sa.String(), nullable=False),
        sa.Column("last_seen_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.PrimaryKeyConstraint("worker_id"),
    )

    op.create_table(
        "job_events",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("user_id", sa.String(), nullable=False),
        sa.Column("job_kind", sa.String(), nullable=True),
        sa.Column("subject_id", sa.String(), nullable=True),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("detail", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("CURRENT_TIMESTAMP"), nullable=True),
        sa.PrimaryKeyConstraint("id"),
    )
    _index("job_events", "user_id", "job_kind", "subject_id", "event_type", "created_at")


def downgrade() -> None:
    _drop_indexes("job_events", "user_id", "job_kind", "subject_id", "event_type", "created_at")
    op.drop_table("job_events")
    op.drop_table("worker_heartbeats")
    _drop_indexes("feed_join_requests", "feed_id", "requester_did", "status", "created_at")
    op.drop_table("feed_join_requests")
    _drop_indexes("feed_sources", "feed_id", "account_did")
    op.drop_table("feed_sources")
    _drop_indexes("feed_rules", "feed_id")
    op.drop_table("feed_rules")
    _drop_indexes("feeds", "slug", "user_id", "is_enabled")
    op.drop_table("feeds")
    _drop_indexes("indexed_posts", "author_did", "created_at", "lang")
    op.drop_table("indexed_posts")
    _drop_indexes("ai_assets", "job_id", "user_id")
    op.drop_table("ai_assets")
    _drop_indexes("ai_jobs", "user_id", "status", "locked_at", "created_at")
    op.drop_table("ai_jobs")
    _drop_indexes("scheduled_posts", "user_id", "account_did", "draft_id", "run_at", "status", "locked_at")
    op.drop_table("scheduled_posts")
    _drop_indexes("bsky_accounts", "user_id", "did")
    op.drop_table("bsky_accounts")
    _drop_indexes("drafts", "user_id")
    op.drop_table("drafts")
