"""create generation schema

Revision ID: 3a7e1c9d5b20
Revises: 
Create Date: 2026-10-19 09:00:00

Touched tables:
- user_account, idea_prompt, generation, policy_flag, media_asset, community_post
- required extension: pgcrypto (gen_random_uuid)
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3a7e1c9d5b20"
down_revision = None
branch_labels = None
depends_on = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        postgresql.UUID(as_uuid=True),
        server_default=sa.text("gen_random_uuid()"),
        nullable=False,
    )


def _timestamp(name: str) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False)


def upgrade() -> None:
    op.execute("create extension if not exists pgcrypto")

    op.create_table(
        "user_account",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("display_name", sa.Text(), nullable=True),
        sa.Column("photo_url", sa.Text(), nullable=True),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "idea_prompt",
        _uuid_pk(),
        sa.Column("author_id", sa.Text(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False),
        sa.Column("language", sa.Text(), server_default="unknown", nullable=False),
        sa.Column("tags", postgresql.ARRAY(sa.Text()), server_default="{}", nullable=False),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("char_length(text) between 1 and 2000", name="ck_idea_prompt_text_length"),
        sa.CheckConstraint(
            "language in ('en', 'zh-CN', 'ja', 'unknown')",
            name="ck_idea_prompt_language",
        ),
    )
    op.create_index("ix_idea_prompt_author_id", "idea_prompt", ["author_id"])

    op.create_table(
        "generation",
        _uuid_pk(),
        sa.Column("prompt_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("type", sa.Text(), nullable=False),
        sa.Column("status", sa.Text(), server_default="queued", nullable=False),
        sa.Column("model", sa.Text(), nullable=False),
        sa.Column("refinement_of", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("alignment_feedback", postgresql.JSONB(), nullable=True),
        sa.Column("asset_urls", postgresql.JSONB(), nullable=True),
        sa.Column("metadata", postgresql.JSONB(), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        _timestamp("created_at"),
        _timestamp("updated_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["prompt_id"], ["idea_prompt.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["refinement_of"], ["generation.id"], ondelete="SET NULL"),
        sa.CheckConstraint("type in ('image', 'video')", name="ck_generation_type"),
        sa.CheckConstraint(
            "status in ('queued', 'running', 'complete', 'failed')",
            name="ck_generation_status",
        ),
    )
    op.create_index("ix_generation_status_created_at", "generation", ["status", "created_at"])
    op.create_index("ix_generation_prompt_id", "generation", ["prompt_id"])

    op.create_table(
        "policy_flag",
        _uuid_pk(),
        sa.Column("target_type", sa.Text(), nullable=False),
        sa.Column("target_id", sa.Text(), nullable=False),
        sa.Column("reason", sa.Text(), nullable=False),
        sa.Column("severity", sa.Text(), nullable=False),
        sa.Column("resolution", sa.Text(), nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("target_type in ('prompt', 'generation')", name="ck_policy_flag_target_type"),
        sa.CheckConstraint("severity in ('low', 'medium', 'high')", name="ck_policy_flag_severity"),
        sa.CheckConstraint(
            "resolution in ('blocked', 'allowed', 'needs_review')",
            name="ck_policy_flag_resolution",
        ),
    )
    op.create_index("ix_policy_flag_target_id", "policy_flag", ["target_id"])

    op.create_table(
        "media_asset",
        _uuid_pk(),
        sa.Column("generation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("url", sa.Text(), nullable=False),
        sa.Column("storage_path", sa.Text(), nullable=False),
        sa.Column("format", sa.Text(), nullable=False),
        sa.Column("width", sa.Integer(), nullable=True),
        sa.Column("height", sa.Integer(), nullable=True),
        sa.Column("duration_sec", sa.Float(), nullable=True),
        sa.Column("alt_text", sa.Text(), nullable=True),
        sa.Column("captions", sa.Text(), nullable=True),
        sa.Column("visibility", sa.Text(), server_default="private", nullable=False),
        _timestamp("created_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["generation_id"], ["generation.id"], ondelete="CASCADE"),
        sa.CheckConstraint(
            "visibility in ('private', 'unlisted', 'public')",
            name="ck_media_asset_visibility",
        ),
    )
    op.create_index("ix_media_asset_generation_id", "media_asset", ["generation_id"])

    op.create_table(
        "community_post",
        _uuid_pk(),
        sa.Column("generation_id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("author_id", sa.Text(), nullable=False),
        sa.Column("prompt_summary", sa.Text(), nullable=False),
        sa.Column("thumbnail_url", sa.Text(), nullable=False),
        sa.Column("visibility", sa.Text(), server_default="public", nullable=False),
        _timestamp("published_at"),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["generation_id"], ["generation.id"], ondelete="CASCADE"),
        sa.UniqueConstraint("generation_id", name="uq_community_post_generation"),
        sa.CheckConstraint("visibility in ('public')", name="ck_community_post_visibility"),
    )
    op.create_index(
        "ix_community_post_published_at",
        "community_post",
        [sa.text("published_at desc")],
    )
    op.create_index("ix_community_post_author_id", "community_post", ["author_id"])


def downgrade() -> None:
    op.drop_index("ix_community_post_author_id", table_name="community_post")
    op.drop_index("ix_community_post_published_at", table_name="community_post")
    op.drop_table("community_post")
    op.drop_index("ix_media_asset_generation_id", table_name="media_asset")
    op.drop_table("media_asset")
    op.drop_index("ix_policy_flag_target_id", table_name="policy_flag")
    op.drop_table("policy_flag")
    op.drop_index("ix_generation_prompt_id", table_name="generation")
    op.drop_index("ix_generation_status_created_at", table_name="generation")
    op.drop_table("generation")
    op.drop_index("ix_idea_prompt_author_id", table_name="idea_prompt")
    op.drop_table("idea_prompt")
    op.drop_table("user_account")
