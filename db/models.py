from __future__ import annotations

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID as PGUUID
from sqlalchemy.orm import Mapped, mapped_column, relationship
from sqlalchemy.sql import text

from .base import Base


GENERATION_TYPES = ("image", "video")
GENERATION_STATUSES = ("queued", "running", "complete", "failed")
TERMINAL_STATUSES = frozenset({"complete", "failed"})
PROMPT_LANGUAGES = ("en", "zh-CN", "ja", "unknown")

IMAGE_FORMATS = frozenset({"png", "jpg", "jpeg", "webp", "gif"})
VIDEO_FORMATS = frozenset({"mp4", "webm", "mov", "avi"})


def _utcnow() -> datetime:
    return datetime.now(UTC)


class UserAccount(Base):
    __tablename__ = "user_account"

    # external auth uid, not generated here
    id: Mapped[str] = mapped_column(Text, primary_key=True)
    display_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    photo_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class IdeaPrompt(Base):
    __tablename__ = "idea_prompt"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    author_id: Mapped[str] = mapped_column(Text)
    text: Mapped[str] = mapped_column(Text)
    language: Mapped[str] = mapped_column(Text, default="unknown")
    tags: Mapped[list[str]] = mapped_column(ARRAY(Text), default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    generations: Mapped[list["Generation"]] = relationship(back_populates="prompt")

    __table_args__ = (
        CheckConstraint("char_length(text) between 1 and 2000", name="ck_idea_prompt_text_length"),
        CheckConstraint(
            "language in ('en', 'zh-CN', 'ja', 'unknown')",
            name="ck_idea_prompt_language",
        ),
    )


class Generation(Base):
    __tablename__ = "generation"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    prompt_id: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("idea_prompt.id", ondelete="SET NULL"),
        nullable=True,
    )
    type: Mapped[str] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, default="queued")
    model: Mapped[str] = mapped_column(Text)
    refinement_of: Mapped[UUID | None] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("generation.id", ondelete="SET NULL"),
        nullable=True,
    )
    alignment_feedback: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    asset_urls: Mapped[list[str] | None] = mapped_column(JSONB, nullable=True)
    metadata_json: Mapped[dict | None] = mapped_column("metadata", JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow
    )

    prompt: Mapped["IdeaPrompt | None"] = relationship(back_populates="generations")
    assets: Mapped[list["MediaAsset"]] = relationship(back_populates="generation")

    __table_args__ = (
        CheckConstraint("type in ('image', 'video')", name="ck_generation_type"),
        CheckConstraint(
            "status in ('queued', 'running', 'complete', 'failed')",
            name="ck_generation_status",
        ),
    )


class PolicyFlag(Base):
    __tablename__ = "policy_flag"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    target_type: Mapped[str] = mapped_column(Text)
    target_id: Mapped[str] = mapped_column(Text)
    reason: Mapped[str] = mapped_column(Text)
    severity: Mapped[str] = mapped_column(Text)
    resolution: Mapped[str] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        CheckConstraint("target_type in ('prompt', 'generation')", name="ck_policy_flag_target_type"),
        CheckConstraint("severity in ('low', 'medium', 'high')", name="ck_policy_flag_severity"),
        CheckConstraint(
            "resolution in ('blocked', 'allowed', 'needs_review')",
            name="ck_policy_flag_resolution",
        ),
    )


class MediaAsset(Base):
    __tablename__ = "media_asset"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    generation_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("generation.id", ondelete="CASCADE"),
    )
    url: Mapped[str] = mapped_column(Text)
    storage_path: Mapped[str] = mapped_column(Text)
    format: Mapped[str] = mapped_column(Text)
    width: Mapped[int | None] = mapped_column(Integer, nullable=True)
    height: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration_sec: Mapped[float | None] = mapped_column(Float, nullable=True)
    alt_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    captions: Mapped[str | None] = mapped_column(Text, nullable=True)
    visibility: Mapped[str] = mapped_column(Text, default="private")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    generation: Mapped["Generation"] = relationship(back_populates="assets")

    __table_args__ = (
        CheckConstraint(
            "visibility in ('private', 'unlisted', 'public')",
            name="ck_media_asset_visibility",
        ),
    )


class CommunityPost(Base):
    __tablename__ = "community_post"

    id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        primary_key=True,
        default=uuid4,
        server_default=text("gen_random_uuid()"),
    )
    generation_id: Mapped[UUID] = mapped_column(
        PGUUID(as_uuid=True),
        ForeignKey("generation.id", ondelete="CASCADE"),
    )
    author_id: Mapped[str] = mapped_column(Text)
    prompt_summary: Mapped[str] = mapped_column(Text)
    thumbnail_url: Mapped[str] = mapped_column(Text)
    visibility: Mapped[str] = mapped_column(Text, default="public")
    published_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    __table_args__ = (
        UniqueConstraint("generation_id", name="uq_community_post_generation"),
        CheckConstraint("visibility in ('public')", name="ck_community_post_visibility"),
    )


def can_refine_generation(generation: Generation) -> bool:
    return generation.status == "complete"


def can_publish_generation(status: str) -> bool:
    return status == "complete"


def expected_duration_s(generation_type: str) -> int:
    if generation_type == "image":
        return 10
    if generation_type == "video":
        return 60
    return 30


def is_image_format(fmt: str) -> bool:
    return fmt.lower() in IMAGE_FORMATS


def is_video_format(fmt: str) -> bool:
    return fmt.lower() in VIDEO_FORMATS


def thumbnail_path(storage_path: str) -> str:
    head, _, filename = storage_path.rpartition("/")
    stem = filename.split(".")[0] or "thumbnail"
    name = f"{stem}_thumb.jpg"
    return f"{head}/{name}" if head else name


def generate_prompt_summary(original_prompt: str, max_length: int = 100) -> str:
    if len(original_prompt) <= max_length:
        return original_prompt

    truncated = original_prompt[: max_length - 3]
    last_space = truncated.rfind(" ")
    if last_space > max_length * 0.7:
        return f"{truncated[:last_space]}..."
    return f"{truncated}..."
