from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from typing import Any, Iterator
from uuid import UUID

from sqlalchemy import desc, func, select, update

from .models import (
    CommunityPost,
    Generation,
    IdeaPrompt,
    MediaAsset,
    PolicyFlag,
    TERMINAL_STATUSES,
    UserAccount,
)
from .session import SessionLocal

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[str, frozenset[str]] = {
    "queued": frozenset({"running"}),
    "running": TERMINAL_STATUSES,
}


class InvalidTransitionError(ValueError):
    def __init__(self, from_status: str, to_status: str) -> None:
        super().__init__(f"invalid_status_transition:{from_status}->{to_status}")
        self.from_status = from_status
        self.to_status = to_status


@dataclass(frozen=True)
class FeedEntry:
    post: CommunityPost
    generation: Generation | None
    author: UserAccount | None


@dataclass(frozen=True)
class FeedPage:
    items: list[FeedEntry]
    next_page: int | None
    total_count: int


def _utc_now() -> datetime:
    return datetime.now(UTC)


def check_transition(from_status: str, to_status: str) -> None:
    if to_status not in ALLOWED_TRANSITIONS.get(from_status, frozenset()):
        raise InvalidTransitionError(from_status, to_status)


class GenerationStore:
    """CRUD over prompts, generations, flags, assets and posts.

    Every call opens and closes its own session, so one store instance can be
    shared between the API threadpool and the job runner's worker threads.
    """

    def __init__(self, session_factory=None) -> None:
        self._session_factory = session_factory or SessionLocal

    @contextmanager
    def _session(self) -> Iterator[Any]:
        session = self._session_factory()
        try:
            yield session
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # prompts

    def create_idea_prompt(
        self,
        *,
        author_id: str,
        text: str,
        language: str = "unknown",
        tags: list[str] | None = None,
    ) -> IdeaPrompt:
        with self._session() as session:
            prompt = IdeaPrompt(
                author_id=author_id,
                text=text,
                language=language,
                tags=list(tags or []),
                created_at=_utc_now(),
                updated_at=_utc_now(),
            )
            session.add(prompt)
            session.commit()
            return prompt

    def get_idea_prompt(self, prompt_id: UUID) -> IdeaPrompt | None:
        with self._session() as session:
            return session.get(IdeaPrompt, prompt_id)

    # generations

    def create_generation(
        self,
        *,
        prompt_id: UUID,
        generation_type: str,
        model: str,
        refinement_of: UUID | None = None,
        metadata: dict | None = None,
    ) -> Generation:
        with self._session() as session:
            generation = Generation(
                prompt_id=prompt_id,
                type=generation_type,
                status="queued",
                model=model,
                refinement_of=refinement_of,
                alignment_feedback=None,
                metadata_json=metadata,
                created_at=_utc_now(),
                updated_at=_utc_now(),
            )
            session.add(generation)
            session.commit()
            return generation

    def get_generation(self, generation_id: UUID) -> Generation | None:
        with self._session() as session:
            return session.get(Generation, generation_id)

    def list_generations_by_status(self, status: str, limit: int | None = None) -> list[Generation]:
        with self._session() as session:
            stmt = select(Generation).where(Generation.status == status).order_by(Generation.created_at)
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(session.execute(stmt).scalars().all())

    def transition_generation(
        self,
        generation_id: UUID,
        *,
        from_status: str,
        to_status: str,
        **fields: Any,
    ) -> bool:
        """Move a generation forward, guarded on its current status.

        Returns False when the stored status no longer matches ``from_status``
        (someone else moved it first). Raises InvalidTransitionError when the
        requested edge is not part of queued -> running -> complete|failed.
        """
        check_transition(from_status, to_status)
        values: dict[str, Any] = {"status": to_status, "updated_at": _utc_now()}
        if "metadata" in fields:
            fields["metadata_json"] = fields.pop("metadata")
        values.update(fields)
        with self._session() as session:
            result = session.execute(
                update(Generation)
                .where(Generation.id == generation_id, Generation.status == from_status)
                .values(**values)
            )
            session.commit()
            moved = (result.rowcount or 0) == 1
        if not moved:
            logger.warning(
                "Refused generation status transition",
                extra={"generation_id": str(generation_id), "from": from_status, "to": to_status},
            )
        return moved

    def record_alignment_feedback(
        self,
        generation_id: UUID,
        matches_intent: bool,
        note: str | None = None,
    ) -> Generation | None:
        with self._session() as session:
            generation = session.get(Generation, generation_id)
            if generation is None:
                return None
            generation.alignment_feedback = {"matches_intent": matches_intent, "note": note}
            generation.updated_at = _utc_now()
            session.add(generation)
            session.commit()
            return generation

    # policy flags

    def create_policy_flag(
        self,
        *,
        target_type: str,
        target_id: str,
        reason: str,
        severity: str,
        resolution: str,
    ) -> PolicyFlag:
        with self._session() as session:
            flag = PolicyFlag(
                target_type=target_type,
                target_id=target_id,
                reason=reason,
                severity=severity,
                resolution=resolution,
                created_at=_utc_now(),
            )
            session.add(flag)
            session.commit()
            return flag

    def list_policy_flags(self, target_id: str) -> list[PolicyFlag]:
        with self._session() as session:
            stmt = select(PolicyFlag).where(PolicyFlag.target_id == target_id).order_by(PolicyFlag.created_at)
            return list(session.execute(stmt).scalars().all())

    # media assets

    def create_media_asset(
        self,
        *,
        generation_id: UUID,
        url: str,
        storage_path: str,
        fmt: str,
        width: int | None = None,
        height: int | None = None,
        duration_sec: float | None = None,
    ) -> MediaAsset:
        with self._session() as session:
            asset = MediaAsset(
                generation_id=generation_id,
                url=url,
                storage_path=storage_path,
                format=fmt,
                width=width,
                height=height,
                duration_sec=duration_sec,
                visibility="private",
                created_at=_utc_now(),
            )
            session.add(asset)
            session.commit()
            return asset

    def get_media_asset(self, asset_id: UUID) -> MediaAsset | None:
        with self._session() as session:
            return session.get(MediaAsset, asset_id)

    def list_assets_by_generation(self, generation_id: UUID) -> list[MediaAsset]:
        with self._session() as session:
            stmt = (
                select(MediaAsset)
                .where(MediaAsset.generation_id == generation_id)
                .order_by(MediaAsset.created_at)
            )
            return list(session.execute(stmt).scalars().all())

    def update_asset_visibility(
        self,
        generation_id: UUID,
        *,
        visibility: str,
        alt_text: str | None = None,
        captions: str | None = None,
    ) -> int:
        values: dict[str, Any] = {"visibility": visibility}
        if alt_text is not None:
            values["alt_text"] = alt_text
        if captions is not None:
            values["captions"] = captions
        with self._session() as session:
            result = session.execute(
                update(MediaAsset).where(MediaAsset.generation_id == generation_id).values(**values)
            )
            session.commit()
            return int(result.rowcount or 0)

    # community

    def get_post_by_generation(self, generation_id: UUID) -> CommunityPost | None:
        with self._session() as session:
            stmt = select(CommunityPost).where(CommunityPost.generation_id == generation_id)
            return session.execute(stmt).scalar_one_or_none()

    def create_community_post(
        self,
        *,
        generation_id: UUID,
        author_id: str,
        prompt_summary: str,
        thumbnail_url: str,
    ) -> CommunityPost:
        with self._session() as session:
            post = CommunityPost(
                generation_id=generation_id,
                author_id=author_id,
                prompt_summary=prompt_summary,
                thumbnail_url=thumbnail_url,
                visibility="public",
                published_at=_utc_now(),
            )
            session.add(post)
            session.commit()
            return post

    def get_user(self, user_id: str) -> UserAccount | None:
        with self._session() as session:
            return session.get(UserAccount, user_id)

    def get_feed(
        self,
        *,
        page: int = 1,
        page_size: int = 12,
        q: str | None = None,
        author_id: str | None = None,
        generation_type: str | None = None,
    ) -> FeedPage:
        page = max(1, page)
        page_size = max(1, min(page_size, 50))
        with self._session() as session:
            stmt = (
                select(CommunityPost, Generation, UserAccount)
                .join(Generation, Generation.id == CommunityPost.generation_id, isouter=True)
                .join(UserAccount, UserAccount.id == CommunityPost.author_id, isouter=True)
            )
            if q:
                stmt = stmt.where(CommunityPost.prompt_summary.ilike(f"%{q}%"))
            if author_id:
                stmt = stmt.where(CommunityPost.author_id == author_id)
            if generation_type:
                stmt = stmt.where(Generation.type == generation_type)

            total = session.execute(
                select(func.count()).select_from(stmt.subquery())
            ).scalar_one()
            rows = session.execute(
                stmt.order_by(desc(CommunityPost.published_at))
                .limit(page_size)
                .offset((page - 1) * page_size)
            ).all()

        items = [FeedEntry(post=post, generation=gen, author=user) for post, gen, user in rows]
        next_page = page + 1 if page * page_size < int(total) else None
        return FeedPage(items=items, next_page=next_page, total_count=int(total))


_STORE: GenerationStore | None = None


def get_store() -> GenerationStore:
    global _STORE
    if _STORE is None:
        _STORE = GenerationStore()
    return _STORE
