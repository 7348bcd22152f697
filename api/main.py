from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import json
import logging
from os import getenv
import time
from typing import Literal, Optional
from uuid import UUID, uuid4

from fastapi import FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, RedirectResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from db.models import (
    CommunityPost,
    Generation,
    MediaAsset,
    can_publish_generation,
    can_refine_generation,
    generate_prompt_summary,
)
from db.store import FeedEntry, get_store
from ideas.planner import get_planner
from ideas.prompts import validate_prompt_text
from pipeline.runner import get_runner
from providers.vertex import load_vertex_config
from safety.policy import PolicyCheckResult, format_policy_message, get_policy_enforcer, highest_severity
from storage.assets import GCSAssetStorage, get_asset_storage

logger = logging.getLogger(__name__)

_RUNNER_TASKS: set[asyncio.Task] = set()

_MEDIA_TYPES = {
    "png": "image/png",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
    "gif": "image/gif",
    "mp4": "video/mp4",
    "webm": "video/webm",
    "mov": "video/quicktime",
}


def _spawn_runner() -> asyncio.Task:
    runner = get_runner()
    task = asyncio.create_task(runner.start())
    _RUNNER_TASKS.add(task)
    task.add_done_callback(_RUNNER_TASKS.discard)
    return task


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if getenv("JOB_RUNNER_AUTOSTART", "0") == "1":
        logger.info("Autostarting generation job runner")
        _spawn_runner()
    try:
        yield
    finally:
        if _RUNNER_TASKS:
            get_runner().stop()
            for task in list(_RUNNER_TASKS):
                task.cancel()


app = FastAPI(title="What If Studio API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        origin.strip()
        for origin in getenv("CORS_ORIGINS", "http://localhost:3000,http://127.0.0.1:3000").split(",")
        if origin.strip()
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_logging(request: Request, call_next):
    request_id = request.headers.get("x-request-id") or uuid4().hex
    started = time.perf_counter()
    logger.info(
        "Request started",
        extra={"request_id": request_id, "method": request.method, "path": request.url.path},
    )
    response = await call_next(request)
    logger.info(
        "Request finished",
        extra={
            "request_id": request_id,
            "status_code": response.status_code,
            "duration_ms": round((time.perf_counter() - started) * 1000, 1),
        },
    )
    response.headers["X-Request-ID"] = request_id
    return response


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        {
            "field": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": error.get("msg", ""),
        }
        for error in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": "validation_failed", "errors": errors})


@app.exception_handler(Exception)
async def unhandled_exception_handler(_request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled server exception", exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error."})


class GenerationCreateRequest(BaseModel):
    type: Literal["image", "video"]
    prompt: str = Field(min_length=1, max_length=2000)
    guidance: Optional[str] = None
    language: Literal["en", "zh-CN", "ja", "unknown"] = "unknown"
    refinement_of: Optional[UUID] = None


class RefineRequest(BaseModel):
    guidance: str = Field(min_length=1)


class FeedbackRequest(BaseModel):
    generation_id: UUID
    matches_intent: bool
    note: Optional[str] = None


class PublishRequest(BaseModel):
    generation_id: UUID
    visibility: Literal["public", "unlisted"]
    alt_text: Optional[str] = None
    captions: Optional[str] = None


def _author_id(x_user_id) -> str:
    if isinstance(x_user_id, str) and x_user_id.strip():
        return x_user_id.strip()
    return "anonymous"


def _default_model(generation_type: str) -> str:
    config = load_vertex_config()
    return config.video_model if generation_type == "video" else config.image_model


def _asset_payload(asset: MediaAsset) -> dict:
    return {
        "id": asset.id,
        "generation_id": asset.generation_id,
        "url": asset.url,
        "storage_path": asset.storage_path,
        "format": asset.format,
        "width": asset.width,
        "height": asset.height,
        "duration_sec": asset.duration_sec,
        "alt_text": asset.alt_text,
        "captions": asset.captions,
        "visibility": asset.visibility,
        "created_at": asset.created_at,
    }


def _generation_payload(generation: Generation, asset: MediaAsset | None = None) -> dict:
    payload = {
        "id": generation.id,
        "prompt_id": generation.prompt_id,
        "type": generation.type,
        "status": generation.status,
        "model": generation.model,
        "refinement_of": generation.refinement_of,
        "alignment_feedback": generation.alignment_feedback,
        "asset_urls": generation.asset_urls,
        "metadata": generation.metadata_json,
        "created_at": generation.created_at,
        "updated_at": generation.updated_at,
    }
    if generation.status == "failed":
        payload["error"] = generation.error
    if generation.status == "complete" and asset is not None:
        payload["asset"] = _asset_payload(asset)
    return payload


def _post_payload(post: CommunityPost) -> dict:
    return {
        "id": post.id,
        "generation_id": post.generation_id,
        "author_id": post.author_id,
        "prompt_summary": post.prompt_summary,
        "thumbnail_url": post.thumbnail_url,
        "visibility": post.visibility,
        "published_at": post.published_at,
    }


def _feed_item(entry: FeedEntry) -> dict:
    item = _post_payload(entry.post)
    generation_type = entry.generation.type if entry.generation is not None else "image"
    item.update(
        {
            "author_display_name": (entry.author.display_name if entry.author else None) or "Anonymous",
            "author_photo_url": entry.author.photo_url if entry.author else None,
            "generation_type": generation_type,
            "asset_format": "mp4" if generation_type == "video" else "png",
        }
    )
    return item


def _raise_policy_violation(result: PolicyCheckResult, message: str) -> None:
    raise HTTPException(
        status_code=400,
        detail={
            "error": "content_policy_violation",
            "message": message,
            "violations": [
                {
                    "category": violation.category,
                    "reason": violation.reason,
                    "severity": violation.severity,
                    "suggestion": violation.suggestion,
                }
                for violation in result.violations
            ],
            "recommendations": result.recommendations,
        },
    )


def _persist_flags(store, result: PolicyCheckResult, generation_id: UUID) -> None:
    if result.flags:
        logger.info(
            format_policy_message(result.flags),
            extra={"generation_id": str(generation_id), "severity": highest_severity(result.flags)},
        )
    for draft in result.flags:
        flag = draft.retarget("generation", str(generation_id))
        store.create_policy_flag(
            target_type=flag.target_type,
            target_id=flag.target_id,
            reason=flag.reason,
            severity=flag.severity,
            resolution=flag.resolution,
        )


@app.get("/health")
def health() -> dict:
    return {"ok": True}


@app.post("/api/generations", status_code=202)
def create_generation(
    request: GenerationCreateRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    author_id = _author_id(x_user_id)
    store = get_store()

    if request.refinement_of is not None:
        source = store.get_generation(request.refinement_of)
        if source is None:
            raise HTTPException(status_code=404, detail="generation_not_found")
        if not can_refine_generation(source):
            raise HTTPException(status_code=400, detail="refinement_source_not_complete")

    plan = get_planner().plan_generation(request.prompt, request.type)
    if not plan.success:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_prompt",
                "message": "Prompt validation failed",
                "details": plan.errors or [],
                "suggestions": plan.suggestions,
            },
        )

    policy_result = get_policy_enforcer().check_prompt(request.prompt, author_id)
    if not policy_result.allowed:
        logger.warning(
            "Content policy violation",
            extra={
                "prompt": request.prompt[:100],
                "violations": [v.reason for v in policy_result.violations],
            },
        )
        _raise_policy_violation(policy_result, "Content not allowed by safety policies")

    language = plan.detected_language
    if language == "unknown" and request.language != "unknown":
        language = request.language

    prompt = store.create_idea_prompt(
        author_id=author_id,
        text=request.prompt,
        language=language,
        tags=[],
    )
    generation = store.create_generation(
        prompt_id=prompt.id,
        generation_type=request.type,
        model=_default_model(request.type),
        refinement_of=request.refinement_of,
        metadata={
            "planner": {
                "enhanced_prompt": plan.enhanced_prompt,
                "confidence": plan.confidence,
                "suggestions": plan.suggestions,
                "guidance": request.guidance,
            }
        },
    )
    _persist_flags(store, policy_result, generation.id)

    logger.info(
        "Generation created",
        extra={
            "generation_id": str(generation.id),
            "prompt_id": str(prompt.id),
            "type": generation.type,
            "model": generation.model,
        },
    )
    return jsonable_encoder(_generation_payload(generation))


@app.get("/api/generations/{generation_id}")
def get_generation(generation_id: UUID) -> dict:
    store = get_store()
    generation = store.get_generation(generation_id)
    if generation is None:
        raise HTTPException(status_code=404, detail="generation_not_found")

    asset = None
    if generation.status == "complete":
        assets = store.list_assets_by_generation(generation.id)
        asset = assets[0] if assets else None
    return jsonable_encoder(_generation_payload(generation, asset))


@app.post("/api/generations/{generation_id}/refine", status_code=202)
def refine_generation(
    generation_id: UUID,
    request: RefineRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    store = get_store()
    original = store.get_generation(generation_id)
    if original is None:
        raise HTTPException(status_code=404, detail="generation_not_found")
    if not can_refine_generation(original):
        raise HTTPException(status_code=400, detail="generation_not_complete")
    if original.prompt_id is None:
        raise HTTPException(status_code=500, detail="generation_missing_prompt")
    original_prompt = store.get_idea_prompt(original.prompt_id)
    if original_prompt is None:
        raise HTTPException(status_code=500, detail="prompt_not_found")

    refinement = get_planner().plan_refinement(original, request.guidance, original_prompt.text)
    if refinement.success:
        length_check = validate_prompt_text(refinement.refined_prompt)
        if not length_check.valid:
            refinement.success = False
            refinement.errors = length_check.errors
    if not refinement.success:
        raise HTTPException(
            status_code=400,
            detail={
                "error": "invalid_guidance",
                "message": "Refinement guidance validation failed",
                "details": refinement.errors or [],
            },
        )

    author_id = _author_id(x_user_id)
    policy_result = get_policy_enforcer().check_prompt(refinement.refined_prompt, author_id)
    if not policy_result.allowed:
        logger.warning(
            "Content policy violation in refinement",
            extra={
                "generation_id": str(generation_id),
                "guidance": request.guidance[:100],
                "violations": [v.reason for v in policy_result.violations],
            },
        )
        _raise_policy_violation(policy_result, "Refined content not allowed by safety policies")

    refined_prompt = store.create_idea_prompt(
        author_id=original_prompt.author_id,
        text=refinement.refined_prompt,
        language=original_prompt.language,
        tags=[*(original_prompt.tags or []), "refined"],
    )
    refined = store.create_generation(
        prompt_id=refined_prompt.id,
        generation_type=original.type,
        model=original.model,
        refinement_of=original.id,
        metadata={"refinement": {"guidance": request.guidance, "improvements": refinement.improvements}},
    )
    _persist_flags(store, policy_result, refined.id)

    logger.info(
        "Generation refined",
        extra={"generation_id": str(refined.id), "refinement_of": str(original.id), "type": refined.type},
    )
    payload = _generation_payload(refined)
    payload["improvements"] = refinement.improvements
    return jsonable_encoder(payload)


@app.post("/api/feedback", status_code=204)
def submit_feedback(request: FeedbackRequest) -> Response:
    updated = get_store().record_alignment_feedback(
        request.generation_id,
        request.matches_intent,
        request.note,
    )
    if updated is None:
        raise HTTPException(status_code=404, detail="generation_not_found")
    logger.info(
        "Alignment feedback recorded",
        extra={"generation_id": str(request.generation_id), "matches_intent": request.matches_intent},
    )
    return Response(status_code=204)


@app.post("/api/publish", status_code=201)
def publish_generation(
    request: PublishRequest,
    x_user_id: str | None = Header(default=None),
) -> dict:
    store = get_store()
    generation = store.get_generation(request.generation_id)
    if generation is None:
        raise HTTPException(status_code=404, detail="generation_not_found")
    if not can_publish_generation(generation.status):
        raise HTTPException(status_code=400, detail="generation_not_complete")
    if generation.prompt_id is None:
        raise HTTPException(status_code=500, detail="generation_missing_prompt")
    prompt = store.get_idea_prompt(generation.prompt_id)
    if prompt is None:
        raise HTTPException(status_code=500, detail="prompt_not_found")
    if store.get_post_by_generation(generation.id) is not None:
        raise HTTPException(status_code=409, detail="already_published")

    assets = store.list_assets_by_generation(generation.id)
    if assets:
        thumbnail_url = assets[0].url
    else:
        thumbnail_url = (generation.asset_urls or [""])[0]

    try:
        post = store.create_community_post(
            generation_id=generation.id,
            author_id=_author_id(x_user_id),
            prompt_summary=generate_prompt_summary(prompt.text),
            thumbnail_url=thumbnail_url,
        )
    except IntegrityError:
        raise HTTPException(status_code=409, detail="already_published")

    store.update_asset_visibility(
        generation.id,
        visibility=request.visibility,
        alt_text=request.alt_text,
        captions=request.captions,
    )
    logger.info(
        "Generation published",
        extra={"generation_id": str(generation.id), "post_id": str(post.id), "visibility": request.visibility},
    )
    return jsonable_encoder(_post_payload(post))


@app.get("/api/feed")
def get_feed(
    q: str | None = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(12, ge=1, le=50),
    author_id: str | None = Query(None),
    type: Literal["image", "video"] | None = Query(None),
) -> dict:
    feed = get_store().get_feed(
        page=page,
        page_size=page_size,
        q=q,
        author_id=author_id,
        generation_type=type,
    )
    return jsonable_encoder(
        {
            "items": [_feed_item(entry) for entry in feed.items],
            "next_page": feed.next_page,
            "total_count": feed.total_count,
        }
    )


def _runner_status() -> dict:
    runner = get_runner()
    healthy = runner.is_healthy()
    return {
        "is_running": healthy,
        "stats": runner.get_stats(),
        "status": "running" if healthy else "stopped",
    }


@app.post("/api/jobs")
async def manage_jobs(request: Request) -> dict:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        body = {}
    action = body.get("action", "start") if isinstance(body, dict) else "start"

    runner = get_runner()
    if action == "start":
        if runner.is_healthy():
            return {"message": "Job runner is already running", "status": "running"}
        _spawn_runner()
        logger.info("Job runner start requested")
        return {"message": "Job runner started successfully", "status": "starting"}
    if action == "stop":
        runner.stop()
        logger.info("Job runner stop requested")
        return {"message": "Job runner stopped", "status": "stopped"}
    if action == "status":
        return _runner_status()
    raise HTTPException(status_code=400, detail="invalid_action")


@app.get("/api/jobs")
def get_jobs_status() -> dict:
    return _runner_status()


def _serve_stored_file(storage, storage_path: str, fmt: str | None):
    path = storage.resolve_local_path(storage_path)
    if path is None:
        raise HTTPException(status_code=403, detail="asset_outside_allowed_dir")
    if not path.is_file():
        raise HTTPException(status_code=404, detail="asset_missing")
    media_type = _MEDIA_TYPES.get((fmt or path.suffix.lstrip(".")).lower())
    return FileResponse(path=str(path), media_type=media_type)


@app.get("/api/assets/{asset_id}/file")
def get_asset_file(asset_id: UUID):
    asset = get_store().get_media_asset(asset_id)
    if asset is None:
        raise HTTPException(status_code=404, detail="asset_not_found")
    if asset.storage_path.startswith(("http://", "https://")):
        return RedirectResponse(asset.url)

    storage = get_asset_storage()
    if isinstance(storage, GCSAssetStorage):
        return RedirectResponse(storage.signed_url(asset.storage_path))
    return _serve_stored_file(storage, asset.storage_path, asset.format)


@app.get("/generated/{storage_path:path}")
def get_generated_file(storage_path: str):
    storage = get_asset_storage()
    if isinstance(storage, GCSAssetStorage):
        return RedirectResponse(storage.signed_url(storage_path))
    return _serve_stored_file(storage, storage_path, None)
