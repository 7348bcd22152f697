from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
import os
from pathlib import PurePosixPath
import time
from typing import Any

from db.models import Generation
from storage.assets import decode_data_url, extension_for

logger = logging.getLogger(__name__)


class GenerationFailed(RuntimeError):
    pass


@dataclass(frozen=True)
class RunnerConfig:
    poll_interval_s: float = 5.0
    video_poll_interval_s: float = 5.0
    video_max_poll_attempts: int = 120
    image_width: int = 1024
    image_height: int = 1024
    video_width: int = 1280
    video_height: int = 720
    video_duration_s: float = 6.0


def load_runner_config() -> RunnerConfig:
    return RunnerConfig(
        poll_interval_s=float(os.getenv("JOB_RUNNER_POLL_INTERVAL_S", "5")),
        video_poll_interval_s=float(os.getenv("JOB_RUNNER_VIDEO_POLL_INTERVAL_S", "5")),
        video_max_poll_attempts=int(os.getenv("JOB_RUNNER_VIDEO_MAX_POLLS", "120")),
    )


@dataclass
class _Outputs:
    urls: list[str]
    metadata: dict[str, Any]


def _planner_prompt(metadata: dict | None) -> str | None:
    if not isinstance(metadata, dict):
        return None
    planner_meta = metadata.get("planner")
    if isinstance(planner_meta, dict):
        value = planner_meta.get("enhanced_prompt")
        if isinstance(value, str) and value.strip():
            return value
    return None


class GenerationJobRunner:
    """Polls for queued generations and drives each one to complete or failed.

    Runs inside one asyncio loop. All generations found in a cycle are processed
    concurrently; a failure in one never affects the others. Store and storage
    calls are blocking and go through ``asyncio.to_thread``.
    """

    def __init__(
        self,
        store: Any = None,
        provider: Any = None,
        storage: Any = None,
        policy: Any = None,
        config: RunnerConfig | None = None,
    ) -> None:
        self._store = store
        self._provider = provider
        self._storage = storage
        self._policy = policy
        self.config = config or load_runner_config()
        self._running = False
        self._loop_token = 0
        self._processed = 0
        self._succeeded = 0
        self._failed = 0
        self._total_processing_s = 0.0

    @property
    def store(self):
        if self._store is None:
            from db.store import get_store

            self._store = get_store()
        return self._store

    @property
    def provider(self):
        if self._provider is None:
            from providers.vertex import get_provider

            self._provider = get_provider()
        return self._provider

    @property
    def storage(self):
        if self._storage is None:
            from storage.assets import get_asset_storage

            self._storage = get_asset_storage()
        return self._storage

    @property
    def policy(self):
        if self._policy is None:
            from safety.policy import get_policy_enforcer

            self._policy = get_policy_enforcer()
        return self._policy

    async def start(self) -> None:
        if self._running:
            logger.info("Generation job runner already running")
            return
        self._running = True
        self._loop_token += 1
        token = self._loop_token
        logger.info(
            "Generation job runner started",
            extra={"poll_interval_s": self.config.poll_interval_s},
        )
        try:
            # a stop followed by a new start retires this loop
            while self._running and self._loop_token == token:
                try:
                    await self.process_queued()
                except Exception:
                    logger.exception("Generation job runner cycle failed")
                    await asyncio.sleep(self.config.poll_interval_s * 2)
                    continue
                await asyncio.sleep(self.config.poll_interval_s)
        finally:
            if self._loop_token == token:
                self._running = False
            logger.info("Generation job runner stopped")

    def stop(self) -> None:
        self._running = False

    def is_healthy(self) -> bool:
        return self._running

    def get_stats(self) -> dict[str, float | int]:
        average = self._total_processing_s / self._processed if self._processed else 0.0
        return {
            "processed": self._processed,
            "succeeded": self._succeeded,
            "failed": self._failed,
            "average_processing_time_s": round(average, 3),
        }

    async def process_queued(self) -> int:
        queued = await asyncio.to_thread(self.store.list_generations_by_status, "queued")
        if not queued:
            return 0
        logger.info("Processing queued generations", extra={"count": len(queued)})
        results = await asyncio.gather(
            *(self.process_generation(generation) for generation in queued),
            return_exceptions=True,
        )
        for generation, result in zip(queued, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Generation processing raised",
                    extra={"generation_id": str(generation.id), "error": repr(result)},
                )
        return len(queued)

    async def process_specific_generation(self, generation_id) -> bool:
        generation = await asyncio.to_thread(self.store.get_generation, generation_id)
        if generation is None:
            raise LookupError(f"Generation not found: {generation_id}")
        return await self.process_generation(generation)

    async def process_generation(self, generation: Generation) -> bool:
        claimed = await asyncio.to_thread(
            self.store.transition_generation,
            generation.id,
            from_status="queued",
            to_status="running",
        )
        if not claimed:
            return False

        log_extra = {
            "generation_id": str(generation.id),
            "type": generation.type,
            "model": generation.model,
        }
        logger.info("Generation started", extra=log_extra)
        started = time.perf_counter()
        try:
            outputs = await self._generate(generation)
        except Exception as exc:
            error = str(exc) or "Unknown error during generation"
            if not isinstance(exc, GenerationFailed):
                logger.exception("Unexpected generation error", extra=log_extra)
            await asyncio.to_thread(
                self.store.transition_generation,
                generation.id,
                from_status="running",
                to_status="failed",
                error=error,
            )
            self._record(started, success=False)
            logger.warning("Generation failed", extra={**log_extra, "error": error})
            return False

        elapsed = time.perf_counter() - started
        metadata = dict(generation.metadata_json or {})
        metadata.update(outputs.metadata)
        metadata["processing_time_s"] = round(elapsed, 3)
        try:
            await asyncio.to_thread(
                self.store.transition_generation,
                generation.id,
                from_status="running",
                to_status="complete",
                asset_urls=outputs.urls,
                metadata=metadata,
                error=None,
            )
        except Exception:
            logger.exception("Failed to complete generation", extra=log_extra)
            await asyncio.to_thread(
                self.store.transition_generation,
                generation.id,
                from_status="running",
                to_status="failed",
                error="Failed to complete generation",
            )
            self._record(started, success=False)
            return False
        self._record(started, success=True)
        logger.info("Generation complete", extra={**log_extra, "asset_count": len(outputs.urls)})
        return True

    def _record(self, started: float, *, success: bool) -> None:
        self._processed += 1
        self._total_processing_s += time.perf_counter() - started
        if success:
            self._succeeded += 1
        else:
            self._failed += 1

    async def _generate(self, generation: Generation) -> _Outputs:
        if not generation.prompt_id:
            raise GenerationFailed("Generation missing promptId")
        prompt = await asyncio.to_thread(self.store.get_idea_prompt, generation.prompt_id)
        if prompt is None:
            raise GenerationFailed("Original prompt not found")

        prompt_text = _planner_prompt(generation.metadata_json) or prompt.text
        if generation.type == "image":
            outputs = await self._generate_image(generation, prompt_text)
        elif generation.type == "video":
            outputs = await self._generate_video(generation, prompt_text)
        else:
            raise GenerationFailed("Unsupported generation type")

        await self._check_output_policy(generation, outputs.metadata)
        return outputs

    async def _generate_image(self, generation: Generation, prompt_text: str) -> _Outputs:
        response = await self.provider.generate_image(prompt_text, generation.model)
        if not response.success:
            raise GenerationFailed(response.error or "Image generation failed")
        urls = await self._persist_outputs(
            generation,
            response.urls or [],
            default_format="png",
            width=self.config.image_width,
            height=self.config.image_height,
            duration_sec=None,
        )
        if not urls:
            raise GenerationFailed("No image URLs returned from generation")
        return _Outputs(urls=urls, metadata=dict(response.metadata or {}))

    async def _generate_video(self, generation: Generation, prompt_text: str) -> _Outputs:
        response = await self.provider.generate_video(prompt_text, generation.model)
        if not response.success:
            raise GenerationFailed(response.error or "Video generation failed")
        if not response.job_id:
            raise GenerationFailed("No job ID returned from video generation")

        for _attempt in range(self.config.video_max_poll_attempts):
            await asyncio.sleep(self.config.video_poll_interval_s)
            status = await self.provider.poll_job_status(response.job_id)
            if status.status == "failed":
                raise GenerationFailed(status.error or "Video generation failed")
            if status.status != "complete":
                continue
            result_urls = status.result.urls if status.result else []
            urls = await self._persist_outputs(
                generation,
                result_urls,
                default_format="mp4",
                width=self.config.video_width,
                height=self.config.video_height,
                duration_sec=self.config.video_duration_s,
            )
            if not urls:
                raise GenerationFailed("Video generation failed")
            metadata = dict(response.metadata or {})
            if status.result:
                metadata.update(status.result.metadata or {})
            metadata["job_id"] = response.job_id
            return _Outputs(urls=urls, metadata=metadata)

        raise GenerationFailed("Video generation timed out")

    async def _persist_outputs(
        self,
        generation: Generation,
        urls: list[str],
        *,
        default_format: str,
        width: int,
        height: int,
        duration_sec: float | None,
    ) -> list[str]:
        persisted: list[str] = []
        for index, url in enumerate(urls):
            if not url:
                continue
            fmt = default_format
            storage_path = url
            if url.startswith("data:"):
                decoded = decode_data_url(url)
                if decoded is None:
                    logger.warning(
                        "Dropping undecodable data URL",
                        extra={"generation_id": str(generation.id), "index": index},
                    )
                    continue
                data, mime_type = decoded
                stored = await asyncio.to_thread(
                    self.storage.save,
                    data,
                    generation_id=str(generation.id),
                    content_type=mime_type,
                    index=index,
                )
                url = stored.url
                storage_path = stored.storage_path
                fmt = extension_for(mime_type)
            elif url.startswith("gs://"):
                stored = await asyncio.to_thread(
                    self.storage.import_gcs_object,
                    url,
                    generation_id=str(generation.id),
                    index=index,
                )
                url = stored.url
                storage_path = stored.storage_path
                fmt = PurePosixPath(storage_path).suffix.lstrip(".").lower() or default_format

            await asyncio.to_thread(
                self.store.create_media_asset,
                generation_id=generation.id,
                url=url,
                storage_path=storage_path,
                fmt=fmt,
                width=width,
                height=height,
                duration_sec=duration_sec,
            )
            persisted.append(url)
        return persisted

    async def _check_output_policy(self, generation: Generation, metadata: dict[str, Any]) -> None:
        flags = self.policy.check_generation(str(generation.id), metadata)
        for flag in flags:
            await asyncio.to_thread(
                self.store.create_policy_flag,
                target_type=flag.target_type,
                target_id=flag.target_id,
                reason=flag.reason,
                severity=flag.severity,
                resolution=flag.resolution,
            )
        if flags:
            logger.warning(
                "Generated output flagged for review",
                extra={"generation_id": str(generation.id), "reason": flags[0].reason},
            )


_RUNNER: GenerationJobRunner | None = None


def get_runner() -> GenerationJobRunner:
    global _RUNNER
    if _RUNNER is None:
        _RUNNER = GenerationJobRunner()
    return _RUNNER
