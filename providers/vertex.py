from __future__ import annotations

import base64
from dataclasses import dataclass
import logging
import os
from typing import Any

from google import genai
from google.genai import types

from .base import GenerationResponse, JobResult, JobStatus

logger = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "imagen-3.0-generate-002"
DEFAULT_VIDEO_MODEL = "veo-3.0-fast-generate-001"


@dataclass(frozen=True)
class VertexConfig:
    project: str | None
    location: str
    image_model: str
    video_model: str
    video_output_gcs_uri: str | None
    video_duration_s: int
    video_aspect_ratio: str
    image_aspect_ratio: str


def load_vertex_config() -> VertexConfig:
    return VertexConfig(
        project=os.getenv("GCP_PROJECT_ID") or None,
        location=os.getenv("GCP_LOCATION", "us-central1"),
        image_model=os.getenv("VERTEX_IMAGE_MODEL", DEFAULT_IMAGE_MODEL),
        video_model=os.getenv("VERTEX_VIDEO_MODEL", DEFAULT_VIDEO_MODEL),
        video_output_gcs_uri=os.getenv("VERTEX_VIDEO_OUTPUT_GCS_URI") or None,
        video_duration_s=int(os.getenv("VERTEX_VIDEO_DURATION_S", "6")),
        video_aspect_ratio=os.getenv("VERTEX_VIDEO_ASPECT_RATIO", "16:9"),
        image_aspect_ratio=os.getenv("VERTEX_IMAGE_ASPECT_RATIO", "1:1"),
    )


def _data_url(data: bytes, mime_type: str) -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


class VertexAdapter:
    """Imagen / Veo on Vertex AI through the google-genai async client.

    The three public coroutines never raise; failures come back as
    ``success=False`` or a ``failed`` job status with a message.
    """

    def __init__(self, config: VertexConfig | None = None, client: Any = None) -> None:
        self.config = config or load_vertex_config()
        self._client = client

    @property
    def client(self):
        if self._client is None:
            self._client = genai.Client(
                vertexai=True,
                project=self.config.project,
                location=self.config.location,
            )
        return self._client

    async def generate_image(self, prompt: str, model: str) -> GenerationResponse:
        model = model or self.config.image_model
        try:
            response = await self.client.aio.models.generate_images(
                model=model,
                prompt=prompt,
                config=types.GenerateImagesConfig(
                    number_of_images=1,
                    aspect_ratio=self.config.image_aspect_ratio,
                    output_mime_type="image/png",
                    include_rai_reason=True,
                ),
            )
        except Exception as exc:
            logger.error("Imagen request failed", extra={"model": model, "error": str(exc)})
            return GenerationResponse(success=False, error=str(exc) or "Image generation failed")

        urls: list[str] = []
        filtered_reasons: list[str] = []
        for generated in response.generated_images or []:
            if generated.rai_filtered_reason:
                filtered_reasons.append(str(generated.rai_filtered_reason))
            image = generated.image
            if image is None:
                continue
            if image.gcs_uri:
                urls.append(image.gcs_uri)
            elif image.image_bytes:
                urls.append(_data_url(image.image_bytes, image.mime_type or "image/png"))

        metadata: dict[str, Any] = {"provider": "vertex", "model": model}
        if filtered_reasons:
            metadata["flagged"] = True
            metadata["flag_reason"] = filtered_reasons[0]
        if not urls:
            error = filtered_reasons[0] if filtered_reasons else "No images returned"
            return GenerationResponse(success=False, error=error, metadata=metadata)
        return GenerationResponse(success=True, urls=urls, metadata=metadata)

    async def generate_video(self, prompt: str, model: str) -> GenerationResponse:
        model = model or self.config.video_model
        config_kwargs: dict[str, Any] = {
            "number_of_videos": 1,
            "duration_seconds": self.config.video_duration_s,
            "aspect_ratio": self.config.video_aspect_ratio,
        }
        if self.config.video_output_gcs_uri:
            config_kwargs["output_gcs_uri"] = self.config.video_output_gcs_uri
        try:
            operation = await self.client.aio.models.generate_videos(
                model=model,
                prompt=prompt,
                config=types.GenerateVideosConfig(**config_kwargs),
            )
        except Exception as exc:
            logger.error("Veo request failed", extra={"model": model, "error": str(exc)})
            return GenerationResponse(success=False, error=str(exc) or "Video generation failed")

        return GenerationResponse(
            success=True,
            job_id=operation.name,
            metadata={"provider": "vertex", "model": model},
        )

    async def poll_job_status(self, job_id: str) -> JobStatus:
        try:
            operation = await self.client.aio.operations.get(
                operation=types.GenerateVideosOperation(name=job_id)
            )
        except Exception as exc:
            logger.error("Veo operation poll failed", extra={"job_id": job_id, "error": str(exc)})
            return JobStatus(status="failed", error=str(exc) or "Failed to poll video job")

        if not operation.done:
            return JobStatus(status="running")
        if operation.error:
            message = operation.error.get("message") if isinstance(operation.error, dict) else None
            return JobStatus(status="failed", error=message or str(operation.error))

        result = operation.response or operation.result
        urls: list[str] = []
        for generated in (result.generated_videos if result else None) or []:
            video = generated.video
            if video is None:
                continue
            if video.uri:
                urls.append(video.uri)
            elif video.video_bytes:
                urls.append(_data_url(video.video_bytes, video.mime_type or "video/mp4"))

        metadata: dict[str, Any] = {"provider": "vertex", "operation": job_id}
        filtered = getattr(result, "rai_media_filtered_count", None) if result else None
        if filtered:
            metadata["flagged"] = True
            reasons = getattr(result, "rai_media_filtered_reasons", None) or []
            metadata["flag_reason"] = reasons[0] if reasons else "Content filtered by responsible AI"
        if not urls:
            return JobStatus(status="failed", error=metadata.get("flag_reason") or "No videos returned")
        return JobStatus(status="complete", result=JobResult(urls=urls, metadata=metadata))


_PROVIDER: VertexAdapter | None = None


def get_provider() -> VertexAdapter:
    global _PROVIDER
    if _PROVIDER is None:
        _PROVIDER = VertexAdapter()
    return _PROVIDER
