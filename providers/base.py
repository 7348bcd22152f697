from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass
class GenerationResponse:
    success: bool
    urls: list[str] | None = None
    job_id: str | None = None
    error: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobResult:
    urls: list[str]
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class JobStatus:
    # pending | running | complete | failed
    status: str
    result: JobResult | None = None
    error: str | None = None


class MediaProvider(Protocol):
    async def generate_image(self, prompt: str, model: str) -> GenerationResponse: ...

    async def generate_video(self, prompt: str, model: str) -> GenerationResponse: ...

    async def poll_job_status(self, job_id: str) -> JobStatus: ...
