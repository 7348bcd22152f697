from __future__ import annotations

import asyncio
import base64
from types import SimpleNamespace
from uuid import uuid4

import pytest

from db.store import check_transition
from pipeline.runner import GenerationJobRunner, RunnerConfig
from providers.base import GenerationResponse, JobResult, JobStatus
from safety.policy import PolicyEnforcer, SafetyConfig
from storage.assets import StoredAsset


class _FakeStore:
    def __init__(self) -> None:
        self.prompts: dict = {}
        self.generations: dict = {}
        self.assets: list[dict] = []
        self.flags: list[dict] = []
        self.history: dict = {}

    def add_prompt(self, text: str):
        prompt = SimpleNamespace(id=uuid4(), text=text, author_id="u1", language="en", tags=[])
        self.prompts[prompt.id] = prompt
        return prompt

    def add_generation(self, *, gen_type: str = "image", prompt_id=None, metadata=None, status="queued"):
        generation = SimpleNamespace(
            id=uuid4(),
            prompt_id=prompt_id,
            type=gen_type,
            status=status,
            model="test-model",
            metadata_json=metadata,
            asset_urls=None,
            error=None,
        )
        self.generations[generation.id] = generation
        self.history[generation.id] = [status]
        return generation

    def list_generations_by_status(self, status, limit=None):
        return [g for g in self.generations.values() if g.status == status]

    def get_generation(self, generation_id):
        return self.generations.get(generation_id)

    def get_idea_prompt(self, prompt_id):
        return self.prompts.get(prompt_id)

    def transition_generation(self, generation_id, *, from_status, to_status, **fields):
        check_transition(from_status, to_status)
        generation = self.generations[generation_id]
        if generation.status != from_status:
            return False
        generation.status = to_status
        if "metadata" in fields:
            generation.metadata_json = fields.pop("metadata")
        for key, value in fields.items():
            setattr(generation, key, value)
        self.history[generation_id].append(to_status)
        return True

    def create_media_asset(self, **kwargs):
        self.assets.append(kwargs)
        return SimpleNamespace(id=uuid4(), **kwargs)

    def create_policy_flag(self, **kwargs):
        self.flags.append(kwargs)
        return SimpleNamespace(id=uuid4(), **kwargs)


class _FakeProvider:
    def __init__(self, *, image=None, video=None, statuses=None) -> None:
        self.image = image
        self.video = video
        self.statuses = list(statuses or [])
        self.prompts: list[str] = []
        self.polls = 0

    async def generate_image(self, prompt, model):
        self.prompts.append(prompt)
        return self.image

    async def generate_video(self, prompt, model):
        self.prompts.append(prompt)
        return self.video

    async def poll_job_status(self, job_id):
        self.polls += 1
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]


class _FakeStorage:
    def __init__(self) -> None:
        self.saved: list[tuple[bytes, str]] = []
        self.imported: list[str] = []

    def save(self, data, *, generation_id, content_type, index=0):
        self.saved.append((data, content_type))
        key = f"generations/{generation_id}/{index}.png"
        return StoredAsset(url=f"/generated/{key}", storage_path=key, content_type=content_type, size_bytes=len(data))

    def import_gcs_object(self, uri, *, generation_id, index=0):
        self.imported.append(uri)
        key = f"generations/{generation_id}/{index}-{uri.rsplit('/', 1)[-1]}"
        return StoredAsset(url=f"/generated/{key}", storage_path=key, content_type="video/mp4", size_bytes=0)


def _runner(store, provider, storage=None, **config) -> GenerationJobRunner:
    settings = {"poll_interval_s": 0.0, "video_poll_interval_s": 0.0, "video_max_poll_attempts": 3}
    settings.update(config)
    return GenerationJobRunner(
        store=store,
        provider=provider,
        storage=storage or _FakeStorage(),
        policy=PolicyEnforcer(config=SafetyConfig()),
        config=RunnerConfig(**settings),
    )


def test_image_generation_completes_with_assets() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("what if cats could fly")
    generation = store.add_generation(
        prompt_id=prompt.id,
        metadata={"planner": {"enhanced_prompt": "cats soaring over neon rooftops"}},
    )
    provider = _FakeProvider(
        image=GenerationResponse(success=True, urls=["https://cdn.example/a.png"], metadata={"provider": "fake"})
    )

    processed = asyncio.run(_runner(store, provider).process_queued())

    assert processed == 1
    assert generation.status == "complete"
    assert generation.asset_urls == ["https://cdn.example/a.png"]
    assert generation.metadata_json["provider"] == "fake"
    assert generation.metadata_json["planner"]["enhanced_prompt"] == "cats soaring over neon rooftops"
    assert provider.prompts == ["cats soaring over neon rooftops"]
    assert store.assets[0]["fmt"] == "png"
    assert store.assets[0]["width"] == 1024
    assert store.history[generation.id] == ["queued", "running", "complete"]


def test_data_url_outputs_are_persisted_through_storage() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("a paper boat in a storm drain")
    generation = store.add_generation(prompt_id=prompt.id)
    payload = base64.b64encode(b"\x89PNG fake").decode("ascii")
    provider = _FakeProvider(
        image=GenerationResponse(success=True, urls=[f"data:image/png;base64,{payload}"])
    )
    storage = _FakeStorage()

    asyncio.run(_runner(store, provider, storage).process_generation(generation))

    assert storage.saved == [(b"\x89PNG fake", "image/png")]
    assert generation.asset_urls[0].startswith("/generated/generations/")
    assert store.assets[0]["storage_path"].startswith("generations/")
    assert provider.prompts == ["a paper boat in a storm drain"]


def test_provider_failure_marks_generation_failed() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("what if trees were made of glass")
    generation = store.add_generation(prompt_id=prompt.id)
    provider = _FakeProvider(image=GenerationResponse(success=False, error="quota exceeded"))
    runner = _runner(store, provider)

    asyncio.run(runner.process_queued())

    assert generation.status == "failed"
    assert generation.error == "quota exceeded"
    assert runner.get_stats()["failed"] == 1
    assert runner.get_stats()["succeeded"] == 0


def test_empty_image_urls_fail() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("what if trees were made of glass")
    generation = store.add_generation(prompt_id=prompt.id)
    provider = _FakeProvider(image=GenerationResponse(success=True, urls=[]))

    asyncio.run(_runner(store, provider).process_queued())

    assert generation.status == "failed"
    assert generation.error == "No image URLs returned from generation"


def test_missing_prompt_fails() -> None:
    store = _FakeStore()
    no_prompt_id = store.add_generation(prompt_id=None)
    dangling = store.add_generation(prompt_id=uuid4())
    provider = _FakeProvider(image=GenerationResponse(success=True, urls=["https://x/a.png"]))

    asyncio.run(_runner(store, provider).process_queued())

    assert no_prompt_id.status == "failed"
    assert no_prompt_id.error == "Generation missing promptId"
    assert dangling.status == "failed"
    assert dangling.error == "Original prompt not found"


def test_video_generation_polls_until_complete() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("what if the ocean turned into clouds")
    generation = store.add_generation(gen_type="video", prompt_id=prompt.id)
    provider = _FakeProvider(
        video=GenerationResponse(success=True, job_id="ops/123"),
        statuses=[
            JobStatus(status="running"),
            JobStatus(status="complete", result=JobResult(urls=["gs://bucket/v.mp4"], metadata={"operation": "ops/123"})),
        ],
    )

    storage = _FakeStorage()
    asyncio.run(_runner(store, provider, storage).process_queued())

    assert generation.status == "complete"
    assert storage.imported == ["gs://bucket/v.mp4"]
    assert generation.asset_urls == [f"/generated/generations/{generation.id}/0-v.mp4"]
    assert store.assets[0]["storage_path"] == f"generations/{generation.id}/0-v.mp4"
    assert generation.metadata_json["job_id"] == "ops/123"
    assert provider.polls == 2
    assert store.assets[0]["fmt"] == "mp4"
    assert store.assets[0]["duration_sec"] == 6.0
    assert (store.assets[0]["width"], store.assets[0]["height"]) == (1280, 720)


def test_video_failures() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("what if the ocean turned into clouds")
    no_job = store.add_generation(gen_type="video", prompt_id=prompt.id)
    asyncio.run(_runner(store, _FakeProvider(video=GenerationResponse(success=True))).process_queued())
    assert no_job.error == "No job ID returned from video generation"

    failed = store.add_generation(gen_type="video", prompt_id=prompt.id)
    provider = _FakeProvider(
        video=GenerationResponse(success=True, job_id="ops/1"),
        statuses=[JobStatus(status="failed")],
    )
    asyncio.run(_runner(store, provider).process_generation(failed))
    assert failed.error == "Video generation failed"

    timed_out = store.add_generation(gen_type="video", prompt_id=prompt.id)
    provider = _FakeProvider(
        video=GenerationResponse(success=True, job_id="ops/2"),
        statuses=[JobStatus(status="pending")],
    )
    asyncio.run(_runner(store, provider, video_max_poll_attempts=4).process_generation(timed_out))
    assert timed_out.status == "failed"
    assert timed_out.error == "Video generation timed out"
    assert provider.polls == 4


def test_flagged_output_creates_review_flag_and_completes() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("a quiet library at midnight")
    generation = store.add_generation(prompt_id=prompt.id)
    provider = _FakeProvider(
        image=GenerationResponse(
            success=True,
            urls=["https://x/a.png"],
            metadata={"flagged": True, "flag_reason": "filtered"},
        )
    )

    asyncio.run(_runner(store, provider).process_queued())

    assert generation.status == "complete"
    assert store.flags == [
        {
            "target_type": "generation",
            "target_id": str(generation.id),
            "reason": "filtered",
            "severity": "medium",
            "resolution": "needs_review",
        }
    ]


def test_one_failure_does_not_affect_other_generations() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("a lighthouse made of candy")
    good = store.add_generation(prompt_id=prompt.id)
    bad = store.add_generation(gen_type="audio", prompt_id=prompt.id)
    provider = _FakeProvider(image=GenerationResponse(success=True, urls=["https://x/a.png"]))
    runner = _runner(store, provider)

    asyncio.run(runner.process_queued())

    assert good.status == "complete"
    assert bad.status == "failed"
    assert bad.error == "Unsupported generation type"
    assert runner.get_stats()["processed"] == 2


def test_statuses_never_move_backward_across_cycles() -> None:
    store = _FakeStore()
    prompt = store.add_prompt("a lighthouse made of candy")
    done = store.add_generation(prompt_id=prompt.id)
    provider = _FakeProvider(image=GenerationResponse(success=True, urls=["https://x/a.png"]))
    runner = _runner(store, provider)

    asyncio.run(runner.process_queued())
    asyncio.run(runner.process_queued())
    asyncio.run(runner.process_generation(done))

    assert store.history[done.id] == ["queued", "running", "complete"]
    assert runner.get_stats()["processed"] == 1


def test_process_specific_generation_raises_for_unknown_id() -> None:
    runner = _runner(_FakeStore(), _FakeProvider())
    with pytest.raises(LookupError):
        asyncio.run(runner.process_specific_generation(uuid4()))


def test_start_and_stop() -> None:
    store = _FakeStore()
    runner = _runner(store, _FakeProvider())

    async def _scenario():
        task = asyncio.create_task(runner.start())
        await asyncio.sleep(0.01)
        assert runner.is_healthy() is True
        await runner.start()
        runner.stop()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(_scenario())
    assert runner.is_healthy() is False


class _CompleteWriteFailsStore(_FakeStore):
    def transition_generation(self, generation_id, *, from_status, to_status, **fields):
        if to_status == "complete":
            raise RuntimeError("database unavailable")
        return super().transition_generation(
            generation_id, from_status=from_status, to_status=to_status, **fields
        )


def test_failed_completion_write_marks_generation_failed() -> None:
    store = _CompleteWriteFailsStore()
    prompt = store.add_prompt("what if clocks ran backward")
    generation = store.add_generation(prompt_id=prompt.id)
    provider = _FakeProvider(image=GenerationResponse(success=True, urls=["https://x/a.png"]))
    runner = _runner(store, provider)

    assert asyncio.run(runner.process_generation(generation)) is False

    assert store.history[generation.id] == ["queued", "running", "failed"]
    assert generation.error == "Failed to complete generation"
    assert runner.get_stats()["failed"] == 1
    assert runner.get_stats()["succeeded"] == 0


def test_restart_within_one_poll_interval_keeps_a_single_loop() -> None:
    runner = _runner(_FakeStore(), _FakeProvider())

    async def _scenario():
        first = asyncio.create_task(runner.start())
        await asyncio.sleep(0.01)
        runner.stop()
        second = asyncio.create_task(runner.start())
        await asyncio.sleep(0.05)
        assert first.done()
        assert not second.done()
        assert runner.is_healthy() is True
        runner.stop()
        await asyncio.wait_for(second, timeout=1)

    asyncio.run(_scenario())
    assert runner.is_healthy() is False
