from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest

from ideas.planner import IdeaPlanner, PlannerConfig, identify_improvements
from llm import mediator as mediator_module
from llm.mediator import LLMError, LLMMediator


class _FakeMediator:
    def __init__(self, responses: dict[str, list]) -> None:
        self._responses = {key: list(values) for key, values in responses.items()}
        self.calls: list[str] = []

    def generate_json(self, *, task_type: str, **_kwargs):
        self.calls.append(task_type)
        queue = self._responses.get(task_type) or []
        value = queue.pop(0) if len(queue) > 1 else (queue[0] if queue else {})
        if isinstance(value, Exception):
            raise value
        return value, {"provider": "fake", "model": "fake-1"}


def _planner(mediator) -> IdeaPlanner:
    return IdeaPlanner(mediator=mediator, config=PlannerConfig(max_attempts=3, min_confidence=0.7))


def _llm_error(task_type: str) -> LLMError:
    return LLMError(code="network_error", message="down", provider="fake", task_type=task_type)


def test_invalid_prompt_skips_provider() -> None:
    mediator = _FakeMediator({})
    result = _planner(mediator).plan_generation("hi", "image")

    assert result.success is False
    assert result.confidence == 0
    assert result.detected_language == "unknown"
    assert "Prompt is too short. Please provide more detail." in (result.errors or [])
    assert mediator.calls == []


def test_high_confidence_stops_after_first_attempt() -> None:
    mediator = _FakeMediator(
        {
            "prompt_enhance": [{"enhanced_prompt": "A cat gliding over neon rooftops at dusk"}],
            "prompt_evaluate": [{"score": 0.9, "reason": "clear"}],
        }
    )
    result = _planner(mediator).plan_generation("what if cats could fly", "image")

    assert result.success is True
    assert result.enhanced_prompt == "A cat gliding over neon rooftops at dusk"
    assert result.confidence == 0.9
    assert result.detected_language == "en"
    assert result.suggestions == []
    assert mediator.calls == ["prompt_enhance", "prompt_evaluate"]


def test_low_confidence_retries_then_returns_suggestions() -> None:
    mediator = _FakeMediator(
        {
            "prompt_enhance": [{"enhanced_prompt": "cats flying"}],
            "prompt_evaluate": [{"score": 0.2, "reason": "vague"}],
            "prompt_suggest": [{"suggestions": ["a", "b", "c", "d", "e"]}],
            "prompt_refine": [{"refined_prompt": "cats flying over a lake"}],
        }
    )
    result = _planner(mediator).plan_generation("what if cats could fly", "video")

    assert result.success is True
    assert result.confidence == 0.2
    assert result.suggestions == ["a", "b", "c", "d"]
    assert mediator.calls.count("prompt_enhance") == 3
    assert mediator.calls.count("prompt_refine") == 2


def test_provider_outage_degrades_gracefully() -> None:
    mediator = _FakeMediator(
        {
            "prompt_enhance": [_llm_error("prompt_enhance")],
            "prompt_evaluate": [_llm_error("prompt_evaluate")],
            "prompt_suggest": [_llm_error("prompt_suggest")],
        }
    )
    prompt = "what if the moon were made of glass"
    result = _planner(mediator).plan_generation(prompt, "image")

    assert result.success is True
    assert result.enhanced_prompt == prompt
    assert result.confidence == min(0.3 + len(prompt) / 200, 1.0)
    assert result.suggestions == []


def test_unparsable_and_out_of_range_scores() -> None:
    planner = _planner(_FakeMediator({"prompt_evaluate": [{"score": "high"}]}))
    assert planner.evaluate_prompt("x", "image") == 0.5

    planner = _planner(_FakeMediator({"prompt_evaluate": [{"score": 7}]}))
    assert planner.evaluate_prompt("x", "image") == 1.0

    planner = _planner(_FakeMediator({"prompt_evaluate": [{"score": -2}]}))
    assert planner.evaluate_prompt("x", "image") == 0.0


def test_refinement_uses_original_prompt_as_context() -> None:
    planner = _planner(_FakeMediator({}))
    generation = SimpleNamespace(metadata_json=None)

    result = planner.plan_refinement(generation, "make the colors warmer", "a fox in the snow")

    assert result.success is True
    assert result.refined_prompt == "a fox in the snow. make the colors warmer"
    assert result.improvements == ["Adjusted visual elements"]


def test_refinement_falls_back_to_planner_metadata_then_guidance() -> None:
    planner = _planner(_FakeMediator({}))
    with_meta = SimpleNamespace(metadata_json={"planner": {"enhanced_prompt": "a glowing fox"}})
    bare = SimpleNamespace(metadata_json={})

    assert planner.plan_refinement(with_meta, "add more stars").refined_prompt == (
        "a glowing fox. add more stars"
    )
    assert planner.plan_refinement(bare, "add more stars").refined_prompt == (
        "add more stars, improved and refined version"
    )


def test_refinement_rejects_invalid_guidance() -> None:
    result = _planner(_FakeMediator({})).plan_refinement(SimpleNamespace(metadata_json=None), "it")
    assert result.success is False
    assert result.errors


def test_identify_improvements() -> None:
    assert identify_improvements("Add MORE trees and better lighting") == [
        "Added more detail",
        "Enhanced quality",
        "Adjusted visual elements",
    ]
    assert identify_improvements("zoom out") == ["General refinement applied"]


class _HTMLResponse:
    def __enter__(self):
        return self

    def __exit__(self, *exc_info) -> None:
        return None

    def read(self) -> bytes:
        return b"<html>bad gateway</html>"


def _read_timeout(req, timeout):
    raise TimeoutError("The read operation timed out")


@pytest.mark.parametrize(
    "urlopen",
    [lambda req, timeout: _HTMLResponse(), _read_timeout],
    ids=["html_body", "read_timeout"],
)
def test_transport_failures_never_escape_plan_generation(monkeypatch, tmp_path: Path, urlopen) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "x-test-key")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("LLM_MEDIATOR_STATE_FILE", str(tmp_path / "state.json"))
    for task in ("PROMPT_ENHANCE", "PROMPT_EVALUATE", "PROMPT_SUGGEST", "PROMPT_REFINE"):
        monkeypatch.delenv(f"LLM_ROUTE_{task}_PROVIDER", raising=False)
    monkeypatch.setattr(mediator_module.time, "sleep", lambda _seconds: None)
    monkeypatch.setattr(mediator_module.urlrequest, "urlopen", urlopen)

    prompt = "what if cats could fly over tokyo"
    result = _planner(LLMMediator()).plan_generation(prompt, "image")

    assert result.success is True
    assert result.enhanced_prompt == prompt
    assert result.confidence == min(0.3 + len(prompt) / 200, 1.0)
    assert result.suggestions == []


def test_bad_route_config_never_escapes_plan_generation(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "x-test-key")
    monkeypatch.setenv("LLM_PROVIDER", "openai")
    monkeypatch.setenv("LLM_MEDIATOR_STATE_FILE", str(tmp_path / "state.json"))
    for task in ("PROMPT_ENHANCE", "PROMPT_EVALUATE", "PROMPT_SUGGEST", "PROMPT_REFINE"):
        monkeypatch.setenv(f"LLM_ROUTE_{task}_RETRIES", "two")

    result = _planner(LLMMediator()).plan_generation("what if rain fell upward", "video")

    assert result.success is True
    assert result.enhanced_prompt == "what if rain fell upward"
