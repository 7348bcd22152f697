from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from typing import Any

from llm import LLMError, get_mediator

from .prompting import (
    ENHANCE_SCHEMA,
    ENHANCE_SYSTEM_PROMPT,
    EVALUATE_SCHEMA,
    EVALUATE_SYSTEM_PROMPT,
    REFINE_SCHEMA,
    REFINE_SYSTEM_PROMPT,
    SUGGEST_SCHEMA,
    SUGGEST_SYSTEM_PROMPT,
    build_enhance_prompt,
    build_evaluate_prompt,
    build_refine_prompt,
    build_suggest_prompt,
)
from .prompts import detect_language, validate_prompt_text

logger = logging.getLogger(__name__)

MAX_SUGGESTIONS = 4

_IMPROVEMENT_KEYWORDS: tuple[tuple[tuple[str, ...], str], ...] = (
    (("more", "additional"), "Added more detail"),
    (("better", "improved"), "Enhanced quality"),
    (("different", "change"), "Modified style or approach"),
    (("color", "lighting"), "Adjusted visual elements"),
)


@dataclass(frozen=True)
class PlannerConfig:
    max_attempts: int
    min_confidence: float


def load_planner_config() -> PlannerConfig:
    return PlannerConfig(
        max_attempts=max(1, int(os.getenv("PLANNER_MAX_ATTEMPTS", "3"))),
        min_confidence=float(os.getenv("PLANNER_MIN_CONFIDENCE", "0.7")),
    )


@dataclass
class PlannerResult:
    success: bool
    enhanced_prompt: str
    detected_language: str
    confidence: float
    errors: list[str] | None = None
    suggestions: list[str] = field(default_factory=list)


@dataclass
class RefinementResult:
    success: bool
    refined_prompt: str
    improvements: list[str] = field(default_factory=list)
    errors: list[str] | None = None


def identify_improvements(guidance: str) -> list[str]:
    lowered = guidance.lower()
    improvements = [
        label
        for keywords, label in _IMPROVEMENT_KEYWORDS
        if any(keyword in lowered for keyword in keywords)
    ]
    return improvements or ["General refinement applied"]


def _planner_prompt_from_metadata(metadata: dict | None) -> str | None:
    if not isinstance(metadata, dict):
        return None
    planner_meta = metadata.get("planner")
    if not isinstance(planner_meta, dict):
        return None
    value = planner_meta.get("enhanced_prompt")
    return value if isinstance(value, str) and value.strip() else None


def combine_refinement(context: str | None, guidance: str) -> str:
    if context:
        return f"{context}. {guidance}"
    return f"{guidance}, improved and refined version"


class IdeaPlanner:
    """Validates and iteratively enhances prompts through the LLM mediator.

    Every mediator call is guarded on its own, so a provider outage degrades
    the result (unchanged prompt, heuristic confidence) instead of failing
    the request.
    """

    def __init__(self, mediator: Any = None, config: PlannerConfig | None = None) -> None:
        self._mediator = mediator
        self.config = config or load_planner_config()

    @property
    def mediator(self):
        if self._mediator is None:
            self._mediator = get_mediator()
        return self._mediator

    def plan_generation(self, prompt: str, media_type: str) -> PlannerResult:
        validation = validate_prompt_text(prompt)
        if not validation.valid:
            return PlannerResult(
                success=False,
                enhanced_prompt=prompt,
                detected_language="unknown",
                confidence=0.0,
                errors=list(validation.errors),
            )

        language = detect_language(prompt)
        current = prompt
        enhanced = prompt
        confidence = 0.0
        suggestions: list[str] = []

        for attempt in range(1, self.config.max_attempts + 1):
            enhanced = self.enhance_prompt(current, media_type)
            confidence = self.evaluate_prompt(enhanced, media_type)
            logger.debug(
                "Planner attempt evaluated",
                extra={"attempt": attempt, "confidence": confidence, "media_type": media_type},
            )

            if confidence >= self.config.min_confidence or attempt >= self.config.max_attempts:
                if confidence < self.config.min_confidence:
                    suggestions = self.suggest_improvements(enhanced, media_type)
                break

            suggestions = self.suggest_improvements(enhanced, media_type)
            if suggestions:
                current = self.apply_suggestions(enhanced, suggestions)
            else:
                current = enhanced

        return PlannerResult(
            success=True,
            enhanced_prompt=enhanced,
            detected_language=language,
            confidence=confidence,
            suggestions=suggestions,
        )

    def plan_refinement(
        self,
        original_generation: Any,
        guidance: str,
        original_prompt: str | None = None,
    ) -> RefinementResult:
        validation = validate_prompt_text(guidance)
        if not validation.valid:
            return RefinementResult(
                success=False,
                refined_prompt="",
                errors=list(validation.errors),
            )

        context = original_prompt
        if not context:
            context = _planner_prompt_from_metadata(getattr(original_generation, "metadata_json", None))

        return RefinementResult(
            success=True,
            refined_prompt=combine_refinement(context, guidance),
            improvements=identify_improvements(guidance),
        )

    def enhance_prompt(self, prompt: str, media_type: str) -> str:
        try:
            payload, _meta = self.mediator.generate_json(
                task_type="prompt_enhance",
                system_prompt=ENHANCE_SYSTEM_PROMPT,
                user_prompt=build_enhance_prompt(prompt, media_type),
                json_schema=ENHANCE_SCHEMA,
                max_tokens=600,
            )
        except LLMError as exc:
            logger.warning("Prompt enhancement failed", extra={"error": str(exc)})
            return prompt
        value = payload.get("enhanced_prompt")
        if not isinstance(value, str) or not value.strip():
            return prompt
        return value.strip()

    def evaluate_prompt(self, prompt: str, media_type: str) -> float:
        try:
            payload, _meta = self.mediator.generate_json(
                task_type="prompt_evaluate",
                system_prompt=EVALUATE_SYSTEM_PROMPT,
                user_prompt=build_evaluate_prompt(prompt, media_type),
                json_schema=EVALUATE_SCHEMA,
                max_tokens=200,
                temperature=0.0,
            )
        except LLMError as exc:
            logger.warning("Prompt evaluation failed", extra={"error": str(exc)})
            return min(0.3 + len(prompt) / 200, 1.0)
        try:
            score = float(payload.get("score"))
        except (TypeError, ValueError):
            return 0.5
        if score != score:
            return 0.5
        return max(0.0, min(1.0, score))

    def suggest_improvements(self, prompt: str, media_type: str) -> list[str]:
        try:
            payload, _meta = self.mediator.generate_json(
                task_type="prompt_suggest",
                system_prompt=SUGGEST_SYSTEM_PROMPT,
                user_prompt=build_suggest_prompt(prompt, media_type),
                json_schema=SUGGEST_SCHEMA,
                max_tokens=300,
            )
        except LLMError as exc:
            logger.warning("Prompt suggestions failed", extra={"error": str(exc)})
            return []
        raw = payload.get("suggestions")
        if not isinstance(raw, list):
            return []
        cleaned = [item.strip() for item in raw if isinstance(item, str) and item.strip()]
        return cleaned[:MAX_SUGGESTIONS]

    def apply_suggestions(self, prompt: str, suggestions: list[str]) -> str:
        try:
            payload, _meta = self.mediator.generate_json(
                task_type="prompt_refine",
                system_prompt=REFINE_SYSTEM_PROMPT,
                user_prompt=build_refine_prompt(prompt, suggestions),
                json_schema=REFINE_SCHEMA,
                max_tokens=600,
            )
        except LLMError as exc:
            logger.warning("Prompt refinement failed", extra={"error": str(exc)})
            return prompt
        value = payload.get("refined_prompt")
        if not isinstance(value, str) or not value.strip():
            return prompt
        return value.strip()


_PLANNER: IdeaPlanner | None = None


def get_planner() -> IdeaPlanner:
    global _PLANNER
    if _PLANNER is None:
        _PLANNER = IdeaPlanner()
    return _PLANNER
