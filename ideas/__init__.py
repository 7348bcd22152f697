from .planner import (
    IdeaPlanner,
    PlannerConfig,
    PlannerResult,
    RefinementResult,
    get_planner,
    identify_improvements,
    load_planner_config,
)
from .prompts import PromptValidation, detect_language, validate_prompt_text

__all__ = [
    "IdeaPlanner",
    "PlannerConfig",
    "PlannerResult",
    "RefinementResult",
    "PromptValidation",
    "detect_language",
    "get_planner",
    "identify_improvements",
    "load_planner_config",
    "validate_prompt_text",
]
