from __future__ import annotations


ENHANCE_SYSTEM_PROMPT = (
    "You rewrite short 'what if' ideas into vivid prompts for an image or video model. "
    "Keep the user's intent and language. Return JSON only."
)

EVALUATE_SYSTEM_PROMPT = (
    "You rate how well a prompt can be turned into a coherent image or video. "
    "Return JSON only."
)

SUGGEST_SYSTEM_PROMPT = (
    "You suggest concrete, short improvements for a generation prompt. Return JSON only."
)

REFINE_SYSTEM_PROMPT = (
    "You merge improvement suggestions into a generation prompt without changing its subject. "
    "Return JSON only."
)

ENHANCE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["enhanced_prompt"],
    "properties": {"enhanced_prompt": {"type": "string"}},
}

EVALUATE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["score", "reason"],
    "properties": {
        "score": {"type": "number"},
        "reason": {"type": "string"},
    },
}

SUGGEST_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["suggestions"],
    "properties": {
        "suggestions": {"type": "array", "items": {"type": "string"}},
    },
}

REFINE_SCHEMA = {
    "type": "object",
    "additionalProperties": False,
    "required": ["refined_prompt"],
    "properties": {"refined_prompt": {"type": "string"}},
}


def _media_guidance(media_type: str) -> str:
    if media_type == "video":
        return (
            "Describe motion, camera movement, pacing and how the scene changes over a few seconds."
        )
    return "Describe composition, lighting, depth, color palette and artistic style."


def build_enhance_prompt(prompt: str, media_type: str) -> str:
    return (
        f"Media type: {media_type}\n"
        f"Original idea: {prompt}\n"
        f"{_media_guidance(media_type)}\n"
        "Add visual detail, but do not invent a different scenario. "
        'Respond as {"enhanced_prompt": "..."}.'
    )


def build_evaluate_prompt(prompt: str, media_type: str) -> str:
    return (
        f"Media type: {media_type}\n"
        f"Prompt: {prompt}\n"
        "Score from 0.0 to 1.0 how clear, specific and visually actionable this prompt is. "
        'Respond as {"score": 0.0, "reason": "..."}.'
    )


def build_suggest_prompt(prompt: str, media_type: str) -> str:
    return (
        f"Media type: {media_type}\n"
        f"Prompt: {prompt}\n"
        "List 2 to 4 short suggestions that would make this prompt produce a better result. "
        'Respond as {"suggestions": ["..."]}.'
    )


def build_refine_prompt(prompt: str, suggestions: list[str]) -> str:
    bullet_list = "\n".join(f"- {item}" for item in suggestions)
    return (
        f"Prompt: {prompt}\n"
        f"Suggestions:\n{bullet_list}\n"
        "Rewrite the prompt so it applies the suggestions. "
        'Respond as {"refined_prompt": "..."}.'
    )
