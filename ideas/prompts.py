from __future__ import annotations

from dataclasses import dataclass, field
import re


MAX_PROMPT_LENGTH = 2000
MIN_PROMPT_LENGTH = 3

AMBIGUOUS_TOKENS = frozenset({"something", "it", "that", "this", "maybe"})

_KANA_RE = re.compile(r"[\u3040-\u309f\u30a0-\u30ff]")
_HAN_RE = re.compile(r"[\u4e00-\u9fff]")
_ENGLISH_RE = re.compile(r"^[a-zA-Z\s.,!?;:'\"()-]+$")


@dataclass(frozen=True)
class PromptValidation:
    valid: bool
    errors: list[str] = field(default_factory=list)


def validate_prompt_text(text: str) -> PromptValidation:
    errors: list[str] = []
    trimmed = (text or "").strip()

    if not trimmed:
        errors.append("Prompt cannot be empty")
    if len(text or "") > MAX_PROMPT_LENGTH:
        errors.append(f"Prompt cannot exceed {MAX_PROMPT_LENGTH} characters")
    if len(trimmed) < MIN_PROMPT_LENGTH:
        errors.append("Prompt is too short. Please provide more detail.")

    tokens = trimmed.lower().split()
    if tokens and len(tokens) <= 3 and any(token in AMBIGUOUS_TOKENS for token in tokens):
        errors.append(
            "Prompt is too ambiguous. Please be more specific about what you want to visualize."
        )

    return PromptValidation(valid=not errors, errors=errors)


def detect_language(text: str) -> str:
    """Best-effort script sniffing; kana wins over shared CJK ideographs."""
    if _KANA_RE.search(text):
        return "ja"
    if _HAN_RE.search(text):
        return "zh-CN"
    if _ENGLISH_RE.match(text):
        return "en"
    return "unknown"
