from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from functools import lru_cache
import logging
import os
from pathlib import Path
import re
from typing import Any

import yaml

logger = logging.getLogger(__name__)

RULES_PATH = Path(__file__).with_name("policy_rules.yaml")

CATEGORIES = ("violence", "adult", "harassment", "misinformation", "spam")
SEVERITY_ORDER = {"low": 0, "medium": 1, "high": 2}


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SafetyConfig:
    strict_mode: bool = False
    block_high_severity: bool = True
    require_review_medium: bool = True


def load_safety_config() -> SafetyConfig:
    return SafetyConfig(
        strict_mode=_env_flag("SAFETY_STRICT_MODE", False),
        block_high_severity=_env_flag("SAFETY_BLOCK_HIGH", True),
        require_review_medium=_env_flag("SAFETY_REVIEW_MEDIUM", True),
    )


@dataclass(frozen=True)
class PolicyViolation:
    category: str
    severity: str
    reason: str
    suggestion: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class PolicyFlagDraft:
    """Unsaved policy flag; the API persists it once a target id exists."""

    target_type: str
    target_id: str
    reason: str
    severity: str
    resolution: str

    def retarget(self, target_type: str, target_id: str) -> "PolicyFlagDraft":
        return replace(self, target_type=target_type, target_id=target_id)


@dataclass
class PolicyCheckResult:
    allowed: bool
    flags: list[PolicyFlagDraft] = field(default_factory=list)
    violations: list[PolicyViolation] = field(default_factory=list)
    recommendations: list[str] | None = None


@dataclass(frozen=True)
class _CategoryRule:
    name: str
    severity: str
    reason: str
    suggestion: str
    patterns: tuple[re.Pattern[str], ...]


@dataclass(frozen=True)
class PolicyRules:
    categories: dict[str, _CategoryRule]
    innocent_contexts: tuple[str, ...]
    explicit_intent: tuple[re.Pattern[str], ...]
    general_recommendations: tuple[str, ...]
    spam_min_length: int
    spam_min_unique_ratio: float


def _keyword_pattern(keyword: str) -> re.Pattern[str]:
    escaped = re.escape(keyword.lower())
    if keyword.isascii():
        return re.compile(rf"\b{escaped}")
    return re.compile(escaped)


def parse_rules(data: dict[str, Any]) -> PolicyRules:
    categories: dict[str, _CategoryRule] = {}
    for name, raw in (data.get("categories") or {}).items():
        categories[name] = _CategoryRule(
            name=name,
            severity=str(raw["severity"]),
            reason=str(raw["reason"]),
            suggestion=str(raw["suggestion"]),
            patterns=tuple(_keyword_pattern(str(kw)) for kw in raw.get("keywords") or []),
        )
    spam = data.get("spam") or {}
    return PolicyRules(
        categories=categories,
        innocent_contexts=tuple(str(item).lower() for item in data.get("violence_innocent_contexts") or []),
        explicit_intent=tuple(_keyword_pattern(str(kw)) for kw in data.get("violence_explicit_intent") or []),
        general_recommendations=tuple(str(item) for item in data.get("general_recommendations") or []),
        spam_min_length=int(spam.get("min_length", 3)),
        spam_min_unique_ratio=float(spam.get("min_unique_ratio", 0.3)),
    )


@lru_cache(maxsize=1)
def load_policy_rules(path: str | None = None) -> PolicyRules:
    rules_path = Path(path) if path else RULES_PATH
    data = yaml.safe_load(rules_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"policy rules must be a mapping: {rules_path}")
    return parse_rules(data)


def highest_severity(flags: list[PolicyFlagDraft]) -> str | None:
    if not flags:
        return None
    return max(flags, key=lambda flag: SEVERITY_ORDER.get(flag.severity, -1)).severity


def format_policy_message(flags: list[PolicyFlagDraft]) -> str:
    if not flags:
        return "Content passed policy checks"
    blocked = [flag for flag in flags if flag.resolution == "blocked"]
    review = [flag for flag in flags if flag.resolution == "needs_review"]
    if blocked:
        return f"Content blocked: {blocked[0].reason}"
    if review:
        return f"Content requires review: {review[0].reason}"
    return "Content allowed with minor warnings"


class PolicyEnforcer:
    """Keyword screening for prompts and provider output."""

    def __init__(self, config: SafetyConfig | None = None, rules: PolicyRules | None = None) -> None:
        self.config = config or load_safety_config()
        self.rules = rules or load_policy_rules()

    def update_config(self, **changes: Any) -> SafetyConfig:
        self.config = replace(self.config, **changes)
        return self.config

    def check_prompt(self, prompt: str, author_id: str) -> PolicyCheckResult:
        violations: list[PolicyViolation] = []
        for category in CATEGORIES:
            if self._matches(category, prompt):
                rule = self.rules.categories[category]
                violations.append(
                    PolicyViolation(
                        category=category,
                        severity=rule.severity,
                        reason=rule.reason,
                        suggestion=rule.suggestion,
                    )
                )

        flags = [
            PolicyFlagDraft(
                target_type="prompt",
                target_id="",
                reason=violation.reason,
                severity=violation.severity,
                resolution=self._resolve(violation.severity),
            )
            for violation in violations
        ]
        allowed = not any(flag.resolution == "blocked" for flag in flags)

        if violations:
            logger.info(
                "Prompt policy violations",
                extra={
                    "author_id": author_id,
                    "prompt": prompt[:100],
                    "categories": [v.category for v in violations],
                    "allowed": allowed,
                },
            )

        return PolicyCheckResult(
            allowed=allowed,
            flags=flags,
            violations=violations,
            recommendations=self._recommendations(violations),
        )

    def check_generation(self, generation_id: str, metadata: dict[str, Any] | None) -> list[PolicyFlagDraft]:
        if not isinstance(metadata, dict) or not metadata.get("flagged"):
            return []
        reason = metadata.get("flag_reason") or "Generated content was flagged by the provider"
        return [
            PolicyFlagDraft(
                target_type="generation",
                target_id=str(generation_id),
                reason=str(reason),
                severity="medium",
                resolution="needs_review",
            )
        ]

    def _matches(self, category: str, prompt: str) -> bool:
        if category == "spam":
            return self._is_spam(prompt)
        rule = self.rules.categories.get(category)
        if rule is None:
            return False
        lowered = prompt.lower()
        if not any(pattern.search(lowered) for pattern in rule.patterns):
            return False
        if category == "violence" and self._innocent_violence_context(lowered):
            return False
        return True

    def _innocent_violence_context(self, lowered: str) -> bool:
        if not any(phrase in lowered for phrase in self.rules.innocent_contexts):
            return False
        return not any(pattern.search(lowered) for pattern in self.rules.explicit_intent)

    def _is_spam(self, prompt: str) -> bool:
        trimmed = prompt.strip()
        if len(trimmed) < self.rules.spam_min_length:
            return True
        words = trimmed.lower().split()
        if len(words) > 1 and len(set(words)) / len(words) < self.rules.spam_min_unique_ratio:
            return True
        return False

    def _resolve(self, severity: str) -> str:
        if self.config.strict_mode:
            return "needs_review" if severity == "low" else "blocked"
        if severity == "high":
            return "blocked" if self.config.block_high_severity else "needs_review"
        if severity == "medium":
            return "needs_review" if self.config.require_review_medium else "allowed"
        return "allowed"

    def _recommendations(self, violations: list[PolicyViolation]) -> list[str] | None:
        if not violations:
            return None
        items = [v.suggestion for v in violations if v.suggestion]
        items.extend(self.rules.general_recommendations)
        deduped = list(dict.fromkeys(items))
        return deduped or None


_ENFORCER: PolicyEnforcer | None = None


def get_policy_enforcer() -> PolicyEnforcer:
    global _ENFORCER
    if _ENFORCER is None:
        _ENFORCER = PolicyEnforcer()
    return _ENFORCER
