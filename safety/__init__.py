from .policy import (
    PolicyCheckResult,
    PolicyEnforcer,
    PolicyFlagDraft,
    PolicyViolation,
    SafetyConfig,
    format_policy_message,
    get_policy_enforcer,
    highest_severity,
    load_safety_config,
)

__all__ = [
    "PolicyCheckResult",
    "PolicyEnforcer",
    "PolicyFlagDraft",
    "PolicyViolation",
    "SafetyConfig",
    "format_policy_message",
    "get_policy_enforcer",
    "highest_severity",
    "load_safety_config",
]
