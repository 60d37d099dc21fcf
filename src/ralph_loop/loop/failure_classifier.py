"""Deterministic classification of agent failures for failure memory."""

from __future__ import annotations

from dataclasses import dataclass

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "please run /login",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
    "timed out",
)

_RULES: tuple[tuple[str, tuple[str, ...], str], ...] = (
    ("billing_or_quota", _BILLING_OR_QUOTA_PATTERNS, "Check account quota or billing"),
    ("access_or_auth", _ACCESS_OR_AUTH_PATTERNS, "Check agent CLI authentication"),
    ("model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS, "Check the configured model"),
    ("rate_limit", _RATE_LIMIT_PATTERNS, "Retry after the rate limit resets"),
    ("transient", _GENERIC_TRANSIENT_PATTERNS, "Retry; the failure looks transient"),
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized reason for a failed agent invocation."""

    reason_code: str
    matched_pattern: str | None
    next_step: str
    detail: str

    @property
    def root_cause(self) -> str:
        if self.matched_pattern is None:
            return f"{self.reason_code}: {self.detail}"
        return f"{self.reason_code} ({self.matched_pattern!r}): {self.detail}"


def classify_agent_failure(
    *,
    exit_code: int | None,
    stderr: str,
    result_text: str | None = None,
) -> AgentFailureClassification:
    """Classify a non-zero exit or error result by scanning its diagnostics."""

    detail = _first_line(stderr) or _first_line(result_text or "") or f"exit code {exit_code}"
    haystack = f"{stderr}\n{result_text or ''}".lower()
    for reason_code, patterns, next_step in _RULES:
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return AgentFailureClassification(
                reason_code=reason_code,
                matched_pattern=pattern,
                next_step=next_step,
                detail=detail,
            )

    return AgentFailureClassification(
        reason_code="agent_error",
        matched_pattern=None,
        next_step="Inspect agent stderr and retry",
        detail=detail,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()[:200]
    return ""
