"""Token usage accounting."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass


@dataclass(slots=True)
class TokenUsage:
    """Token counters reported by the agent CLI."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @classmethod
    def from_payload(cls, payload: Mapping[str, object] | None) -> TokenUsage:
        """Build usage from a stream-json ``usage`` object, ignoring unknown keys."""

        if not payload:
            return cls()
        return cls(
            input_tokens=_coerce_count(payload.get("input_tokens")),
            output_tokens=_coerce_count(payload.get("output_tokens")),
            cache_creation_input_tokens=_coerce_count(payload.get("cache_creation_input_tokens")),
            cache_read_input_tokens=_coerce_count(payload.get("cache_read_input_tokens")),
        )

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_creation_input_tokens=(
                self.cache_creation_input_tokens + other.cache_creation_input_tokens
            ),
            cache_read_input_tokens=self.cache_read_input_tokens + other.cache_read_input_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_creation_input_tokens": self.cache_creation_input_tokens,
            "cache_read_input_tokens": self.cache_read_input_tokens,
        }


def format_tokens(count: int) -> str:
    """Render a token count compactly: ``950``, ``5.2k``, ``1.2M``."""

    if count < 1_000:
        return str(count)
    if count < 1_000_000:
        return f"{count / 1_000:.1f}k"
    return f"{count / 1_000_000:.1f}M"


def _coerce_count(value: object) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(0, value)
    if isinstance(value, float):
        return max(0, int(value))
    return 0
