"""
Token counting and usage tracking.

Provider-reported token counts are the ledger of record; character-based
estimates are only used to gate a call before it is made.
"""

import math
from dataclasses import dataclass

# Rough English average used for pre-call estimates
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int

    def __post_init__(self):
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Args:
        text: Prompt or completion text

    Returns:
        Estimated number of tokens, rounded up
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_usage(prompt: str, max_tokens: int) -> TokenUsage:
    """Estimate usage of a call that has not been made yet.

    The completion side is priced at max_tokens, the most the provider may
    bill, so a single call never costs more than its estimate.
    """
    return TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=max_tokens,
    )
