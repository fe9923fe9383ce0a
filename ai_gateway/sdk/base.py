from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class ProviderRequest:
    """What the gateway sends to an LLM provider."""
    prompt: str
    model: str
    max_tokens: int
    temperature: Optional[float] = None


@dataclass(frozen=True)
class ProviderResponse:
    """Completion text plus the token counts the provider billed."""
    text: str
    prompt_tokens: int
    completion_tokens: int
    request_id: Optional[str] = None


class LLMProvider(Protocol):
    """
    LLMProvider is the contract every provider client satisfies.

    complete() either returns a usable response or raises
    ProviderUnavailable; any other exception is a programming error.
    """

    @property
    def name(self) -> str: ...

    def complete(self, request: ProviderRequest) -> ProviderResponse: ...
