"""
OpenAI provider client.

Turns a ProviderRequest into one chat completion. Every provider-side failure
is reported as ProviderUnavailable so the gateway can fall back.
"""

from typing import Optional

import openai
import structlog
from openai import OpenAI

from ..core.errors import ConfigurationError, ProviderUnavailable
from ..core.token_counter import estimate_tokens
from .base import ProviderRequest, ProviderResponse

logger = structlog.get_logger()


class OpenAIProvider:
    """OpenAI chat completions behind the LLMProvider contract.

    Client-side retries are disabled: a failed call falls back to a template
    immediately instead of holding the request open.
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str] = None,
        timeout_seconds: float = 30.0,
        client: Optional[OpenAI] = None
    ):
        """Initialize the provider.

        Args:
            api_key: OpenAI API key (required unless a client is given)
            timeout_seconds: Per-request timeout for the provider call
            client: Pre-built OpenAI client, mainly for tests

        Raises:
            ConfigurationError: If no API key and no client is provided
        """
        if client is None:
            if not api_key or not api_key.strip():
                raise ConfigurationError("OPENAI_API_KEY is required for the OpenAI provider")
            client = OpenAI(api_key=api_key, timeout=timeout_seconds, max_retries=0)
        self.client = client
        self.timeout_seconds = timeout_seconds

    def complete(self, request: ProviderRequest) -> ProviderResponse:
        """Create a chat completion for a single user prompt.

        Args:
            request: Prompt, model and generation limits

        Returns:
            ProviderResponse with completion text and billed token counts

        Raises:
            ProviderUnavailable: On API errors, timeouts or empty completions
        """
        kwargs = {
            "model": request.model,
            "messages": [{"role": "user", "content": request.prompt}],
            "max_completion_tokens": request.max_tokens,
        }
        if request.temperature is not None:
            kwargs["temperature"] = request.temperature

        try:
            response = self.client.chat.completions.create(**kwargs)
        except openai.OpenAIError as e:
            raise ProviderUnavailable(f"{type(e).__name__}: {e}") from e

        choices = getattr(response, "choices", None) or []
        text = (choices[0].message.content or "").strip() if choices else ""
        if not text:
            raise ProviderUnavailable("OpenAI returned an empty completion")

        usage = getattr(response, "usage", None)
        if usage is None:
            # Still billed by the provider, so fall back to estimates
            logger.warning("provider_usage_missing", model=request.model, request_id=response.id)
            prompt_tokens = estimate_tokens(request.prompt)
            completion_tokens = estimate_tokens(text)
        else:
            prompt_tokens = usage.prompt_tokens
            completion_tokens = usage.completion_tokens

        return ProviderResponse(
            text=text,
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            request_id=response.id,
        )
