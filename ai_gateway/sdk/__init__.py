"""
LLM provider clients used by the gateway.
"""

from .base import LLMProvider, ProviderRequest, ProviderResponse
from .openai_client import OpenAIProvider

__all__ = ["LLMProvider", "OpenAIProvider", "ProviderRequest", "ProviderResponse"]
