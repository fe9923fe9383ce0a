"""
Error taxonomy for the gateway.

Soft failures (budget, rate limit, provider) never escape generate(); they
are reported as a DegradedReason on the result. Hard errors derive from
GatewayError and propagate to the caller.
"""

from enum import Enum


class DegradedReason(Enum):
    """Why a generation was answered with a fallback template."""
    BUDGET_EXCEEDED = "budget_exceeded"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"


class GatewayError(Exception):
    """Base class for hard errors that must reach the caller."""


class ConfigurationError(GatewayError):
    """Required configuration is missing or invalid."""


class InvalidRequestError(GatewayError):
    """A prompt descriptor or user context is malformed."""


class InvalidPayloadError(GatewayError):
    """A queue job payload is malformed or its job type is unknown."""


class ProviderUnavailable(Exception):
    """The LLM provider failed, timed out or returned an unusable response."""


class CacheUnavailable(Exception):
    """The cache store could not be reached."""


class JobFailed(Exception):
    """A queue job could not be completed."""
