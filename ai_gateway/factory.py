"""
Process wiring.

Builds the gateway and the queue worker from Settings and GatewayConfig.
Stores, the limiter policy, the budget tracker and the provider are created
once here and injected; nothing in the core modules is a module-level
singleton.
"""

from typing import Optional

from ai_gateway.config.loader import GatewayConfig, default_gateway_config, load_gateway_config
from ai_gateway.config.settings import Settings
from ai_gateway.core.budget import BudgetTracker
from ai_gateway.core.cache import CacheStore, ResponseCache, create_cache_store
from ai_gateway.core.fallback import FallbackResolver
from ai_gateway.core.gateway import PROMPT_TEMPLATES, InferenceGateway
from ai_gateway.core.pricing import PRICING_TABLE, PricingTable
from ai_gateway.core.rate_limiter import RateLimitPolicy
from ai_gateway.jobs.handlers import ResultSink
from ai_gateway.jobs.queue import JobQueue
from ai_gateway.jobs.worker import QueueWorker
from ai_gateway.sdk.base import LLMProvider
from ai_gateway.sdk.openai_client import OpenAIProvider
from ai_gateway.storage.repository import JobRepository, JobResultRepository, UsageRepository


def load_config(settings: Settings) -> GatewayConfig:
    """GatewayConfig from the configured YAML file, or the built-in defaults."""
    if settings.config_path:
        return load_gateway_config(settings.config_path)
    return default_gateway_config()


def build_rate_limit_policy(config: GatewayConfig, store: CacheStore) -> RateLimitPolicy:
    # Every feature the gateway can bill is an AI feature for ai_default
    ai_features = set(config.feature_limits)
    ai_features.update(template.feature for template in PROMPT_TEMPLATES.values())
    rate_limits = config.rate_limits
    return RateLimitPolicy(
        store=store,
        endpoints=rate_limits.endpoints,
        default=rate_limits.default,
        ai_default=rate_limits.ai_default,
        tier_multipliers=rate_limits.tier_multipliers,
        ai_features=frozenset(ai_features),
    )


def build_gateway(
    settings: Settings,
    config: Optional[GatewayConfig] = None,
    provider: Optional[LLMProvider] = None,
    store: Optional[CacheStore] = None,
    pricing: Optional[PricingTable] = None
) -> InferenceGateway:
    """Construct an InferenceGateway and all of its collaborators.

    Args:
        settings: Process settings (database, Redis URL, API key)
        config: Gateway policy, loaded from settings when omitted
        provider: LLM provider, an OpenAIProvider when omitted
        store: Cache store, chosen from settings.redis_url when omitted
        pricing: Pricing table, the built-in one when omitted

    Returns:
        Ready-to-use InferenceGateway

    Raises:
        ConfigurationError: If the OpenAI provider is needed and no API key is set
    """
    config = config or load_config(settings)
    pricing = pricing or PRICING_TABLE
    store = store or create_cache_store(settings.redis_url)

    if provider is None:
        provider = OpenAIProvider(
            api_key=settings.openai_api_key,
            timeout_seconds=config.provider.timeout_seconds,
        )

    budget = BudgetTracker(
        repository=UsageRepository(settings.db_path),
        monthly_budgets=config.budgets,
        feature_limits=config.feature_limits,
        default_feature_limit=config.default_feature_limit,
        pricing=pricing,
    )
    return InferenceGateway(
        cache=ResponseCache(store, ttl_by_tier=config.cache_ttls),
        rate_limits=build_rate_limit_policy(config, store),
        budget=budget,
        provider=provider,
        fallback=FallbackResolver(),
        pricing=pricing,
    )


def build_queue(settings: Settings, config: Optional[GatewayConfig] = None) -> JobQueue:
    config = config or load_config(settings)
    return JobQueue(
        JobRepository(settings.db_path),
        default_max_attempts=config.queue.max_attempts,
        retry_backoff_seconds=config.queue.retry_backoff_seconds,
    )


def build_worker(
    settings: Settings,
    config: Optional[GatewayConfig] = None,
    gateway: Optional[InferenceGateway] = None,
    sink: Optional[ResultSink] = None
) -> QueueWorker:
    """Construct a QueueWorker sharing the gateway's database.

    Results go to the job_results table unless another sink is given.
    """
    config = config or load_config(settings)
    return QueueWorker(
        repository=JobRepository(settings.db_path),
        queue=build_queue(settings, config),
        gateway=gateway or build_gateway(settings, config),
        sink=sink or JobResultRepository(settings.db_path),
        config=config.queue,
    )
