"""
Configuration management and loading.

Gateway policy (budgets, limits, cache TTLs, queue settings) is read from a
YAML file. Every section is optional and falls back to the built-in
defaults, but whatever is present is validated strictly.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict

import yaml

from ai_gateway.core.budget import FeatureLimit
from ai_gateway.core.rate_limiter import TIERS, EndpointLimit

DAY = 24 * 60 * 60


@dataclass(frozen=True)
class QueueConfig:
    """Batch worker settings."""
    batch_size: int = 50
    retention_days: int = 7
    max_attempts: int = 1  # 1 = no automatic retry
    retry_backoff_seconds: int = 300
    processing_timeout_seconds: int = 3600  # claimed jobs older than this are failed

    def __post_init__(self):
        if self.batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if self.retention_days <= 0:
            raise ValueError("retention_days must be > 0")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if self.retry_backoff_seconds <= 0:
            raise ValueError("retry_backoff_seconds must be > 0")
        if self.processing_timeout_seconds <= 0:
            raise ValueError("processing_timeout_seconds must be > 0")


@dataclass(frozen=True)
class ProviderConfig:
    timeout_seconds: float = 30.0

    def __post_init__(self):
        if self.timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")


@dataclass(frozen=True)
class RateLimitConfig:
    """Endpoint ceilings and tier scaling for the rate limiter."""
    endpoints: Dict[str, EndpointLimit]
    default: EndpointLimit
    ai_default: EndpointLimit
    tier_multipliers: Dict[str, int]


@dataclass(frozen=True)
class GatewayConfig:
    """Complete gateway configuration."""
    budgets: Dict[str, float]
    cache_ttls: Dict[str, int]
    feature_limits: Dict[str, FeatureLimit]
    default_feature_limit: FeatureLimit
    rate_limits: RateLimitConfig
    queue: QueueConfig = field(default_factory=QueueConfig)
    provider: ProviderConfig = field(default_factory=ProviderConfig)


def default_gateway_config() -> GatewayConfig:
    """Built-in policy used when no configuration file is given."""
    return GatewayConfig(
        budgets={"free": 0.005, "plus": 0.01, "ultra": 0.01},
        cache_ttls={"nano": DAY, "mini": 7 * DAY},
        feature_limits={
            "level_feedback": FeatureLimit(daily=10, hourly=3),
            "forum_reply": FeatureLimit(daily=5, hourly=2),
            "battle_task_generation": FeatureLimit(daily=3, hourly=1),
            "onboarding_personalization": FeatureLimit(daily=1, hourly=1),
            "ai_weekly_summary": FeatureLimit(daily=1, hourly=1),
        },
        default_feature_limit=FeatureLimit(daily=5, hourly=2),
        rate_limits=RateLimitConfig(
            endpoints={
                "api_reads": EndpointLimit(requests=100, window_seconds=60),
                "api_mutations": EndpointLimit(requests=10, window_seconds=60),
                "battle_requests": EndpointLimit(requests=5, window_seconds=DAY),
                "forum_posts": EndpointLimit(
                    requests=1, window_seconds=DAY,
                    per_tier={"free": 1, "plus": 999, "ultra": 999},
                ),
            },
            default=EndpointLimit(requests=10, window_seconds=60 * 60),
            ai_default=EndpointLimit(
                requests=10, window_seconds=DAY,
                per_tier={"free": 10, "plus": 50, "ultra": 999},
            ),
            tier_multipliers={"free": 1, "plus": 2, "ultra": 3},
        ),
    )


def _check_keys(data: Any, allowed: set, path: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"'{path}' must be a dictionary")
    unknown = set(data.keys()) - allowed
    if unknown:
        raise ValueError(f"Unknown keys in {path}: {unknown}")
    return data


def _positive_number(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"'{path}' must be > 0")
    return float(value)


def _positive_int(value: Any, path: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"'{path}' must be a positive integer")
    return value


def _tier_map(data: Any, path: str, parse) -> Dict[str, Any]:
    data = _check_keys(data, set(TIERS), path)
    return {tier: parse(value, f"{path}.{tier}") for tier, value in data.items()}


def load_gateway_config(path: str) -> GatewayConfig:
    """Load and validate gateway configuration from a YAML file.

    Strict validation ensures no silent misconfigurations that could
    lead to unexpected cost overruns.

    Args:
        path: Path to YAML configuration file

    Returns:
        Validated GatewayConfig, with defaults for omitted sections

    Raises:
        FileNotFoundError: If config file doesn't exist
        yaml.YAMLError: If YAML is invalid
        ValueError: If configuration is invalid
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Gateway config file not found: {path}")

    with open(config_path, 'r', encoding='utf-8') as f:
        try:
            raw_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise yaml.YAMLError(f"Invalid YAML in config file {path}: {e}")

    if not raw_config:
        raise ValueError("Configuration file is empty")

    return parse_gateway_config(raw_config)


def parse_gateway_config(raw_config: Dict[str, Any]) -> GatewayConfig:
    """Validate an already-parsed configuration mapping."""
    allowed_top_keys = {
        'budgets', 'cache_ttls', 'feature_limits', 'default_feature_limit',
        'rate_limits', 'queue', 'provider'
    }
    _check_keys(raw_config, allowed_top_keys, "config")
    defaults = default_gateway_config()

    budgets = dict(defaults.budgets)
    if 'budgets' in raw_config:
        budgets.update(_tier_map(raw_config['budgets'], "budgets", _positive_number))

    cache_ttls = dict(defaults.cache_ttls)
    if 'cache_ttls' in raw_config:
        ttl_data = _check_keys(raw_config['cache_ttls'], {'nano', 'mini'}, "cache_ttls")
        for tier, value in ttl_data.items():
            cache_ttls[tier] = _positive_int(value, f"cache_ttls.{tier}")

    feature_limits = dict(defaults.feature_limits)
    if 'feature_limits' in raw_config:
        features_data = raw_config['feature_limits']
        if not isinstance(features_data, dict):
            raise ValueError("'feature_limits' must be a dictionary")
        for feature_name, feature_data in features_data.items():
            feature_limits[feature_name] = _parse_feature_limit(
                feature_data, f"feature_limits.{feature_name}"
            )

    default_feature_limit = defaults.default_feature_limit
    if 'default_feature_limit' in raw_config:
        default_feature_limit = _parse_feature_limit(
            raw_config['default_feature_limit'], "default_feature_limit"
        )

    rate_limits = defaults.rate_limits
    if 'rate_limits' in raw_config:
        rate_limits = _parse_rate_limits(raw_config['rate_limits'], defaults.rate_limits)

    queue = defaults.queue
    if 'queue' in raw_config:
        queue_data = _check_keys(
            raw_config['queue'],
            {'batch_size', 'retention_days', 'max_attempts', 'retry_backoff_seconds',
             'processing_timeout_seconds'},
            "queue"
        )
        queue = QueueConfig(**{
            key: _positive_int(value, f"queue.{key}") for key, value in queue_data.items()
        })

    provider = defaults.provider
    if 'provider' in raw_config:
        provider_data = _check_keys(raw_config['provider'], {'timeout_seconds'}, "provider")
        provider = ProviderConfig(**{
            key: _positive_number(value, f"provider.{key}") for key, value in provider_data.items()
        })

    return GatewayConfig(
        budgets=budgets,
        cache_ttls=cache_ttls,
        feature_limits=feature_limits,
        default_feature_limit=default_feature_limit,
        rate_limits=rate_limits,
        queue=queue,
        provider=provider
    )


def _parse_feature_limit(data: Any, path: str) -> FeatureLimit:
    """Parse a {daily, hourly} block. Zero disables a cap."""
    data = _check_keys(data, {'daily', 'hourly'}, path)
    for key in ('daily', 'hourly'):
        if key not in data:
            raise ValueError(f"Missing required '{key}' in {path}")
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"'{key}' in {path} must be a non-negative integer")
    return FeatureLimit(daily=data['daily'], hourly=data['hourly'])


def _parse_endpoint_limit(data: Any, path: str) -> EndpointLimit:
    data = _check_keys(data, {'requests', 'window_seconds', 'per_tier'}, path)
    if 'requests' not in data:
        raise ValueError(f"Missing required 'requests' in {path}")
    if 'window_seconds' not in data:
        raise ValueError(f"Missing required 'window_seconds' in {path}")
    per_tier = {}
    if 'per_tier' in data:
        per_tier = _tier_map(data['per_tier'], f"{path}.per_tier", _positive_int)
    return EndpointLimit(
        requests=_positive_int(data['requests'], f"{path}.requests"),
        window_seconds=_positive_int(data['window_seconds'], f"{path}.window_seconds"),
        per_tier=per_tier
    )


def _parse_rate_limits(data: Any, defaults: RateLimitConfig) -> RateLimitConfig:
    data = _check_keys(data, {'endpoints', 'default', 'ai_default', 'tier_multipliers'}, "rate_limits")

    endpoints = dict(defaults.endpoints)
    if 'endpoints' in data:
        if not isinstance(data['endpoints'], dict):
            raise ValueError("'rate_limits.endpoints' must be a dictionary")
        for name, endpoint_data in data['endpoints'].items():
            endpoints[name] = _parse_endpoint_limit(endpoint_data, f"rate_limits.endpoints.{name}")

    default = defaults.default
    if 'default' in data:
        default = _parse_endpoint_limit(data['default'], "rate_limits.default")

    ai_default = defaults.ai_default
    if 'ai_default' in data:
        ai_default = _parse_endpoint_limit(data['ai_default'], "rate_limits.ai_default")

    multipliers = dict(defaults.tier_multipliers)
    if 'tier_multipliers' in data:
        multipliers.update(
            _tier_map(data['tier_multipliers'], "rate_limits.tier_multipliers", _positive_int)
        )

    return RateLimitConfig(
        endpoints=endpoints,
        default=default,
        ai_default=ai_default,
        tier_multipliers=multipliers
    )
