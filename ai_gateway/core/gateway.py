"""
Inference gateway facade.

The single entry point consumers use to get LLM text. Each call runs, in
order: cache lookup, rate limit, budget check, provider call, then cache
write and usage recording. Budget, rate-limit and provider failures are
answered with a fallback template; they never raise.
"""

import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import structlog

from .budget import BudgetStatus, BudgetTracker, UserContext
from .cache import ResponseCache
from .errors import DegradedReason, InvalidRequestError, ProviderUnavailable
from .fallback import FallbackResolver
from .pricing import PRICING_TABLE, PricingTable, calculate_cost, estimate_cost
from .rate_limiter import RateLimitPolicy, RateLimitResult
from .token_counter import TokenUsage
from ai_gateway.sdk.base import LLMProvider, ProviderRequest

logger = structlog.get_logger()


@dataclass(frozen=True)
class PromptTemplate:
    feature: str
    model: str
    max_tokens: int
    temperature: float
    template: str


PROMPT_TEMPLATES: Dict[str, PromptTemplate] = {
    "level_feedback": PromptTemplate(
        feature="level_feedback",
        model="gpt-5-nano",
        max_tokens=20,
        temperature=0.8,
        template="User finished level {level} for {craving}. Response: {input}. "
                 "Reply 15 words max, {persona} tone.",
    ),
    "forum_reply": PromptTemplate(
        feature="forum_reply",
        model="gpt-5-nano",
        max_tokens=30,
        temperature=0.7,
        template="Thread: {title}. Suggest 20-word reply for {craving} community.",
    ),
    "battle_tasks": PromptTemplate(
        feature="battle_task_generation",
        model="gpt-5-mini",
        max_tokens=200,
        temperature=0.8,
        template="Generate 5 unique 24hr challenges for {craving}. Each 1 sentence.",
    ),
    "onboarding_personalization": PromptTemplate(
        feature="onboarding_personalization",
        model="gpt-5-mini",
        max_tokens=150,
        temperature=0.7,
        template="Quiz: {answers}. Write 3 custom hints for days 1-3 of {craving} journey.",
    ),
    "user_summary": PromptTemplate(
        feature="user_summary",
        model="gpt-5-nano",
        max_tokens=60,
        temperature=0.5,
        template="User is on level {level}/30 with a {streak}-day streak for {craving}. "
                 "Write a 2-sentence progress summary.",
    ),
}


@dataclass(frozen=True)
class PromptDescriptor:
    """Canonical description of one generation request.

    prompt, model and max_tokens form the cache fingerprint; temperature does
    not. category selects the fallback template set.
    """
    prompt: str
    model: str
    max_tokens: int
    temperature: Optional[float] = None
    category: Optional[str] = None

    @classmethod
    def from_template(cls, name: str, category: Optional[str] = None, **params: Any) -> "PromptDescriptor":
        """Render one of PROMPT_TEMPLATES.

        Raises:
            InvalidRequestError: If the template is unknown or a parameter is missing
        """
        if name not in PROMPT_TEMPLATES:
            raise InvalidRequestError(f"Unknown prompt template: {name}")
        template = PROMPT_TEMPLATES[name]
        try:
            prompt = template.template.format(**params)
        except KeyError as e:
            raise InvalidRequestError(f"Missing template parameter {e} for {name}") from e
        return cls(
            prompt=prompt,
            model=template.model,
            max_tokens=template.max_tokens,
            temperature=template.temperature,
            category=category if category is not None else params.get("craving"),
        )


@dataclass(frozen=True)
class GenerationResult:
    """Text handed back to the consumer plus how it was obtained."""
    text: str
    cached: bool
    cost: float
    degraded_reason: Optional[DegradedReason] = None
    retry_after: Optional[int] = None
    rate_limit: Optional[RateLimitResult] = None
    budget_status: Optional[BudgetStatus] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        return self.degraded_reason is not None


class InferenceGateway:
    """Cost-controlled access to the LLM provider.

    All collaborators are passed in; the gateway keeps no state of its own
    between calls.
    """

    def __init__(
        self,
        cache: ResponseCache,
        rate_limits: RateLimitPolicy,
        budget: BudgetTracker,
        provider: LLMProvider,
        fallback: FallbackResolver,
        pricing: Optional[PricingTable] = None
    ):
        self.cache = cache
        self.rate_limits = rate_limits
        self.budget = budget
        self.provider = provider
        self.fallback = fallback
        self.pricing = pricing or PRICING_TABLE

    def _validate(self, feature: str, descriptor: PromptDescriptor) -> None:
        if not feature or not feature.strip():
            raise InvalidRequestError("feature is required and cannot be empty")
        if not descriptor.prompt or not descriptor.prompt.strip():
            raise InvalidRequestError("prompt is required and cannot be empty")
        if descriptor.max_tokens <= 0:
            raise InvalidRequestError("max_tokens must be > 0")
        if not self.pricing.supports(descriptor.model):
            raise InvalidRequestError(f"Unsupported model: {descriptor.model}")

    def _degrade(
        self,
        feature: str,
        descriptor: PromptDescriptor,
        reason: DegradedReason,
        **metadata: Any
    ) -> GenerationResult:
        logger.info("generation_degraded", reason=reason.value, fallback_version=self.fallback.version)
        return GenerationResult(
            text=self.fallback.resolve(feature, descriptor.category),
            cached=False,
            cost=0.0,
            degraded_reason=reason,
            **metadata,
        )

    def generate(self, user: UserContext, feature: str, descriptor: PromptDescriptor) -> GenerationResult:
        """Produce text for a prompt, from cache, provider or fallback.

        Args:
            user: Caller being billed and rate limited
            feature: Feature name, used for limits and fallback selection
            descriptor: Prompt and generation parameters

        Returns:
            GenerationResult; degraded results carry cost 0 and a reason

        Raises:
            InvalidRequestError: If the descriptor is malformed
        """
        self._validate(feature, descriptor)

        with structlog.contextvars.bound_contextvars(
            trace_id=uuid.uuid4().hex[:16], user_id=user.user_id, feature=feature
        ):
            # 1-2. Cache hits are free and never count against limits
            key = self.cache.key_for(descriptor.prompt, descriptor.model, descriptor.max_tokens)
            cached_text = self.cache.get(key)
            if cached_text is not None:
                logger.debug("cache_hit", key=key)
                return GenerationResult(text=cached_text, cached=True, cost=0.0)

            # 3. Rate limit before the budget query, it is the cheaper check
            rate_limit = self.rate_limits.limiter_for(user.tier, feature).check(user.user_id)
            if not rate_limit.allowed:
                return self._degrade(
                    feature, descriptor, DegradedReason.RATE_LIMITED,
                    rate_limit=rate_limit, retry_after=rate_limit.retry_after,
                )

            # 4. Budget, against an estimate
            estimated = estimate_cost(
                descriptor.model, descriptor.prompt, descriptor.max_tokens, self.pricing
            )
            decision = self.budget.check(user, feature, estimated)
            if not decision.allowed:
                return self._degrade(
                    feature, descriptor, DegradedReason.BUDGET_EXCEEDED,
                    rate_limit=rate_limit, budget_status=decision.status,
                    extra={"budget_rejection": decision.rejection.value},
                )

            # 5. Provider
            try:
                response = self.provider.complete(ProviderRequest(
                    prompt=descriptor.prompt,
                    model=descriptor.model,
                    max_tokens=descriptor.max_tokens,
                    temperature=descriptor.temperature,
                ))
            except ProviderUnavailable as e:
                # Nothing cached, nothing recorded
                logger.warning("provider_unavailable", provider=self.provider.name, error=str(e))
                return self._degrade(
                    feature, descriptor, DegradedReason.PROVIDER_UNAVAILABLE, rate_limit=rate_limit,
                )

            # 6. Actual cost from provider-reported tokens
            usage = TokenUsage(response.prompt_tokens, response.completion_tokens)
            cost = calculate_cost(descriptor.model, usage, self.pricing)
            model_tier = self.pricing.get_pricing(descriptor.model).tier
            self.cache.set(key, response.text, self.cache.ttl_for(model_tier))
            self.budget.record(
                user,
                actual_cost=cost,
                feature=feature,
                model=descriptor.model,
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                request_id=response.request_id,
            )
            logger.info("generation_completed", cost=cost, estimated_cost=estimated)
            return GenerationResult(
                text=response.text, cached=False, cost=cost, rate_limit=rate_limit
            )

    def rate_limit_status(self, user: UserContext, endpoint: str) -> Dict[str, int]:
        """Remaining calls and window reset time, without counting a call."""
        result = self.rate_limits.limiter_for(user.tier, endpoint).status(user.user_id)
        return {"remaining": result.remaining, "reset_time": result.reset_time}

    def budget_status(self, user: UserContext) -> BudgetStatus:
        return self.budget.status(user)
