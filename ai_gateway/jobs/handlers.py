"""
Job handlers for deferred generation.

Every handler loops over the users named in its payload and calls the
gateway once per user. A failure for one user is recorded in the outcome and
never stops the loop. Degraded (fallback) generations count as failures here:
deferred results are persisted, and a canned template must not be stored as
if it were personalized content.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

import structlog

from ai_gateway.core.budget import UserContext
from ai_gateway.core.errors import GatewayError, InvalidPayloadError, JobFailed
from ai_gateway.core.gateway import GenerationResult, InferenceGateway, PromptDescriptor
from .queue import JobType

logger = structlog.get_logger()

MAX_BATTLE_TASKS = 5
MAX_CUSTOM_HINTS = 3


class ResultSink(Protocol):
    """Where generated content goes (the application's user store)."""

    def store(self, job_type: str, user_id: str, result: Dict[str, Any]) -> None: ...


class MemoryResultSink:
    """Keeps results in a dict; for tests and embedding callers."""

    def __init__(self):
        self.results: Dict[str, Dict[str, Dict[str, Any]]] = {}

    def store(self, job_type: str, user_id: str, result: Dict[str, Any]) -> None:
        self.results.setdefault(job_type, {})[user_id] = result


@dataclass
class HandlerOutcome:
    """Per-user results of one job."""
    total: int = 0
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)

    @property
    def has_failures(self) -> bool:
        return bool(self.failed)

    def summary(self) -> str:
        text = f"{len(self.succeeded)}/{self.total} users succeeded"
        if self.failed:
            shown = ", ".join(f"{uid} ({reason})" for uid, reason in list(self.failed.items())[:10])
            more = len(self.failed) - 10
            text += f"; failed: {shown}" + (f" and {more} more" if more > 0 else "")
        return text


@dataclass(frozen=True)
class BatchUser:
    context: UserContext
    fields: Dict[str, Any]


def parse_users(payload: Dict[str, Any]) -> List[BatchUser]:
    """Validate the payload's `users` list.

    Raises:
        InvalidPayloadError: If users are missing, malformed or repeated
    """
    users = payload.get("users")
    if not isinstance(users, list) or not users:
        raise InvalidPayloadError("payload.users must be a non-empty list")

    parsed = []
    seen = set()
    for index, entry in enumerate(users):
        if not isinstance(entry, dict) or "user_id" not in entry:
            raise InvalidPayloadError(f"payload.users[{index}] must be an object with a user_id")
        user_id = str(entry["user_id"])
        if user_id in seen:
            raise InvalidPayloadError(f"payload.users[{index}]: duplicate user_id {user_id}")
        seen.add(user_id)
        try:
            context = UserContext(user_id=user_id, tier=entry.get("tier", "free"))
        except GatewayError as e:
            raise InvalidPayloadError(f"payload.users[{index}]: {e}") from e
        fields = {k: v for k, v in entry.items() if k not in ("user_id", "tier")}
        parsed.append(BatchUser(context=context, fields=fields))
    return parsed


def _require_craving(payload: Dict[str, Any]) -> str:
    craving = payload.get("craving")
    if not isinstance(craving, str) or not craving.strip():
        raise InvalidPayloadError("payload.craving is required")
    return craving


def _lines(text: str) -> List[str]:
    return [line.strip() for line in text.split("\n") if line.strip()]


def _run_per_user(
    users: List[BatchUser],
    job_type: JobType,
    generate_one: Callable[[BatchUser], GenerationResult],
    build_result: Callable[[BatchUser, GenerationResult], Dict[str, Any]],
    sink: ResultSink
) -> HandlerOutcome:
    outcome = HandlerOutcome(total=len(users))
    for user in users:
        user_id = user.context.user_id
        try:
            result = generate_one(user)
            if result.degraded:
                outcome.failed[user_id] = result.degraded_reason.value
                logger.warning("batch_user_degraded", job_type=job_type.value, user_id=user_id,
                               reason=result.degraded_reason.value)
                continue
            sink.store(job_type.value, user_id, build_result(user, result))
            outcome.succeeded.append(user_id)
        except Exception as e:
            outcome.failed[user_id] = f"{type(e).__name__}: {e}"
            logger.exception("batch_user_failed", job_type=job_type.value, user_id=user_id)
    return outcome


def handle_onboarding_personalization(
    gateway: InferenceGateway, sink: ResultSink, payload: Dict[str, Any]
) -> HandlerOutcome:
    """Intro message and day 1-3 hints for new users of one craving type."""
    craving = _require_craving(payload)
    users = parse_users(payload)

    def generate_one(user: BatchUser) -> GenerationResult:
        descriptor = PromptDescriptor.from_template(
            "onboarding_personalization",
            answers=json.dumps(user.fields.get("answers", {}), sort_keys=True),
            craving=craving,
        )
        return gateway.generate(user.context, "onboarding_personalization", descriptor)

    def build_result(user: BatchUser, result: GenerationResult) -> Dict[str, Any]:
        lines = _lines(result.text)
        return {
            "intro_message": lines[0] if lines else result.text,
            "custom_hints": lines[1:1 + MAX_CUSTOM_HINTS],
            "cost": result.cost,
            "cached": result.cached,
        }

    return _run_per_user(users, JobType.ONBOARDING_PERSONALIZATION, generate_one, build_result, sink)


def handle_user_summary(
    gateway: InferenceGateway, sink: ResultSink, payload: Dict[str, Any]
) -> HandlerOutcome:
    """Short progress summary per user."""
    users = parse_users(payload)
    default_craving = payload.get("craving", "habit")

    def generate_one(user: BatchUser) -> GenerationResult:
        descriptor = PromptDescriptor.from_template(
            "user_summary",
            level=user.fields.get("current_level", 1),
            streak=user.fields.get("streak_count", 0),
            craving=user.fields.get("craving", default_craving),
        )
        return gateway.generate(user.context, "user_summary", descriptor)

    def build_result(user: BatchUser, result: GenerationResult) -> Dict[str, Any]:
        return {"summary": result.text, "cost": result.cost, "cached": result.cached}

    return _run_per_user(users, JobType.USER_SUMMARY, generate_one, build_result, sink)


def handle_battle_tasks(
    gateway: InferenceGateway, sink: ResultSink, payload: Dict[str, Any]
) -> HandlerOutcome:
    """Battle task sets per user. Users sharing a craving share a cache entry."""
    craving = _require_craving(payload)
    users = parse_users(payload)
    descriptor = PromptDescriptor.from_template("battle_tasks", craving=craving)

    def generate_one(user: BatchUser) -> GenerationResult:
        return gateway.generate(user.context, "battle_task_generation", descriptor)

    def build_result(user: BatchUser, result: GenerationResult) -> Dict[str, Any]:
        return {
            "craving": craving,
            "tasks": _lines(result.text)[:MAX_BATTLE_TASKS],
            "cost": result.cost,
            "cached": result.cached,
        }

    return _run_per_user(users, JobType.BATTLE_TASKS, generate_one, build_result, sink)


Handler = Callable[[InferenceGateway, ResultSink, Dict[str, Any]], HandlerOutcome]

HANDLERS: Dict[str, Handler] = {
    JobType.ONBOARDING_PERSONALIZATION.value: handle_onboarding_personalization,
    JobType.USER_SUMMARY.value: handle_user_summary,
    JobType.BATTLE_TASKS.value: handle_battle_tasks,
}


def get_handler(job_type: str) -> Optional[Handler]:
    return HANDLERS.get(job_type)


def run_job(
    gateway: InferenceGateway, sink: ResultSink, job_type: str, payload: Dict[str, Any]
) -> HandlerOutcome:
    """Dispatch a job payload to its handler.

    Args:
        gateway: Gateway used for every generation
        sink: Destination for generated results
        job_type: One of JobType's values
        payload: The job's payload

    Returns:
        HandlerOutcome for the job

    Raises:
        InvalidPayloadError: If the job type is unknown or the payload is malformed
        JobFailed: If the payload is strict and any user failed
    """
    handler = get_handler(job_type)
    if handler is None:
        raise InvalidPayloadError(f"Unknown job type: {job_type}")

    outcome = handler(gateway, sink, payload)
    if payload.get("strict", False) and outcome.has_failures:
        raise JobFailed(outcome.summary())
    return outcome
