"""
Best-effort side effects.

Cache invalidation, realtime broadcasts, media mirroring and the AI-agent
callback must never turn a persisted message into a failed request. They run
through ``run_side_effect``, which records what happened in a
``SideEffectOutcome`` and logs failures instead of raising.
"""
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import structlog

log = structlog.get_logger(__name__)


@dataclass
class SideEffectOutcome:
    name: str
    ok: bool
    attempts: int
    error: str | None = None
    result: Any = None


async def run_side_effect(
    name: str,
    fn: Callable[[], Awaitable[Any]],
    *,
    attempts: int = 1,
    **context,
) -> SideEffectOutcome:
    """Await ``fn()`` up to ``attempts`` times. Only pass attempts > 1 for idempotent effects."""
    error = None
    for attempt in range(1, attempts + 1):
        try:
            result = await fn()
            return SideEffectOutcome(name=name, ok=True, attempts=attempt, result=result)
        except Exception as exc:
            error = f"{exc.__class__.__name__}: {exc}"
            log.warning("side_effect_failed", side_effect=name, attempt=attempt, error=error, **context)
    return SideEffectOutcome(name=name, ok=False, attempts=attempts, error=error)
