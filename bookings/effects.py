import logging
from dataclasses import dataclass
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SideEffectResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    skipped: bool = False

    @classmethod
    def success(cls, value=None):
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error):
        return cls(ok=False, error=str(error))

    @classmethod
    def skip(cls, reason):
        return cls(ok=False, error=reason, skipped=True)


def best_effort(description, func, *args, **kwargs) -> SideEffectResult:
    """Run ``func`` and turn any exception into a failed result."""
    try:
        return SideEffectResult.success(func(*args, **kwargs))
    except Exception as e:
        logger.warning("%s failed: %s", description, e, exc_info=True)
        return SideEffectResult.failure(e)


def log_result(description, result: SideEffectResult, booking_id=None):
    if result.ok:
        logger.info("%s succeeded (booking=%s)", description, booking_id)
    elif result.skipped:
        logger.info("%s skipped (booking=%s): %s", description, booking_id, result.error)
    else:
        logger.warning("%s failed (booking=%s): %s", description, booking_id, result.error)
    return result
