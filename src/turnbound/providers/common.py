from __future__ import annotations

from loguru import logger
from tenacity import RetryCallState, retry_if_exception_type, stop_after_attempt, wait_exponential

_MAX_ATTEMPTS = 5


def _on_retry(retry_state: RetryCallState) -> None:
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/{_MAX_ATTEMPTS})...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(_MAX_ATTEMPTS),
        "before_sleep": _on_retry,
        "reraise": True,
    }
