from __future__ import annotations

from collections.abc import Callable

from loguru import logger
from tenacity import retry_if_exception_type, stop_after_attempt, wait_exponential

from coaching_sync.models import Message, Role

ContentCallback = Callable[[str], None]


class ContentProducerError(Exception):
    """The coaching backend reported a failure for this turn."""


def _on_retry(retry_state):
    attempt = retry_state.attempt_number
    wait = retry_state.next_action.sleep if retry_state.next_action else 0
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    reason = type(exc).__name__ if exc else "Unknown"
    logger.warning(f"{reason}. Retrying in {wait:.0f}s (attempt {attempt}/5)...")


def default_retry_kwargs(exception_types: tuple[type[Exception], ...]) -> dict:
    return {
        "retry": retry_if_exception_type(exception_types),
        "wait": wait_exponential(multiplier=10, min=10, max=320),
        "stop": stop_after_attempt(5),
        "before_sleep": _on_retry,
        "reraise": True,
    }


def to_chat_messages(history: list[Message]) -> list[dict]:
    """Convert stored history into alternating user/assistant turns.

    Error turns and empty placeholders are dropped, leading assistant turns
    (the greeting) are skipped and consecutive same-role turns are merged.
    """
    result: list[dict] = []
    for message in history:
        if message.is_error or not message.content.strip():
            continue
        if not result and message.role is Role.ASSISTANT:
            continue
        if result and result[-1]["role"] == message.role.value:
            result[-1]["content"] += "\n\n" + message.content
            continue
        result.append({"role": message.role.value, "content": message.content})
    return result
