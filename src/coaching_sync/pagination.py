from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, tzinfo

from loguru import logger

from coaching_sync.models import Message


class PaginationWindow:
    """Exposes a growable suffix of the full history.

    ``displayed()`` is always ``full_history[-displayed_count:]``. Older
    messages are revealed one page at a time by ``load_more``; messages
    appended at the tail widen the window by the same amount so they stay
    visible without consuming the older-message budget.
    """

    def __init__(
        self,
        *,
        initial_window: int = 30,
        page_size: int = 100,
        throttle_seconds: float = 1.0,
        load_delay_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._initial_window = max(1, initial_window)
        self._page_size = max(1, page_size)
        self._throttle_seconds = max(0.0, throttle_seconds)
        self._load_delay_seconds = max(0.0, load_delay_seconds)
        self._clock = clock
        self._full_history: list[Message] = []
        self._displayed_count = 0
        self._loading = False
        self._last_load_at: float | None = None

    @property
    def full_history(self) -> list[Message]:
        return list(self._full_history)

    @property
    def displayed_count(self) -> int:
        return self._displayed_count

    @property
    def has_more(self) -> bool:
        return self._displayed_count < len(self._full_history)

    @property
    def is_loading(self) -> bool:
        return self._loading

    def displayed(self) -> list[Message]:
        if self._displayed_count == 0:
            return []
        return self._full_history[-self._displayed_count:]

    def initialize(self, full_history: list[Message], initial_window: int | None = None) -> None:
        window = self._initial_window if initial_window is None else max(0, initial_window)
        self._full_history = list(full_history)
        self._displayed_count = min(window, len(self._full_history))
        self._loading = False
        self._last_load_at = None

    def reset(self) -> None:
        self.initialize([])

    async def load_more(self, page_size: int | None = None) -> list[Message]:
        if self._loading:
            logger.debug("load_more ignored: a load is already in flight")
            return self.displayed()
        if not self.has_more:
            return self.displayed()

        now = self._clock()
        if self._last_load_at is not None and now - self._last_load_at < self._throttle_seconds:
            logger.debug(f"load_more throttled ({now - self._last_load_at:.3f}s since last load)")
            return self.displayed()

        self._loading = True
        self._last_load_at = now
        try:
            if self._load_delay_seconds:
                await asyncio.sleep(self._load_delay_seconds)
            step = self._page_size if page_size is None else max(1, page_size)
            self._displayed_count = min(self._displayed_count + step, len(self._full_history))
            logger.debug(f"Window grown to {self._displayed_count}/{len(self._full_history)} messages")
        finally:
            self._loading = False
        return self.displayed()

    def append(self, messages: list[Message]) -> None:
        self._full_history.extend(messages)
        self._displayed_count += len(messages)

    def replace_message(self, message: Message) -> int:
        for index, existing in enumerate(self._full_history):
            if existing.id == message.id:
                self._full_history[index] = message
                return index
        raise ValueError(f"Message not found: {message.id}")

    def replace_history(self, full_history: list[Message]) -> None:
        """Swap in a reconciled history, keeping what the user has already revealed."""
        new_history = list(full_history)
        old_ids = [m.id for m in self._full_history]
        new_ids = [m.id for m in new_history]
        appended = 0
        if old_ids and new_ids[: len(old_ids)] == old_ids:
            appended = len(new_ids) - len(old_ids)
        target = max(self._displayed_count + appended, min(self._initial_window, len(new_history)))
        self._full_history = new_history
        self._displayed_count = min(target, len(new_history))


@dataclass(frozen=True)
class DaySeparator:
    id: str
    day: date


def group_by_day(messages: list[Message], tz: tzinfo | None = None) -> list[Message | DaySeparator]:
    """Insert a separator before the first message of each calendar day."""
    result: list[Message | DaySeparator] = []
    last_day: date | None = None
    for index, message in enumerate(messages):
        day = message.timestamp.astimezone(tz).date()
        if day != last_day:
            result.append(DaySeparator(id=f"separator-{day.isoformat()}-{index}", day=day))
            last_day = day
        result.append(message)
    return result
