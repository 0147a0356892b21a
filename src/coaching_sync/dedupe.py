from __future__ import annotations

from coaching_sync.models import Message


def dedupe(messages: list[Message]) -> list[Message]:
    """Keep the first occurrence of every message id, preserving order."""
    seen: set[str] = set()
    result: list[Message] = []
    for message in messages:
        if message.id in seen:
            continue
        seen.add(message.id)
        result.append(message)
    return result


def same_history(left: list[Message], right: list[Message]) -> bool:
    """True when both sequences hold the same ids in the same order with the same content."""
    if len(left) != len(right):
        return False
    for a, b in zip(left, right):
        if a.id != b.id or a.content != b.content or a.is_error != b.is_error:
            return False
    return True
