from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from enum import Enum
from uuid import uuid4

GREETING_MESSAGE_ID = "1"
BREAKOUT_SESSION_PREFIX = "session_"

_INVALID_USER_IDS = {"", "anonymous"}


def utc_now() -> datetime:
    return datetime.now(UTC)


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class SessionKind(str, Enum):
    DEFAULT = "default"
    BREAKOUT = "breakout"


@dataclass(frozen=True, eq=False)
class Message:
    """A single chat entry. Identity is the ``id`` alone."""

    id: str
    role: Role
    content: str
    timestamp: datetime
    is_error: bool = False
    original_user_message: str | None = None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Message):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def with_content(
        self,
        content: str,
        *,
        is_error: bool | None = None,
        original_user_message: str | None = None,
    ) -> Message:
        if self.role is not Role.ASSISTANT:
            raise ValueError(f"Only assistant messages can be edited (message {self.id} is {self.role.value})")
        return replace(
            self,
            content=content,
            is_error=self.is_error if is_error is None else is_error,
            original_user_message=(
                original_user_message if original_user_message is not None else self.original_user_message
            ),
        )

    def to_dict(self) -> dict:
        data: dict = {
            "id": self.id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.is_error:
            data["isError"] = True
        if self.original_user_message is not None:
            data["originalUserMessage"] = self.original_user_message
        return data

    @classmethod
    def from_dict(cls, data: dict, index: int = 0) -> Message:
        return cls(
            id=str(data.get("id") or f"msg_{index}"),
            role=Role.USER if data.get("role") == "user" else Role.ASSISTANT,
            content=str(data.get("content") or ""),
            timestamp=parse_timestamp(data.get("timestamp")),
            is_error=bool(data.get("isError", False)),
            original_user_message=data.get("originalUserMessage"),
        )


def parse_timestamp(value: object) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    if isinstance(value, dict) and "seconds" in value:
        value = value["seconds"]
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            return utc_now()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond epochs are what JavaScript clients write.
        seconds = value / 1000 if value > 1e11 else value
        try:
            return datetime.fromtimestamp(float(seconds), UTC)
        except (OverflowError, OSError, ValueError):
            return utc_now()
    if isinstance(value, str) and value.strip():
        try:
            parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
        except ValueError:
            return utc_now()
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)
    return utc_now()


def new_message(role: Role, content: str) -> Message:
    return Message(id=str(uuid4()), role=role, content=content, timestamp=utc_now())


def messages_to_dicts(messages: list[Message]) -> list[dict]:
    return [m.to_dict() for m in messages]


def messages_from_dicts(items: object) -> list[Message]:
    if not isinstance(items, list):
        raise ValueError("Message payload must be a list")
    return [Message.from_dict(item, index) for index, item in enumerate(items) if isinstance(item, dict)]


def validate_user_id(user_id: str | None) -> str:
    if user_id is None or user_id.strip() in _INVALID_USER_IDS:
        raise ValueError(f"Invalid user id: {user_id!r}")
    return user_id


@dataclass(frozen=True)
class SessionKey:
    """Addresses one session document: the user's default session or one breakout."""

    user_id: str
    kind: SessionKind = SessionKind.DEFAULT
    session_id: str | None = None

    def __post_init__(self) -> None:
        validate_user_id(self.user_id)
        if self.kind is SessionKind.DEFAULT:
            if self.session_id is not None:
                raise ValueError("Default sessions are addressed by user id only")
            return
        if not self.session_id or not self.session_id.startswith(BREAKOUT_SESSION_PREFIX):
            raise ValueError(f"Invalid breakout session id: {self.session_id!r}")
        if self.session_id == self.user_id:
            raise ValueError("Breakout session id must not reuse the user id")

    @classmethod
    def default(cls, user_id: str) -> SessionKey:
        return cls(user_id=user_id)

    @classmethod
    def breakout(cls, user_id: str, session_id: str) -> SessionKey:
        return cls(user_id=user_id, kind=SessionKind.BREAKOUT, session_id=session_id)

    def describe(self) -> str:
        if self.kind is SessionKind.DEFAULT:
            return f"{self.user_id}/default"
        return f"{self.user_id}/{self.session_id}"


@dataclass(frozen=True)
class SessionSnapshot:
    document_id: str
    user_id: str
    kind: SessionKind
    messages: list[Message]
    created_at: str
    updated_at: str
    parent_session_id: str | None = None
    title: str | None = None
    goal: str | None = None


@dataclass(frozen=True)
class FetchResult:
    exists: bool
    messages: list[Message] = field(default_factory=list)
    snapshot: SessionSnapshot | None = None

    @classmethod
    def missing(cls) -> FetchResult:
        return cls(exists=False)


def greeting_message(first_name: str | None = None) -> Message:
    return Message(
        id=GREETING_MESSAGE_ID,
        role=Role.ASSISTANT,
        content=(
            f"Hello {first_name or 'there'}!\n\n"
            "I'm here to support your growth and reflection. What's on your mind today? "
            "Feel free to share anything that's weighing on you, exciting you, or simply "
            "present in your awareness right now."
        ),
        timestamp=utc_now(),
    )


def breakout_greeting(session_id: str, *, title: str | None = None, goal: str | None = None) -> Message:
    if title or goal:
        goal_line = f"Goal: {goal}\n\n" if goal else ""
        content = (
            f"Welcome to your breakout session: {title or 'Focused Coaching'}\n\n"
            f"{goal_line}"
            "I'm here to help you dive deeper into this specific topic. What would you like to explore?"
        )
    else:
        content = "What's on your mind?"
    return Message(id=f"initial-{session_id}", role=Role.ASSISTANT, content=content, timestamp=utc_now())


def has_user_message(messages: list[Message]) -> bool:
    return any(m.role is Role.USER for m in messages)
