"""Inline structured markers embedded in assistant content.

Markers look like ``[type:key="value",other="value"]``. The sync engine stores
them as opaque text; this module is the single place that parses them and
rewrites a specific occurrence when a card changes state.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum

from loguru import logger

FINISH_START = "[finish-start]"
FINISH_END = "[finish-end]"

_MARKER_RE = re.compile(r"\[(\w+):([^\]]+)\]")
_PROP_RE = re.compile(r'(\w+)="([^"]*)"')
_FENCE_RE = re.compile(r"```")
_BLANK_RUN_RE = re.compile(r"\n\s*\n\s*\n")

_MAX_MARKERS = 50
_MAX_PROPS = 20


class MarkerKind(str, Enum):
    MEDITATION = "meditation"
    FOCUS = "focus"
    BLOCKERS = "blockers"
    ACTIONS = "actions"
    COMMITMENT_DETECTED = "commitmentDetected"
    SESSION_SUGGESTION = "sessionSuggestion"
    SESSION = "session"
    SESSION_CARD = "sessionCard"
    INSIGHT = "insight"
    JOURNALING_PROMPT = "journalingPrompt"
    LIFE_COMPASS_UPDATED = "lifeCompassUpdated"
    SESSION_END = "sessionEnd"
    CHECKIN = "checkin"
    UNKNOWN = "unknown"

    @classmethod
    def from_type_name(cls, type_name: str) -> MarkerKind:
        for kind in cls:
            if kind is not cls.UNKNOWN and kind.value == type_name:
                return kind
        return cls.UNKNOWN


@dataclass(frozen=True)
class Marker:
    kind: MarkerKind
    type_name: str
    props: dict[str, str] = field(default_factory=dict)
    occurrence: int = 0
    start: int = 0
    end: int = 0

    @property
    def state(self) -> str | None:
        return self.props.get("state")

    def render(self) -> str:
        return format_marker(self.type_name, self.props)


def parse_props(props_text: str) -> dict[str, str]:
    props: dict[str, str] = {}
    for count, match in enumerate(_PROP_RE.finditer(props_text)):
        if count >= _MAX_PROPS:
            break
        props[match.group(1)] = match.group(2)
    return props


def format_marker(type_name: str, props: dict[str, str]) -> str:
    props_text = ",".join(f'{k}="{v}"' for k, v in props.items())
    return f"[{type_name}:{props_text}]"


def parse_markers(content: str) -> list[Marker]:
    if not content:
        return []

    markers: list[Marker] = []
    occurrences: dict[str, int] = {}
    for match in _MARKER_RE.finditer(content):
        if len(markers) >= _MAX_MARKERS:
            logger.warning(f"Marker limit of {_MAX_MARKERS} reached, remaining markers ignored")
            break
        type_name = match.group(1)
        occurrence = occurrences.get(type_name, 0)
        occurrences[type_name] = occurrence + 1
        markers.append(
            Marker(
                kind=MarkerKind.from_type_name(type_name),
                type_name=type_name,
                props=parse_props(match.group(2)),
                occurrence=occurrence,
                start=match.start(),
                end=match.end(),
            )
        )
    return markers


def _rewrite_occurrence(content: str, type_name: str, occurrence: int, rewrite) -> str:
    pattern = re.compile(rf"\[{re.escape(type_name)}:([^\]]+)\]")
    for index, match in enumerate(pattern.finditer(content)):
        if index == occurrence:
            return content[: match.start()] + rewrite(match) + content[match.end():]
    raise ValueError(f"Marker {type_name!r} occurrence {occurrence} not found")


def update_marker(
    content: str,
    type_name: str,
    occurrence: int,
    *,
    state: str | None = None,
    attributes: dict[str, str] | None = None,
) -> str:
    """Rewrite the props of one marker occurrence; every other byte is kept."""

    def _rewrite(match: re.Match) -> str:
        props = parse_props(match.group(1))
        if state is not None:
            props["state"] = state
        if attributes:
            props.update(attributes)
        return format_marker(type_name, props)

    return _rewrite_occurrence(content, type_name, occurrence, _rewrite)


def replace_marker(content: str, type_name: str, occurrence: int, replacement: str) -> str:
    return _rewrite_occurrence(content, type_name, occurrence, lambda _match: replacement)


def has_finish_token(content: str) -> bool:
    return FINISH_START in content or FINISH_END in content


def parse_finish_block(content: str) -> list[Marker]:
    start = content.find(FINISH_START)
    end = content.find(FINISH_END)
    if start == -1 or end == -1:
        return []
    return parse_markers(content[start + len(FINISH_START):end].strip())


def display_content(content: str) -> str:
    """Text shown to the user: no finish block, markers or code fences."""
    text = content
    start = text.find(FINISH_START)
    end = text.find(FINISH_END)
    if start != -1 and end != -1:
        before = text[:start].strip()
        after = text[end + len(FINISH_END):].strip()
        text = before + ("\n\n" + after if after else "")
    elif start != -1:
        text = text[:start].strip()

    text = _MARKER_RE.sub("", text).strip()
    text = _FENCE_RE.sub("", text).strip()
    text = _BLANK_RUN_RE.sub("\n\n", text)
    return text.strip()
