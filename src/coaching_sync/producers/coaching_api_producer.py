import json

import httpx
from loguru import logger
from tenacity import retry

from coaching_sync.models import Message, Role, SessionKey, SessionKind
from coaching_sync.producers.common import (
    ContentCallback,
    ContentProducerError,
    default_retry_kwargs,
    to_chat_messages,
)


class CoachingApiProducer:
    """Streams replies from the hosted coaching backend over server-sent events."""

    def __init__(self, base_url: str, token: str, *, client: httpx.AsyncClient | None = None, timeout: float = 120.0):
        self._url = f"{base_url.rstrip('/')}/api/coaching/chat"
        self._token = token
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def close(self) -> None:
        await self._client.aclose()

    @retry(**default_retry_kwargs((httpx.TransportError,)))
    async def produce(
        self,
        key: SessionKey,
        history: list[Message],
        on_content: ContentCallback,
        *,
        title: str | None = None,
        goal: str | None = None,
    ) -> str:
        # The backend resolves a breakout's topic from its session id.
        user_turns = [m for m in history if m.role is Role.USER]
        if not user_turns:
            raise ValueError("History must contain a user message")
        body = {
            "message": user_turns[-1].content,
            "sessionId": key.session_id or key.user_id,
            "sessionType": "breakout-session" if key.kind is SessionKind.BREAKOUT else "default-session",
            "conversationHistory": to_chat_messages(history[:-1]),
        }
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._token}",
        }

        content = ""
        async with self._client.stream("POST", self._url, json=body, headers=headers) as response:
            if response.status_code >= 400:
                error_text = (await response.aread()).decode("utf-8", errors="replace")
                raise ContentProducerError(f"API Error: {response.status_code} - {error_text}")
            async for line in response.aiter_lines():
                if not line.startswith("data: "):
                    continue
                try:
                    data = json.loads(line[6:])
                except json.JSONDecodeError:
                    logger.warning(f"Skipping unparseable stream line: {line[:200]}")
                    continue

                event_type = data.get("type")
                if event_type == "content":
                    content += str(data.get("content", ""))
                    on_content(content)
                elif event_type == "done":
                    break
                elif event_type == "error":
                    raise ContentProducerError(data.get("error") or "Streaming error occurred")

        logger.debug(f"Coaching API reply for {key.describe()}: {len(content)} chars")
        return content
