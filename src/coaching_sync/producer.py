from typing import Protocol, runtime_checkable

from coaching_sync.models import Message, SessionKey
from coaching_sync.producers.common import ContentCallback


@runtime_checkable
class ContentProducer(Protocol):
    async def produce(
        self,
        key: SessionKey,
        history: list[Message],
        on_content: ContentCallback,
        *,
        title: str | None = None,
        goal: str | None = None,
    ) -> str:
        """Generate the assistant reply to the last user message in ``history``.

        ``on_content`` receives the accumulated text after every streamed
        chunk. ``title`` and ``goal`` describe the focus of a breakout
        session. Returns the final content.
        """
        ...


def create_content_producer(
    provider_name: str,
    api_key: str,
    *,
    model: str = "",
    max_tokens: int = 4096,
    temperature: float = 1.0,
    system_prompt: str = "",
    base_url: str = "",
) -> ContentProducer:
    """Factory: create a ContentProducer by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from coaching_sync.producers.anthropic_producer import AnthropicContentProducer
        return AnthropicContentProducer(
            api_key,
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system_prompt=system_prompt,
        )
    if name == "coaching_api":
        from coaching_sync.producers.coaching_api_producer import CoachingApiProducer
        return CoachingApiProducer(base_url, api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'coaching_api'")
