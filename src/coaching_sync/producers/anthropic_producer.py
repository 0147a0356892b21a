import anthropic
from loguru import logger
from tenacity import retry

from coaching_sync.models import Message, SessionKey
from coaching_sync.producers.common import ContentCallback, default_retry_kwargs, to_chat_messages
from coaching_sync.system_prompt import with_session_focus


class AnthropicContentProducer:
    def __init__(
        self,
        api_key: str,
        *,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
    ):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)
        self._model = model
        self._max_tokens = max_tokens
        self._temperature = temperature
        self._system_prompt = system_prompt

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def produce(
        self,
        key: SessionKey,
        history: list[Message],
        on_content: ContentCallback,
        *,
        title: str | None = None,
        goal: str | None = None,
    ) -> str:
        """Stream the assistant reply, reporting the accumulated text after each delta."""
        messages = to_chat_messages(history)
        if not messages or messages[-1]["role"] != "user":
            raise ValueError("History must end with a user message")

        logger.debug(
            f"API request: model={self._model}, max_tokens={self._max_tokens}, "
            f"messages={len(messages)}, session={key.describe()}"
        )
        content = ""
        async with self._client.messages.stream(
            model=self._model,
            max_tokens=self._max_tokens,
            temperature=self._temperature,
            system=with_session_focus(self._system_prompt, title=title, goal=goal),
            messages=messages,
        ) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    content += event.delta.text
                    on_content(content)

            response = await stream.get_final_message()

        usage = response.usage
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )
        return content
