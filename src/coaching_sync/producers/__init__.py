from coaching_sync.producers.common import ContentCallback, ContentProducerError, default_retry_kwargs, to_chat_messages

__all__ = [
    "ContentCallback",
    "ContentProducerError",
    "default_retry_kwargs",
    "to_chat_messages",
]
