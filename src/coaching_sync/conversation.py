from __future__ import annotations

import asyncio

from loguru import logger

from coaching_sync.coordinator import SyncCoordinator
from coaching_sync.markers import has_finish_token
from coaching_sync.models import Message, Role, SessionKey, new_message
from coaching_sync.producer import ContentProducer


def error_content(error: Exception) -> str:
    return f"Sorry, I encountered an error: {error}.\nPlease try again."


class CoachingConversation:
    """Runs coaching turns against the open session of a ``SyncCoordinator``.

    While a turn streams, the coordinator holds the turn flag so remote
    snapshots cannot overwrite the exchange; the finished turn is persisted
    once when the flag is released.
    """

    def __init__(self, coordinator: SyncCoordinator, producer: ContentProducer):
        self._coordinator = coordinator
        self._producer = producer
        self._turn_task: asyncio.Task | None = None
        self._stop_requested = False
        self.completed = False

    @property
    def is_generating(self) -> bool:
        return self._turn_task is not None

    async def send_message(self, text: str) -> Message:
        text = text.strip()
        if not text:
            raise ValueError("Message text is empty")
        key = self._active_key()
        self._coordinator.begin_turn()
        try:
            self._coordinator.append_message(new_message(Role.USER, text))
            placeholder = new_message(Role.ASSISTANT, "")
            self._coordinator.append_message(placeholder)
        except Exception:
            self._coordinator.end_turn()
            raise
        return await self._run_turn(key, placeholder.id, text)

    async def resend(self, message_id: str) -> Message:
        """Regenerate a failed assistant turn in place."""
        message = self._coordinator.find_message(message_id)
        if not message.is_error:
            raise ValueError(f"Message {message_id} is not a failed turn")
        user_text = message.original_user_message or ""
        key = self._active_key()
        self._coordinator.begin_turn()
        try:
            self._coordinator.update_message(message_id, "", is_error=False)
        except Exception:
            self._coordinator.end_turn()
            raise
        logger.info(f"Retrying failed turn {message_id}")
        return await self._run_turn(key, message_id, user_text)

    def stop_generation(self) -> bool:
        if self._turn_task is None:
            return False
        self._stop_requested = True
        self._turn_task.cancel()
        return True

    def _active_key(self) -> SessionKey:
        key = self._coordinator.active_key
        if key is None:
            raise RuntimeError("No session is open")
        return key

    def _history_before(self, message_id: str) -> list[Message]:
        history: list[Message] = []
        for message in self._coordinator.full_history:
            if message.id == message_id:
                break
            history.append(message)
        return history

    async def _run_turn(self, key: SessionKey, message_id: str, user_text: str) -> Message:
        history = self._history_before(message_id)

        def _on_content(content: str) -> None:
            self._coordinator.update_message(message_id, content)

        self._stop_requested = False
        self._turn_task = asyncio.create_task(
            self._producer.produce(
                key,
                history,
                _on_content,
                title=self._coordinator.session_title,
                goal=self._coordinator.session_goal,
            )
        )
        try:
            content = await self._turn_task
            result = self._coordinator.update_message(message_id, content, is_error=False)
            if has_finish_token(content):
                self.completed = True
                logger.info(f"Conversation {key.describe()} reached its finish block")
        except asyncio.CancelledError:
            if not self._stop_requested:
                raise
            logger.info(f"Generation stopped for message {message_id}")
            result = self._coordinator.find_message(message_id)
        except Exception as ex:
            logger.warning(f"Turn failed for {key.describe()}: {ex}")
            result = self._coordinator.update_message(
                message_id,
                error_content(ex),
                is_error=True,
                original_user_message=user_text,
            )
        finally:
            self._turn_task = None
            self._stop_requested = False
            self._coordinator.end_turn()
        return result
