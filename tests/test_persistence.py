import asyncio
import unittest

from cryptography.fernet import Fernet

from coaching_sync.models import Message, Role, SessionKey, greeting_message, new_message
from coaching_sync.persistence import DebouncedPersistenceQueue, WriteState, write_fingerprint
from coaching_sync.store import LocalCacheStore


class _RecordingStore:
    """Remote store fake that records writes and tracks overlap."""

    def __init__(self, write_seconds: float = 0.0, failures: int = 0):
        self.writes: list[tuple[SessionKey, list[Message]]] = []
        self.write_seconds = write_seconds
        self.failures = failures
        self.active = 0
        self.max_active = 0

    async def upsert_messages(self, key: SessionKey, messages: list[Message]) -> str:
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.write_seconds:
                await asyncio.sleep(self.write_seconds)
            if self.failures:
                self.failures -= 1
                raise ConnectionError("store unavailable")
            self.writes.append((key, list(messages)))
            return "doc-1"
        finally:
            self.active -= 1


def _conversation(turns: int) -> list[Message]:
    messages = [greeting_message("Sam")]
    for i in range(turns):
        messages.append(new_message(Role.USER, f"question {i}"))
        messages.append(new_message(Role.ASSISTANT, f"answer {i}"))
    return messages


class DebouncedPersistenceQueueTests(unittest.TestCase):
    def setUp(self) -> None:
        self.key = SessionKey.default("u1")

    def test_greeting_only_is_never_written(self) -> None:
        store = _RecordingStore()
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.01)

        async def scenario() -> bool:
            scheduled = queue.schedule([greeting_message()], self.key)
            await asyncio.sleep(0.05)
            await queue.drain()
            return scheduled

        self.assertFalse(asyncio.run(scenario()))
        self.assertEqual([], store.writes)

    def test_rapid_schedules_coalesce_into_one_write_with_last_payload(self) -> None:
        store = _RecordingStore()
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.05)
        payloads = [_conversation(i + 1) for i in range(5)]

        async def scenario() -> None:
            for payload in payloads:
                queue.schedule(payload, self.key)
                await asyncio.sleep(0.005)
            self.assertIs(WriteState.SCHEDULED, queue.state_of("u1"))
            await asyncio.sleep(0.1)
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual(1, len(store.writes))
        self.assertEqual([m.id for m in payloads[-1]], [m.id for m in store.writes[0][1]])
        self.assertIs(WriteState.IDLE, queue.state_of("u1"))

    def test_back_to_back_writes_never_overlap(self) -> None:
        store = _RecordingStore(write_seconds=0.05)
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.0)
        first = _conversation(1)
        second = _conversation(2)

        async def scenario() -> None:
            queue.schedule(first, self.key)
            await asyncio.sleep(0.01)
            self.assertTrue(queue.is_writing("u1"))
            queue.schedule(second, self.key)
            await asyncio.sleep(0.01)
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual(1, store.max_active)
        self.assertEqual(2, len(store.writes))
        self.assertEqual([m.id for m in second], [m.id for m in store.writes[-1][1]])

    def test_unchanged_fingerprint_is_skipped_unless_forced(self) -> None:
        store = _RecordingStore()
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.0)
        messages = _conversation(1)

        async def scenario() -> None:
            queue.schedule(messages, self.key)
            await queue.drain()
            queue.schedule(list(messages), self.key)
            await queue.drain()
            edited = messages[:-1] + [messages[-1].with_content("edited")]
            queue.schedule(edited, self.key, force=True)
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual(2, len(store.writes))
        self.assertEqual("edited", store.writes[-1][1][-1].content)

    def test_failed_write_clears_marker_and_is_retried_next_cycle(self) -> None:
        store = _RecordingStore(failures=1)
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.0)
        messages = _conversation(1)

        async def scenario() -> None:
            queue.schedule(messages, self.key)
            await queue.drain()
            self.assertFalse(queue.is_writing("u1"))
            queue.schedule(messages, self.key)
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual(1, len(store.writes))

    def test_users_do_not_block_each_other(self) -> None:
        store = _RecordingStore(write_seconds=0.05)
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.0)

        async def scenario() -> None:
            queue.schedule(_conversation(1), SessionKey.default("u1"))
            queue.schedule(_conversation(1), SessionKey.default("u2"))
            await asyncio.sleep(0.02)
            self.assertTrue(queue.is_writing("u1"))
            self.assertTrue(queue.is_writing("u2"))
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual(2, store.max_active)
        self.assertEqual({"u1", "u2"}, {key.user_id for key, _ in store.writes})

    def test_cancel_drops_pending_payload(self) -> None:
        store = _RecordingStore()
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.05)

        async def scenario() -> None:
            queue.schedule(_conversation(1), self.key)
            await queue.cancel("u1")
            await asyncio.sleep(0.1)

        asyncio.run(scenario())
        self.assertEqual([], store.writes)

    def test_cancel_waits_for_running_write(self) -> None:
        store = _RecordingStore(write_seconds=0.05)
        queue = DebouncedPersistenceQueue(store, delay_seconds=0.0)

        async def scenario() -> None:
            queue.schedule(_conversation(1), self.key)
            await asyncio.sleep(0.01)
            self.assertTrue(queue.is_writing("u1"))
            queue.schedule(_conversation(2), self.key)
            await queue.cancel("u1")
            self.assertEqual(1, len(store.writes))
            self.assertEqual(0, store.active)
            self.assertIs(WriteState.IDLE, queue.state_of("u1"))
            await asyncio.sleep(0.05)

        asyncio.run(scenario())
        self.assertEqual(1, len(store.writes))
        self.assertEqual(3, len(store.writes[0][1]))

    def test_flush_now_and_close(self) -> None:
        store = _RecordingStore()
        queue = DebouncedPersistenceQueue(store, delay_seconds=10.0)

        async def scenario() -> None:
            queue.schedule(_conversation(1), self.key)
            await queue.close()
            self.assertFalse(queue.schedule(_conversation(2), self.key))

        asyncio.run(scenario())
        self.assertEqual(1, len(store.writes))

    def test_write_mirrors_into_local_cache(self) -> None:
        store = _RecordingStore()
        cache = LocalCacheStore.open(":memory:", encryption_key=Fernet.generate_key())
        queue = DebouncedPersistenceQueue(store, cache, delay_seconds=0.0)
        messages = _conversation(2)

        async def scenario() -> None:
            queue.schedule(messages, self.key)
            await queue.drain()

        asyncio.run(scenario())
        self.assertEqual([m.id for m in messages], [m.id for m in cache.load("u1")])
        cache.close()

    def test_fingerprint(self) -> None:
        messages = _conversation(1)
        self.assertEqual(f"u1/default:3:{messages[-1].id}", write_fingerprint(self.key, messages))


if __name__ == "__main__":
    unittest.main()
