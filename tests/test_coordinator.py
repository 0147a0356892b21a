import asyncio
import unittest

from cryptography.fernet import Fernet

from coaching_sync.app_config import SyncSettings
from coaching_sync.coordinator import SyncCoordinator, SyncState
from coaching_sync.models import GREETING_MESSAGE_ID, Role, SessionKey, SessionKind, new_message
from coaching_sync.store import REMOTE_SCHEMA, LocalCacheStore, SqliteDatabase, SqliteSessionStore
from tests.store.base import make_messages


class _CountingStore(SqliteSessionStore):
    def __init__(self, db, *, fetch_delay: float = 0.0, fail_fetch: bool = False):
        super().__init__(db)
        self.fetch_calls = 0
        self.upserts = 0
        self.fetch_delay = fetch_delay
        self.fail_fetch = fail_fetch
        self.write_delay = 0.0
        self.write_failures = 0

    async def fetch_session(self, key):
        self.fetch_calls += 1
        if self.fetch_delay:
            await asyncio.sleep(self.fetch_delay)
        if self.fail_fetch:
            raise ConnectionError("offline")
        return await super().fetch_session(key)

    async def upsert_messages(self, key, messages):
        self.upserts += 1
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.write_failures:
            self.write_failures -= 1
            raise ConnectionError("store unavailable")
        return await super().upsert_messages(key, messages)


SETTINGS = SyncSettings(
    initial_window=30,
    page_size=100,
    load_throttle_seconds=1.0,
    debounce_seconds=0.05,
    cache_max_messages=300,
)


class SyncCoordinatorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.remote = _CountingStore(SqliteDatabase(":memory:", REMOTE_SCHEMA))
        self.cache = LocalCacheStore.open(":memory:", encryption_key=Fernet.generate_key())
        self.displays: list[list[str]] = []
        self.coordinator = SyncCoordinator(
            self.remote,
            self.cache,
            settings=SETTINGS,
            first_name="Sam",
            on_display_changed=lambda messages: self.displays.append([m.id for m in messages]),
        )
        self.key = SessionKey.default("u1")

    def tearDown(self) -> None:
        self.remote.close()
        self.cache.close()

    async def _wait_until_writing(self, user_id: str = "u1") -> None:
        for _ in range(100):
            if self.coordinator.persistence.is_writing(user_id):
                return
            await asyncio.sleep(0.005)
        self.fail("write never started")

    def _run(self, scenario):
        async def _wrapped():
            try:
                return await scenario()
            finally:
                await self.coordinator.close()

        return asyncio.run(_wrapped())

    def test_first_message_after_greeting_is_persisted_once(self) -> None:
        async def scenario() -> None:
            displayed = await self.coordinator.open_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in displayed])
            self.assertIs(SyncState.READY, self.coordinator.state)

            await asyncio.sleep(0.1)
            self.assertEqual(0, self.remote.upserts)

            hello = new_message(Role.USER, "Hello")
            self.coordinator.append_message(hello)
            await asyncio.sleep(0.1)
            await self.coordinator.persistence.drain()

            self.assertEqual(1, self.remote.upserts)
            stored = await self.remote.fetch_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID, hello.id], [m.id for m in stored.messages])
            self.assertEqual([GREETING_MESSAGE_ID, hello.id], [m.id for m in self.cache.load("u1")])

        self._run(scenario)

    def test_existing_session_seeds_window_and_cache(self) -> None:
        history = make_messages(50)

        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, history)
            displayed = await self.coordinator.open_session(self.key)
            self.assertEqual([m.id for m in history[-30:]], [m.id for m in displayed])
            self.assertTrue(self.coordinator.has_more)
            self.assertEqual(50, len(self.cache.load("u1")))

            more = await self.coordinator.load_more()
            self.assertEqual(50, len(more))
            self.assertFalse(self.coordinator.has_more)

        self._run(scenario)

    def test_cached_messages_paint_before_remote_resolves(self) -> None:
        cached = make_messages(4, prefix="c")
        self.cache.save("u1", cached)
        self.remote.fetch_delay = 0.05

        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, make_messages(6, prefix="r"))
            await self.coordinator.open_session(self.key)

        self._run(scenario)
        self.assertEqual([m.id for m in cached], self.displays[0])
        self.assertEqual("r5", self.displays[-1][-1])
        self.assertEqual("r0", self.cache.load("u1")[0].id)

    def test_missing_session_clears_stale_cache(self) -> None:
        self.cache.save("u1", make_messages(4, prefix="stale"))

        async def scenario() -> None:
            displayed = await self.coordinator.open_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in displayed])

        self._run(scenario)
        self.assertEqual([], self.cache.load("u1"))

    def test_fetch_failure_degrades_to_greeting(self) -> None:
        self.remote.fail_fetch = True

        async def scenario() -> None:
            displayed = await self.coordinator.open_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in displayed])
            self.assertIn("Sam", displayed[0].content)
            self.assertIs(SyncState.READY, self.coordinator.state)

        self._run(scenario)

    def test_concurrent_opens_are_coalesced(self) -> None:
        self.remote.fetch_delay = 0.02

        async def scenario() -> None:
            await asyncio.gather(
                self.coordinator.open_session(self.key),
                self.coordinator.open_session(self.key),
            )

        self._run(scenario)
        self.assertEqual(1, self.remote.fetch_calls)
        self.assertIs(SyncState.READY, self.coordinator.state)

    def test_remote_change_from_another_device_is_reconciled(self) -> None:
        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, make_messages(4))
            await self.coordinator.open_session(self.key)
            await self.remote.upsert_messages(self.key, make_messages(6))
            await asyncio.sleep(0.02)
            self.assertEqual(6, len(self.coordinator.full_history))
            self.assertEqual("m5", self.coordinator.displayed()[-1].id)

        self._run(scenario)

    def test_remote_change_during_turn_is_not_applied(self) -> None:
        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, make_messages(4))
            await self.coordinator.open_session(self.key)
            self.coordinator.begin_turn()
            local = new_message(Role.USER, "mine")
            self.coordinator.append_message(local)
            await self.remote.upsert_messages(self.key, make_messages(2, prefix="other"))
            await asyncio.sleep(0.02)
            self.assertEqual(local.id, self.coordinator.displayed()[-1].id)
            self.assertEqual(5, len(self.coordinator.full_history))

            self.coordinator.end_turn()
            await asyncio.sleep(0.1)
            await self.coordinator.persistence.drain()
            stored = await self.remote.fetch_session(self.key)
            self.assertEqual(local.id, stored.messages[-1].id)

        self._run(scenario)

    def test_marker_update_is_persisted(self) -> None:
        history = make_messages(2)
        content = 'Try [focus:focus="Sleep",state="pending"]'
        history[0] = history[0].with_content(content)

        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, history)
            await self.coordinator.open_session(self.key)
            updated = self.coordinator.update_marker(history[0].id, "focus", 0, state="accepted")
            self.assertEqual(history[0].id, updated.id)
            await asyncio.sleep(0.1)
            await self.coordinator.persistence.drain()
            stored = await self.remote.fetch_session(self.key)
            self.assertEqual('Try [focus:focus="Sleep",state="accepted"]', stored.messages[0].content)

        self._run(scenario)

    def test_append_rejects_duplicates_and_closed_sessions(self) -> None:
        message = new_message(Role.USER, "hi")
        with self.assertRaises(RuntimeError):
            self.coordinator.append_message(message)

        async def scenario() -> None:
            await self.coordinator.open_session(self.key)
            self.coordinator.append_message(message)
            with self.assertRaises(ValueError):
                self.coordinator.append_message(message)

        self._run(scenario)

    def test_switch_user_tears_down_session(self) -> None:
        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, make_messages(4))
            await self.coordinator.open_session(self.key)
            self.assertEqual(4, len(self.cache.load("u1")))

            await self.coordinator.open_session(SessionKey.default("u2"))
            self.assertEqual([], self.cache.load("u1"))
            self.assertEqual(SessionKey.default("u2"), self.coordinator.listener.active_key)

            await self.coordinator.logout()
            self.assertIs(SyncState.UNINITIALIZED, self.coordinator.state)
            self.assertIsNone(self.coordinator.listener.active_key)
            self.assertEqual([], self.coordinator.displayed())

        self._run(scenario)

    def test_reset_clears_remote_and_cache(self) -> None:
        async def scenario() -> None:
            await self.remote.upsert_messages(self.key, make_messages(4))
            await self.coordinator.open_session(self.key)
            displayed = await self.coordinator.reset_session()
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in displayed])
            self.assertFalse((await self.remote.fetch_session(self.key)).exists)
            self.assertEqual([], self.cache.load("u1"))
            self.assertIs(SyncState.READY, self.coordinator.state)

        self._run(scenario)

    def test_spawn_breakout_links_parent_document(self) -> None:
        async def scenario() -> None:
            parent_id = await self.remote.upsert_messages(self.key, make_messages(4))
            await self.coordinator.open_session(self.key)
            breakout = await self.coordinator.spawn_breakout(title="Sleep", goal="Rest")
            self.assertIs(SessionKind.BREAKOUT, breakout.kind)

            displayed = await self.coordinator.open_session(breakout)
            self.assertEqual([f"initial-{breakout.session_id}"], [m.id for m in displayed])
            self.assertIn("Sleep", displayed[0].content)
            snapshot = (await self.remote.fetch_session(breakout)).snapshot
            self.assertEqual(parent_id, snapshot.parent_session_id)
            self.assertEqual(4, len(self.cache.load("u1")))

        self._run(scenario)


    def test_reset_waits_for_running_write_before_deleting(self) -> None:
        async def scenario() -> None:
            await self.coordinator.open_session(self.key)
            self.remote.write_delay = 0.1
            self.coordinator.append_message(new_message(Role.USER, "Hello"))
            await self._wait_until_writing()

            displayed = await self.coordinator.reset_session()
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in displayed])
            self.assertFalse((await self.remote.fetch_session(self.key)).exists)

            await asyncio.sleep(0.15)
            self.assertFalse((await self.remote.fetch_session(self.key)).exists)
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in self.coordinator.displayed()])
            self.assertEqual([], self.cache.load("u1"))
            self.assertEqual(self.key, self.coordinator.listener.active_key)

        self._run(scenario)

    def test_echo_of_earlier_write_does_not_revert_local_edit(self) -> None:
        history = make_messages(2)
        history[0] = history[0].with_content('Try [focus:focus="Sleep",state="pending"]')
        accepted = 'Try [focus:focus="Sleep",state="accepted"]'

        async def scenario() -> list[str]:
            await self.remote.upsert_messages(self.key, history)
            await self.coordinator.open_session(self.key)
            self.remote.write_delay = 0.1
            self.coordinator.append_message(new_message(Role.USER, "first"))
            await self._wait_until_writing()

            self.coordinator.update_marker(history[0].id, "focus", 0, state="accepted")
            seen = []
            for _ in range(30):
                seen.append(self.coordinator.full_history[0].content)
                await asyncio.sleep(0.01)
            await self.coordinator.persistence.drain()
            await asyncio.sleep(0.02)
            seen.append(self.coordinator.full_history[0].content)

            stored = await self.remote.fetch_session(self.key)
            self.assertEqual(accepted, stored.messages[0].content)
            self.assertEqual(accepted, self.cache.load("u1")[0].content)
            return seen

        seen = self._run(scenario)
        self.assertEqual({accepted}, set(seen))

    def test_failed_write_keeps_optimistic_state(self) -> None:
        self.remote.write_failures = 1

        async def scenario() -> None:
            await self.coordinator.open_session(self.key)
            hello = new_message(Role.USER, "Hello")
            self.coordinator.append_message(hello)
            await asyncio.sleep(0.1)
            await self.coordinator.persistence.drain()

            self.assertEqual(1, self.remote.upserts)
            self.assertFalse((await self.remote.fetch_session(self.key)).exists)
            self.assertEqual([GREETING_MESSAGE_ID, hello.id], [m.id for m in self.coordinator.displayed()])
            self.assertIs(SyncState.READY, self.coordinator.state)

            again = new_message(Role.USER, "Still there?")
            self.coordinator.append_message(again)
            await asyncio.sleep(0.1)
            await self.coordinator.persistence.drain()
            stored = await self.remote.fetch_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID, hello.id, again.id], [m.id for m in stored.messages])

        self._run(scenario)

    def test_switch_user_flushes_pending_write_before_clearing(self) -> None:
        async def scenario() -> None:
            await self.coordinator.open_session(self.key)
            hello = new_message(Role.USER, "Hello")
            self.coordinator.append_message(hello)
            self.assertEqual(0, self.remote.upserts)

            await self.coordinator.open_session(SessionKey.default("u2"))
            stored = await self.remote.fetch_session(self.key)
            self.assertEqual([GREETING_MESSAGE_ID, hello.id], [m.id for m in stored.messages])
            self.assertEqual([], self.cache.load("u1"))
            self.assertEqual([GREETING_MESSAGE_ID], [m.id for m in self.coordinator.displayed()])

        self._run(scenario)


if __name__ == "__main__":
    unittest.main()
