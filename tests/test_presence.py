import unittest
from datetime import datetime, timezone

from chatsync.models import PresenceRecord, presence_path
from chatsync.presence import (
    BLUR,
    FOCUS,
    VISIBILITY,
    AppLifecycle,
    PresenceConfig,
    PresenceManager,
    format_last_seen,
)

from tests.fakes import FakeClock, FlakyStore


class PresencePublishTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = FlakyStore(now_func=self.clock.now)
        self.presence = PresenceManager(self.store, "alice", "Alice", PresenceConfig(), now_func=self.clock.now)

    async def asyncTearDown(self):
        await self.presence.close()

    async def test_repeated_online_writes_are_throttled(self):
        self.assertTrue(await self.presence.publish(True))
        self.clock.advance(10)
        self.assertFalse(await self.presence.publish(True))
        self.assertEqual(len(self.store.commits), 1)

        self.clock.advance(25)
        self.assertTrue(await self.presence.publish(True))
        doc = await self.store.get(presence_path("alice"))
        self.assertEqual(doc.data["last_active_ms"], self.clock.now())

    async def test_going_offline_is_never_throttled(self):
        await self.presence.publish(True)
        self.clock.advance(1)
        self.assertTrue(await self.presence.publish(False))
        doc = await self.store.get(presence_path("alice"))
        self.assertFalse(doc.data["online"])
        self.clock.advance(1)
        self.assertTrue(await self.presence.publish(True))

    async def test_failed_write_is_logged_and_swallowed(self):
        self.store.fail_next = 1
        with self.assertLogs("chatsync.presence", level="WARNING"):
            self.assertFalse(await self.presence.publish(True))
        self.assertIsNone(self.presence.last_published)
        self.assertTrue(await self.presence.publish(True))

    async def test_lifecycle_events_drive_the_flag(self):
        lifecycle = AppLifecycle()
        self.presence.attach(lifecycle)
        lifecycle.emit(FOCUS)
        await self.presence.flush()
        self.assertTrue((await self.store.get(presence_path("alice"))).data["online"])

        lifecycle.emit(VISIBILITY, False)
        await self.presence.flush()
        self.assertFalse((await self.store.get(presence_path("alice"))).data["online"])

        self.presence.detach()
        self.assertEqual(lifecycle.listener_count(BLUR), 0)


class PresenceViewTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = FlakyStore(now_func=self.clock.now)
        self.viewer = PresenceManager(self.store, "bob", now_func=self.clock.now, tz=timezone.utc)

    async def test_stale_online_flag_is_advisory(self):
        record = PresenceRecord(
            user_id="alice", display_name="Alice", online=True, last_active_ms=self.clock.now() - 200_000
        )
        view = self.viewer.view(record)
        self.assertFalse(view.online)
        self.assertTrue(view.advisory)
        self.assertEqual(view.label, "3 minutes ago")

    async def test_fresh_online_flag(self):
        record = PresenceRecord(user_id="alice", display_name="Alice", online=True, last_active_ms=self.clock.now())
        view = self.viewer.view(record)
        self.assertTrue(view.online)
        self.assertEqual(view.label, "online")

    async def test_observe_and_lookup(self):
        views = []
        sub = self.viewer.observe("alice", views.append)
        self.assertEqual(views, [None])
        self.assertIsNone(await self.viewer.lookup("alice"))

        alice = PresenceManager(self.store, "alice", "Alice", now_func=self.clock.now)
        await alice.publish(True)
        self.assertTrue(views[-1].online)
        self.assertEqual((await self.viewer.lookup("alice")).display_name, "Alice")
        sub.cancel()


class LastSeenLabelTests(unittest.TestCase):
    def test_labels(self):
        now = datetime(2024, 5, 2, 12, 0, tzinfo=timezone.utc)
        now_ms = int(now.timestamp() * 1000)
        self.assertEqual(format_last_seen(None, now_ms), "recently")
        self.assertEqual(format_last_seen(now_ms - 30_000, now_ms, tz=timezone.utc), "just now")
        self.assertEqual(format_last_seen(now_ms - 60_000, now_ms, tz=timezone.utc), "1 minute ago")
        self.assertEqual(format_last_seen(now_ms - 45 * 60_000, now_ms, tz=timezone.utc), "45 minutes ago")

        earlier_today = int(datetime(2024, 5, 2, 10, 30, tzinfo=timezone.utc).timestamp() * 1000)
        self.assertEqual(format_last_seen(earlier_today, now_ms, tz=timezone.utc), "today at 10:30")
        yesterday = int(datetime(2024, 5, 1, 22, 15, tzinfo=timezone.utc).timestamp() * 1000)
        self.assertEqual(format_last_seen(yesterday, now_ms, tz=timezone.utc), "yesterday at 22:15")


if __name__ == "__main__":
    unittest.main()
