import asyncio
import unittest

from chatsync.calls import (
    ACTIVE,
    ENDED,
    IDLE,
    RINGING_INBOUND,
    RINGING_OUTBOUND,
    CallConfig,
    CallSignalingEngine,
    CallStateError,
    MediaAcquisitionError,
    PeerUnavailable,
)
from chatsync.models import CALL_ACTIVE, CALL_DECLINED, CALL_ENDED, CALL_VIDEO, call_path, presence_path
from chatsync.presence import PresenceManager
from chatsync.store import StoreUnavailable

from tests.fakes import FakeClock, FakeMedia, FlakyStore


class CallTestCase(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.clock = FakeClock()
        self.store = FlakyStore(now_func=self.clock.now)
        for user_id in ("alice", "bob", "carol"):
            await self.store.write(presence_path(user_id), {"display_name": user_id.title(), "online": True})
        self.media = {}
        self.engines = {}
        for user_id in ("alice", "bob", "carol"):
            self.engines[user_id] = self.engine(user_id)
        self.alice, self.bob, self.carol = (self.engines[u] for u in ("alice", "bob", "carol"))

    def engine(self, user_id, *, config=None, media=None):
        self.media[user_id] = media or FakeMedia()
        engine = CallSignalingEngine(
            self.store,
            user_id,
            self.media[user_id],
            presence=PresenceManager(self.store, user_id, now_func=self.clock.now),
            config=config,
            id_factory=lambda: f"call-{user_id}",
        )
        engine.listen()
        return engine

    async def asyncTearDown(self):
        for engine in self.engines.values():
            await engine.close()

    async def settle(self):
        for engine in self.engines.values():
            await engine.drain()

    async def status_of(self, call_id):
        doc = await self.store.get(call_path(call_id))
        return doc.data["status"] if doc is not None else None


class CallFlowTests(CallTestCase):
    async def test_accepted_call_ends_symmetrically(self):
        states = []
        self.alice.add_listener(lambda state, session: states.append(state))

        session = await self.alice.start_call("bob", CALL_VIDEO)
        self.assertEqual(self.alice.state, RINGING_OUTBOUND)
        self.assertEqual(self.bob.state, RINGING_INBOUND)
        self.assertEqual(self.bob.session.offer, {"type": "offer", "sdp": "v=0 offer"})

        await self.bob.accept()
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ACTIVE, ACTIVE))
        self.assertEqual(self.media["alice"].applied[0]["type"], "answer")
        self.assertEqual(self.media["bob"].acquired, [CALL_VIDEO])

        await self.bob.hang_up()
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ENDED, ENDED))
        self.assertFalse(self.media["alice"].holding)
        self.assertFalse(self.media["bob"].holding)
        self.assertEqual(self.media["bob"].released, 1)
        self.assertEqual(await self.status_of(session.call_id), CALL_ENDED)
        self.assertEqual(states, [RINGING_OUTBOUND, ACTIVE, ENDED])

    async def test_decline_ends_both_sides(self):
        session = await self.alice.start_call("bob")
        await self.bob.decline()
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ENDED, ENDED))
        self.assertEqual(await self.status_of(session.call_id), CALL_DECLINED)
        self.assertEqual(self.media["bob"].acquired, [])
        self.assertFalse(self.media["alice"].holding)

    async def test_caller_cancels_before_answer(self):
        await self.alice.start_call("bob")
        await self.alice.hang_up()
        await self.settle()
        self.assertEqual(self.bob.state, ENDED)
        with self.assertRaises(CallStateError):
            await self.bob.accept()
        self.assertEqual(self.media["bob"].acquired, [])

    async def test_deleted_session_counts_as_ended(self):
        session = await self.alice.start_call("bob")
        await self.bob.accept()
        await self.settle()
        await self.store.delete(call_path(session.call_id))
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ENDED, ENDED))
        self.assertFalse(self.media["alice"].holding)
        self.assertFalse(self.media["bob"].holding)

    async def test_new_call_after_previous_ended(self):
        await self.alice.start_call("bob")
        await self.alice.hang_up()
        await self.settle()
        self.alice._new_id = lambda: "call-alice-2"
        await self.alice.start_call("bob")
        self.assertEqual(self.bob.state, RINGING_INBOUND)
        self.assertEqual(self.bob.session.call_id, "call-alice-2")


class CallFailureTests(CallTestCase):
    async def test_media_failure_writes_nothing(self):
        await self.engines["alice"].close()
        self.engines["alice"] = self.alice = self.engine("alice", media=FakeMedia(fail_acquire=True))
        with self.assertRaises(MediaAcquisitionError):
            await self.alice.start_call("bob")
        self.assertEqual(self.alice.state, IDLE)
        self.assertEqual(self.bob.state, IDLE)
        self.assertEqual([p for p in self.store.paths() if p.startswith("calls/")], [])

    async def test_signaling_write_failure_releases_media(self):
        self.store.fail_next = 1
        with self.assertRaises(StoreUnavailable):
            await self.alice.start_call("bob")
        self.assertEqual(self.alice.state, IDLE)
        self.assertEqual(self.media["alice"].released, 1)
        self.assertFalse(self.media["alice"].holding)

    async def test_accept_media_failure_returns_to_idle(self):
        await self.engines["bob"].close()
        self.engines["bob"] = self.bob = self.engine("bob", media=FakeMedia(fail_acquire=True))
        await self.alice.start_call("bob")
        with self.assertRaises(MediaAcquisitionError):
            await self.bob.accept()
        self.assertEqual(self.bob.state, IDLE)
        self.assertEqual(self.alice.state, RINGING_OUTBOUND)

    async def test_unknown_peer(self):
        with self.assertRaises(PeerUnavailable):
            await self.alice.start_call("mallory")
        self.assertEqual(self.media["alice"].acquired, [])

    async def test_second_inbound_call_is_rejected_busy(self):
        await self.alice.start_call("bob")
        carol_session = await self.carol.start_call("bob")
        await self.settle()
        doc = await self.store.get(call_path(carol_session.call_id))
        self.assertEqual((doc.data["status"], doc.data["reason"]), (CALL_DECLINED, "busy"))
        self.assertEqual(self.carol.state, ENDED)
        self.assertFalse(self.media["carol"].holding)
        self.assertEqual(self.bob.state, RINGING_INBOUND)
        self.assertEqual(self.bob.session.caller_id, "alice")

    async def test_cannot_start_while_busy(self):
        await self.alice.start_call("bob")
        with self.assertRaises(CallStateError):
            await self.alice.start_call("carol")

    async def test_ring_timeout_ends_unanswered_call(self):
        await self.engines["alice"].close()
        self.engines["alice"] = self.alice = self.engine("alice", config=CallConfig(ring_timeout_s=0.01))
        session = await self.alice.start_call("bob")
        await asyncio.sleep(0.05)
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ENDED, ENDED))
        self.assertEqual(await self.status_of(session.call_id), CALL_ENDED)

    async def test_failed_hang_up_is_retried(self):
        session = await self.alice.start_call("bob")
        await self.bob.accept()
        await self.settle()

        self.store.fail_next = 1
        with self.assertRaises(StoreUnavailable):
            await self.bob.hang_up()
        await self.settle()
        self.assertEqual(self.bob.state, ENDED)
        self.assertFalse(self.media["bob"].holding)
        self.assertTrue(self.bob.end_pending)
        self.assertEqual(self.alice.state, ACTIVE)
        self.assertEqual(await self.status_of(session.call_id), CALL_ACTIVE)

        await self.bob.hang_up()
        await self.settle()
        self.assertFalse(self.bob.end_pending)
        self.assertEqual(self.alice.state, ENDED)
        self.assertFalse(self.media["alice"].holding)
        self.assertEqual(await self.status_of(session.call_id), CALL_ENDED)

    async def test_pending_end_is_flushed_on_close(self):
        session = await self.alice.start_call("bob")
        self.store.fail_next = 1
        with self.assertRaises(StoreUnavailable):
            await self.alice.hang_up()
        await self.engines["alice"].close()
        await self.settle()
        self.assertFalse(self.alice.end_pending)
        self.assertEqual(self.bob.state, ENDED)
        self.assertEqual(await self.status_of(session.call_id), CALL_ENDED)

    async def test_accept_failure_ends_the_caller_side(self):
        await self.engines["bob"].close()
        self.engines["bob"] = self.bob = self.engine("bob", media=FakeMedia(fail_answer=True))
        session = await self.alice.start_call("bob")
        with self.assertRaises(RuntimeError):
            await self.bob.accept()
        await self.settle()
        self.assertEqual((self.alice.state, self.bob.state), (ENDED, ENDED))
        self.assertEqual(await self.status_of(session.call_id), CALL_ENDED)
        self.assertEqual(self.media["bob"].released, 1)
        self.assertFalse(self.media["bob"].holding)
        self.assertFalse(self.media["alice"].holding)
        self.assertFalse(self.bob.end_pending)

    async def test_finished_inbound_ids_are_forgotten(self):
        await self.alice.start_call("bob")
        await self.carol.start_call("bob")
        await self.settle()
        self.assertEqual(self.bob._handled, {"call-alice"})

        await self.bob.decline()
        await self.settle()
        self.assertEqual(self.bob._handled, set())


if __name__ == "__main__":
    unittest.main()
