import asyncio
import unittest

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from chatsync.remote_client import RemoteStoreClient
from chatsync.store import (
    AlreadyExists,
    DocumentNotFound,
    PreconditionFailed,
    Query,
    StoreUnavailable,
    increment,
    set_field,
)
from chatsync.ws_transport import create_app

from tests.fakes import wait_for


class WsTransportTestCase(unittest.IsolatedAsyncioTestCase):
    ping_interval_s = 3600
    ping_miss_limit = 2

    async def asyncSetUp(self):
        self.app = create_app(ping_interval_s=self.ping_interval_s, ping_miss_limit=self.ping_miss_limit)
        self.store = self.app["store"]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()
        self.remotes = []

    async def asyncTearDown(self):
        for remote in self.remotes:
            await remote.close()
        await self.client.close()
        await self.server.close()

    async def _remote(self):
        remote = RemoteStoreClient(str(self.server.make_url("/v1/store")), request_timeout_s=5)
        self.remotes.append(remote)
        await remote.connect()
        return remote


class RemoteStoreTests(WsTransportTestCase):
    async def test_write_get_and_query(self):
        remote = await self._remote()
        await remote.write("conversations/c1", {"name": "lunch", "rank": 2})
        await remote.write("conversations/c2", {"name": "work", "rank": 1})

        doc = await remote.get("conversations/c1")
        self.assertEqual(doc.data, {"name": "lunch", "rank": 2})
        self.assertIsNone(await remote.get("conversations/missing"))

        docs = await remote.query(Query("conversations").ordered("rank"))
        self.assertEqual([d.id for d in docs], ["c2", "c1"])

    async def test_field_ops_apply_on_the_server(self):
        remote = await self._remote()
        await remote.write("conversations/c1", {"unread_counts": {}})
        await asyncio.gather(*(remote.update("conversations/c1", [increment("unread_counts.bob")]) for _ in range(3)))
        self.assertEqual((await self.store.get("conversations/c1")).data["unread_counts"], {"bob": 3})

    async def test_store_errors_cross_the_wire(self):
        remote = await self._remote()
        await remote.create("calls/k1", {"status": "ringing"})
        with self.assertRaises(AlreadyExists):
            await remote.create("calls/k1", {"status": "ringing"})
        with self.assertRaises(DocumentNotFound):
            await remote.update("calls/missing", [set_field("status", "ended")])
        await remote.update("calls/k1", [set_field("status", "ended")], when={"status": "ringing"})
        with self.assertRaises(PreconditionFailed):
            await remote.update("calls/k1", [set_field("status", "active")], when={"status": "ringing"})

    async def test_failed_batch_applies_nothing(self):
        remote = await self._remote()
        batch = remote.batch().write("conversations/c1", {"name": "x"}).update("conversations/nope", [increment("n")])
        with self.assertRaises(DocumentNotFound):
            await batch.commit()
        self.assertIsNone(await self.store.get("conversations/c1"))

    async def test_document_subscription_sees_other_clients(self):
        alice = await self._remote()
        bob = await self._remote()
        snapshots = []
        sub = bob.subscribe_document("presence/alice", snapshots.append)
        await bob.settle()
        await wait_for(lambda: len(snapshots) == 1)
        self.assertFalse(snapshots[0].exists)

        await alice.write("presence/alice", {"online": True})
        await wait_for(lambda: len(snapshots) == 2)
        self.assertTrue(snapshots[-1].get("online"))

        sub.cancel()
        await bob.settle()
        self.assertEqual(self.store.hub.count("presence/alice"), 0)

    async def test_query_subscription_reports_changes(self):
        remote = await self._remote()
        await remote.write("conversations/c1/messages/m1", {"text": "hi", "created_at_ms": 1})
        snapshots = []
        remote.subscribe(Query("conversations/c1/messages").ordered("created_at_ms"), snapshots.append)
        await remote.settle()
        await wait_for(lambda: len(snapshots) == 1)
        self.assertEqual(snapshots[0].ids, ["m1"])

        await remote.write("conversations/c1/messages/m2", {"text": "yo", "created_at_ms": 2})
        await wait_for(lambda: len(snapshots) == 2)
        self.assertEqual(snapshots[-1].ids, ["m1", "m2"])
        self.assertEqual([(c.kind, c.document.id) for c in snapshots[-1].changes], [("added", "m2")])

    async def test_reconnect_restores_subscriptions(self):
        remote = await self._remote()
        snapshots = []
        remote.subscribe_document("presence/bob", snapshots.append)
        await remote.settle()
        await remote.close()
        await wait_for(lambda: self.store.hub.count("presence/bob") == 0)

        await self.store.write("presence/bob", {"online": False})
        await remote.connect()
        await wait_for(lambda: snapshots and snapshots[-1].exists)
        self.assertEqual(self.store.hub.count("presence/bob"), 1)

    async def test_requests_fail_when_not_connected(self):
        remote = RemoteStoreClient(str(self.server.make_url("/v1/store")))
        with self.assertRaises(StoreUnavailable):
            await remote.get("presence/alice")


class RawFrameTests(WsTransportTestCase):
    async def _connect(self):
        return await self.client.ws_connect("/v1/store")

    async def test_health(self):
        resp = await self.client.get("/healthz")
        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_ping_gets_pong(self):
        ws = await self._connect()
        await ws.send_json({"v": 1, "t": "ping", "id": "p1"})
        reply = await ws.receive_json(timeout=2)
        await ws.close()
        self.assertEqual((reply["t"], reply["id"]), ("pong", "p1"))

    async def test_bad_frames_get_error_replies(self):
        ws = await self._connect()
        await ws.send_json({"v": 2, "t": "store.get", "id": "a", "body": {"path": "presence/alice"}})
        bad_version = await ws.receive_json(timeout=2)
        await ws.send_json({"v": 1, "t": "store.teleport", "id": "b", "body": {}})
        unknown = await ws.receive_json(timeout=2)
        await ws.send_json({"v": 1, "t": "store.get", "id": "c", "body": {"path": "presence"}})
        bad_path = await ws.receive_json(timeout=2)
        await ws.send_str("{not json")
        malformed = await ws.receive_json(timeout=2)
        await ws.close()

        for frame, request_id in ((bad_version, "a"), (unknown, "b"), (bad_path, "c"), (malformed, None)):
            self.assertEqual(frame["t"], "error")
            self.assertEqual(frame["id"], request_id)
            self.assertEqual(frame["body"]["code"], "invalid_request")

    async def test_duplicate_subscription_id_is_rejected(self):
        ws = await self._connect()
        subscribe = {"v": 1, "t": "store.subscribe", "body": {"sub_id": "s1", "kind": "document", "path": "presence/a"}}
        await ws.send_json({**subscribe, "id": "1"})
        snapshot = await ws.receive_json(timeout=2)
        subscribed = await ws.receive_json(timeout=2)
        await ws.send_json({**subscribe, "id": "2"})
        duplicate = await ws.receive_json(timeout=2)
        await ws.close()

        self.assertEqual(snapshot["t"], "store.snapshot")
        self.assertIsNone(snapshot["body"]["data"])
        self.assertEqual(subscribed["t"], "store.subscribed")
        self.assertEqual((duplicate["t"], duplicate["id"]), ("error", "2"))

    async def test_closing_the_socket_drops_subscriptions(self):
        ws = await self._connect()
        await ws.send_json(
            {"v": 1, "t": "store.subscribe", "id": "1", "body": {"sub_id": "s1", "kind": "document", "path": "p/a"}}
        )
        await ws.receive_json(timeout=2)
        await ws.receive_json(timeout=2)
        self.assertEqual(self.store.hub.count("p/a"), 1)
        await ws.close()
        await wait_for(lambda: self.store.hub.count("p/a") == 0)


class HeartbeatTests(WsTransportTestCase):
    ping_interval_s = 0.05
    ping_miss_limit = 1

    async def test_silent_client_is_disconnected(self):
        ws = await self.client.ws_connect("/v1/store", autoping=False)
        pings = 0
        while True:
            msg = await ws.receive(timeout=2)
            if msg.type == WSMsgType.TEXT:
                if msg.json()["t"] == "ping":
                    pings += 1
                continue
            if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                break
        self.assertGreaterEqual(pings, 1)

    async def test_remote_client_answers_pings(self):
        remote = await self._remote()
        await asyncio.sleep(0.3)
        self.assertTrue(remote.connected)
        await remote.write("presence/alice", {"online": True})


if __name__ == "__main__":
    unittest.main()
