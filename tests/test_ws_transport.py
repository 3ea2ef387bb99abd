import os
import tempfile
import unittest
from unittest import mock

from aiohttp import WSMsgType
from aiohttp.test_utils import TestClient, TestServer

from finchat.config import GatewayConfig
from finchat.ws_transport import RUNTIME_KEY, create_app
from tests.helpers import SECRET, build_coordinator, token_for
from tests.ws_receive_util import assert_no_app_messages, recv_event, wait_until

PUSH_TOKEN = "push-token-for-tests"


class TransportTestCase(unittest.IsolatedAsyncioTestCase):
    config = GatewayConfig(jwt_secret=SECRET, idle_timeout_s=30.0, push_token=PUSH_TOKEN)

    async def asyncSetUp(self):
        self.app = create_app(self.config)
        self.coordinator = self.app[RUNTIME_KEY]
        self.server = TestServer(self.app)
        await self.server.start_server()
        self.client = TestClient(self.server)
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()
        await self.server.close()

    async def _connect(self, identity):
        ws = await self.client.ws_connect(f"/v1/ws?token={token_for(identity)}")
        established = await recv_event(ws, "connection_established")
        self.assertEqual(established["userId"], identity)
        return ws

    async def _sync(self, ws):
        """Round-trip a ping so every earlier frame on ``ws`` has been handled."""

        await ws.send_json({"kind": "ping", "data": {}})
        await recv_event(ws, "pong")

    def _auth_headers(self, identity):
        return {"Authorization": f"Bearer {token_for(identity)}"}


class HandshakeTests(TransportTestCase):
    async def test_missing_token_closes_with_policy_violation(self):
        ws = await self.client.ws_connect("/v1/ws")

        msg = await ws.receive(timeout=2)

        self.assertEqual(msg.type, WSMsgType.CLOSE)
        self.assertEqual(msg.data, 1008)
        self.assertEqual(msg.extra, "Authentication required")
        self.assertEqual(self.coordinator.online_identities(), [])

    async def test_invalid_token_closes_with_policy_violation(self):
        ws = await self.client.ws_connect("/v1/ws?token=forged")

        msg = await ws.receive(timeout=2)

        self.assertEqual(msg.type, WSMsgType.CLOSE)
        self.assertEqual(msg.data, 1008)
        self.assertEqual(msg.extra, "Invalid token")

    async def test_bearer_header_is_accepted(self):
        ws = await self.client.ws_connect("/v1/ws", headers=self._auth_headers(3))

        established = await recv_event(ws, "connection_established")
        await ws.close()

        self.assertEqual(established["userId"], 3)
        self.assertTrue(established["timestamp"].endswith("Z"))

    async def test_disconnect_takes_identity_offline(self):
        ws = await self._connect(1)
        self.assertTrue(self.coordinator.is_online(1))

        await ws.close()

        await wait_until(lambda: not self.coordinator.is_online(1))


class MessagingTests(TransportTestCase):
    async def test_message_to_focused_receiver_is_read(self):
        sender = await self._connect(1)
        receiver = await self._connect(2)

        await receiver.send_json({"kind": "chat_open", "data": {"chatWithUserId": 1}})
        await self._sync(receiver)
        await sender.send_json({"kind": "chat_message", "data": {"receiverId": 2, "message": "hello"}})

        delivered = await recv_event(receiver, "new_message")
        acked = await recv_event(sender, "message_sent")
        await sender.close()
        await receiver.close()

        self.assertEqual(delivered["readStatus"], "read")
        self.assertEqual(acked["readStatus"], "read")
        self.assertEqual(delivered["messageId"], acked["messageId"])

    async def test_legacy_type_key_and_bad_frames(self):
        ws = await self._connect(1)

        await ws.send_str("{definitely not json")
        await ws.send_bytes(b"\x00\x01")
        await ws.send_json({"kind": "launch_rockets", "data": {}})
        await ws.send_json({"type": "ping"})

        pong = await recv_event(ws, "pong")
        await ws.close()
        self.assertIn("timestamp", pong)

    async def test_typing_reaches_receiver_only(self):
        sender = await self._connect(1)
        receiver = await self._connect(2)

        await sender.send_json({"kind": "typing_start", "data": {"receiverId": 2}})

        typing = await recv_event(receiver, "typing_start")
        self.assertEqual(typing["senderId"], 1)
        await assert_no_app_messages(sender, timeout=0.1)
        await sender.close()
        await receiver.close()

    async def test_read_receipt_round_trip_clears_unread(self):
        sender = await self._connect(1)
        reader = await self._connect(2)

        await sender.send_json({"kind": "chat_message", "data": {"receiverId": 2, "message": "hello"}})
        delivered = await recv_event(reader, "new_message")
        await reader.send_json(
            {"kind": "read_receipt", "data": {"messageId": delivered["messageId"], "senderId": 1}}
        )

        receipt = await recv_event(sender, "read_receipt")
        update = await recv_event(reader, "unread_count_update")
        await sender.close()
        await reader.close()

        self.assertEqual(receipt["messageId"], delivered["messageId"])
        self.assertEqual(update["unreadCount"], 0)
        self.assertEqual(self.coordinator.chat_store.unread_count(2, 1), 0)

    async def test_unread_count_request(self):
        sender = await self._connect(1)
        receiver = await self._connect(2)

        await sender.send_json({"kind": "chat_message", "data": {"receiverId": 2, "message": "one"}})
        await recv_event(sender, "message_sent")
        await receiver.send_json({"kind": "get_unread_count", "data": {"senderId": 1}})

        response = await recv_event(receiver, "unread_count_response")
        await sender.close()
        await receiver.close()
        self.assertEqual(response["unreadCount"], 1)

    async def test_friend_presence_notices(self):
        self.coordinator.social_graph.add_friendship(1, 2)
        friend = await self._connect(2)

        ws = await self._connect(1)
        online = await recv_event(friend, "friend_status_change")
        await ws.close()
        offline = await recv_event(friend, "friend_status_change")
        await friend.close()

        self.assertEqual((online["userId"], online["status"]), (1, "online"))
        self.assertEqual((offline["userId"], offline["status"]), (1, "offline"))


class RestRouteTests(TransportTestCase):
    async def test_health(self):
        resp = await self.client.get("/healthz")

        self.assertEqual(resp.status, 200)
        self.assertEqual(await resp.text(), "ok")

    async def test_online_listing_requires_auth(self):
        resp = await self.client.get("/v1/presence/online")

        self.assertEqual(resp.status, 401)
        self.assertEqual((await resp.json())["code"], "unauthorized")

    async def test_online_listing(self):
        ws = await self._connect(4)

        resp = await self.client.get("/v1/presence/online", headers=self._auth_headers(9))
        body = await resp.json()
        await ws.close()

        self.assertEqual(resp.status, 200)
        self.assertEqual(body, {"count": 1, "users": [4]})

    async def test_user_status(self):
        ws = await self._connect(4)
        await self.coordinator.drain()

        resp = await self.client.get("/v1/users/4/status", headers=self._auth_headers(9))
        body = await resp.json()
        await ws.close()

        self.assertEqual(resp.status, 200)
        self.assertEqual(body["userId"], 4)
        self.assertTrue(body["online"])
        self.assertEqual(body["status"], "online")
        self.assertTrue(body["lastSeen"].endswith("Z"))

    async def test_unknown_user_status(self):
        resp = await self.client.get("/v1/users/404/status", headers=self._auth_headers(9))

        self.assertEqual(resp.status, 404)
        self.assertEqual((await resp.json())["code"], "not_found")

    async def test_unread_summary(self):
        store = self.coordinator.chat_store
        store.persist_message(1, 2, "a")
        store.persist_message(1, 2, "b")
        store.persist_message(3, 2, "c")

        resp = await self.client.get("/v1/chat/unread", headers=self._auth_headers(2))
        body = await resp.json()

        self.assertEqual(body["total"], 3)
        self.assertEqual(
            sorted((entry["senderId"], entry["count"]) for entry in body["unread"]),
            [(1, 2), (3, 1)],
        )

    async def test_push_delivers_to_every_session(self):
        phone = await self._connect(1)
        laptop = await self._connect(1)

        resp = await self.client.post(
            "/v1/events/push",
            json={"userId": 1, "kind": "friend_request", "data": {"fromUserId": 8}},
            headers={"Authorization": f"Bearer {PUSH_TOKEN}"},
        )
        body = await resp.json()

        self.assertEqual(body, {"delivered": 2})
        for ws in (phone, laptop):
            self.assertEqual(await recv_event(ws, "friend_request"), {"fromUserId": 8})
            await ws.close()

    async def test_push_rejects_wrong_token_and_bad_body(self):
        resp = await self.client.post(
            "/v1/events/push",
            json={"userId": 1, "kind": "friend_request", "data": {}},
            headers={"Authorization": "Bearer nope"},
        )
        self.assertEqual(resp.status, 401)

        resp = await self.client.post(
            "/v1/events/push",
            json={"userId": 1, "data": {}},
            headers={"Authorization": f"Bearer {PUSH_TOKEN}"},
        )
        self.assertEqual(resp.status, 400)
        self.assertEqual((await resp.json())["code"], "invalid_request")


class PushDisabledTests(TransportTestCase):
    config = GatewayConfig(jwt_secret=SECRET)

    async def test_push_route_absent_without_token(self):
        resp = await self.client.post("/v1/events/push", json={"userId": 1, "kind": "x", "data": {}})

        self.assertEqual(resp.status, 404)


class IdleTimeoutTests(TransportTestCase):
    config = GatewayConfig(jwt_secret=SECRET, idle_timeout_s=0.2)

    async def test_idle_connection_is_closed(self):
        ws = await self._connect(1)

        msg = await ws.receive(timeout=2)
        while msg.type == WSMsgType.TEXT:
            msg = await ws.receive(timeout=2)

        self.assertEqual(msg.type, WSMsgType.CLOSE)
        self.assertEqual(msg.data, 1001)
        self.assertEqual(msg.extra, "idle timeout")
        await wait_until(lambda: not self.coordinator.is_online(1))


class SQLiteTransportTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.db_path = os.path.join(self.tmpdir.name, "finchat.db")

    async def asyncTearDown(self):
        self.tmpdir.cleanup()

    async def _start(self):
        app = create_app(GatewayConfig(jwt_secret=SECRET, db_path=self.db_path))
        server = TestServer(app)
        await server.start_server()
        client = TestClient(server)
        await client.start_server()
        return app, client

    async def test_unread_messages_survive_restart(self):
        app, client = await self._start()
        ws = await client.ws_connect(f"/v1/ws?token={token_for(1)}")
        await recv_event(ws, "connection_established")
        await ws.send_json({"kind": "chat_message", "data": {"receiverId": 2, "message": "persist me"}})
        await recv_event(ws, "message_sent")
        await ws.close()
        await app[RUNTIME_KEY].drain()
        await client.close()

        _, client = await self._start()
        resp = await client.get("/v1/chat/unread", headers={"Authorization": f"Bearer {token_for(2)}"})
        body = await resp.json()
        await client.close()

        self.assertEqual(body, {"total": 1, "unread": [{"senderId": 1, "count": 1}]})


class DiscardingStatusStore:
    def set_presence(self, user_id, status, last_seen):
        pass

    def get_presence(self, user_id):
        return None


class UnpersistedStatusTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.app = create_app(
            GatewayConfig(jwt_secret=SECRET),
            coordinator=build_coordinator(status_store=DiscardingStatusStore()),
        )
        self.client = TestClient(TestServer(self.app))
        await self.client.start_server()

    async def asyncTearDown(self):
        await self.client.close()

    async def test_live_user_without_status_row(self):
        ws = await self.client.ws_connect(f"/v1/ws?token={token_for(4)}")
        await recv_event(ws, "connection_established")

        resp = await self.client.get("/v1/users/4/status", headers={"Authorization": f"Bearer {token_for(9)}"})
        body = await resp.json()
        await ws.close()

        self.assertEqual(resp.status, 200)
        self.assertEqual(body, {"userId": 4, "online": True, "status": None, "lastSeen": None})


class CreateAppTests(unittest.TestCase):
    def test_missing_secret_names_the_variable(self):
        with self.assertRaises(ValueError) as ctx:
            create_app(GatewayConfig())
        self.assertIn("FINCHAT_JWT_SECRET", str(ctx.exception))

    def test_missing_secret_in_environment(self):
        with mock.patch.dict(os.environ, {}, clear=True), self.assertRaises(ValueError) as ctx:
            create_app()
        self.assertIn("FINCHAT_JWT_SECRET", str(ctx.exception))


if __name__ == "__main__":
    unittest.main()
