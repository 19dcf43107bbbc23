from __future__ import annotations

import json
from unittest import IsolatedAsyncioTestCase, mock

from .badges import BadgeStore
from .conftest import HOST, FakeLedger, make_quiz
from .db import InMemoryDatabase
from .events import EventStore
from .gateway import EventGateway
from .registry import RoomRegistry
from .rewards import RewardDispatcher


class EventGatewayTests(IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        database = InMemoryDatabase()
        self.gateway = EventGateway(EventStore(database))
        dispatcher = RewardDispatcher(FakeLedger(), BadgeStore(database))
        self.registry = RoomRegistry(self.gateway, dispatcher, database, tick_interval=3600)
        self.room_a = await self.registry.create(make_quiz(), HOST)
        self.room_b = await self.registry.create(make_quiz(), "0xotherhost")

    async def asyncTearDown(self) -> None:
        await self.registry.shutdown()

    def connect(self, connection_id: str) -> mock.AsyncMock:
        websocket = mock.AsyncMock()
        self.gateway.connections[connection_id] = websocket
        return websocket

    async def send(self, connection_id: str, **message) -> None:
        await self.gateway.handle(connection_id, json.dumps(message), self.registry)

    async def join(self, connection_id: str, room_code: str, address: str) -> None:
        await self.send(connection_id, type="join-room", roomCode=room_code, nickname=address, address=address)

    @staticmethod
    def received(websocket: mock.AsyncMock) -> list:
        return [call.args[0] for call in websocket.send_json.await_args_list]

    async def test_players_can_move_on_after_host_disconnect(self):
        self.connect("c-host")
        alice = self.connect("c-alice")
        await self.join("c-host", self.room_a.room_code, HOST)
        await self.join("c-alice", self.room_a.room_code, "0xalice")

        await self.gateway.drop("c-host", self.registry)

        self.assertEqual(self.received(alice)[-1]["type"], "host-disconnected")
        self.assertNotIn("c-alice", self.gateway.bindings)
        self.assertNotIn(self.room_a.id, self.gateway.subscribers)

        await self.join("c-alice", self.room_b.room_code, "0xalice")

        self.assertEqual(self.gateway.bindings["c-alice"], self.room_b.room_code)
        self.assertIn("c-alice", self.room_b.players)
        self.assertNotIn("error", [m["type"] for m in self.received(alice)])

    async def test_leave_unbinds_even_when_room_forgot_the_player(self):
        alice = self.connect("c-alice")
        await self.join("c-alice", self.room_a.room_code, "0xalice")
        self.room_a.players.clear()

        await self.send("c-alice", type="leave-room")

        self.assertEqual(self.received(alice)[-1]["code"], "not-found")
        self.assertNotIn("c-alice", self.gateway.bindings)
        self.assertNotIn(self.room_a.id, self.gateway.subscribers)
        await self.join("c-alice", self.room_b.room_code, "0xalice")
        self.assertEqual(self.gateway.bindings["c-alice"], self.room_b.room_code)

    async def test_leave_room_stops_delivery(self):
        alice = self.connect("c-alice")
        self.connect("c-bob")
        await self.join("c-alice", self.room_a.room_code, "0xalice")
        await self.join("c-bob", self.room_a.room_code, "0xbob")

        await self.send("c-alice", type="leave-room")
        delivered = len(self.received(alice))
        self.connect("c-carol")
        await self.join("c-carol", self.room_a.room_code, "0xcarol")

        self.assertNotIn("c-alice", self.gateway.bindings)
        self.assertEqual(len(self.received(alice)), delivered)

    async def test_closed_socket_leaves_the_room(self):
        alice = self.connect("c-alice")
        self.connect("c-bob")
        await self.join("c-alice", self.room_a.room_code, "0xalice")
        await self.join("c-bob", self.room_a.room_code, "0xbob")

        await self.gateway.drop("c-bob", self.registry)

        self.assertNotIn("c-bob", self.room_a.players)
        self.assertIn("player-left", [m["type"] for m in self.received(alice)])

    async def test_failed_send_drops_subscriber(self):
        alice = self.connect("c-alice")
        bob = self.connect("c-bob")
        await self.join("c-alice", self.room_a.room_code, "0xalice")
        bob.send_json.side_effect = RuntimeError("socket gone")
        await self.join("c-bob", self.room_a.room_code, "0xbob")

        self.assertNotIn("c-bob", self.gateway.connections)
        self.assertEqual(self.received(alice)[-1]["type"], "room-state")


class RoomDeletionTests(IsolatedAsyncioTestCase):
    async def test_late_reward_outcome_does_not_revive_event_log(self):
        database = InMemoryDatabase()
        store = EventStore(database)
        gateway = EventGateway(store)
        dispatcher = RewardDispatcher(FakeLedger(delay=0.05), BadgeStore(database))
        registry = RoomRegistry(gateway, dispatcher, database, tick_interval=3600)
        room = await registry.create(make_quiz(), HOST)
        await room.join("c-host", HOST, "Host")
        await room.join("c-alice", "0xalice", "Alice")
        await room.start(HOST)
        await room.finish()

        await registry.delete(room.room_code, HOST)
        await room.reward_task

        self.assertEqual(await store.list(room.id), [])
        self.assertIsNone(await database.room_event_counters.find_one({"_id": room.id}))
