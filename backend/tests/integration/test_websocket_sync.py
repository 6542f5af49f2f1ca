"""
End-to-end tests against a local websocket server.

A small in-test server speaks the sync protocol: it answers ``subscribe``
with channel or notification snapshots and ``join`` with a presence snapshot.
"""

import asyncio
import json

import pytest
import websockets

from clinic_sync import SyncClient


class FakeSyncServer:
    """Minimal sync backend recording every command it receives."""

    def __init__(self):
        self.received = []
        self.connections = []

    async def handler(self, websocket, *args):
        self.connections.append(websocket)
        try:
            async for raw in websocket:
                command = json.loads(raw)
                self.received.append(command)
                await self.respond(websocket, command)
        except websockets.ConnectionClosed:
            pass

    async def respond(self, websocket, command):
        payload = command["payload"]
        if command["type"] == "subscribe":
            for channel in payload["channels"]:
                if channel == "notifications":
                    snapshot = {"notifications": [{"id": "s1", "title": "Lab result", "message": "K+ high"}]}
                else:
                    snapshot = {"value": 12, "label": "Patients"}
                await websocket.send(json.dumps({"topic": channel, "seq": 0, "kind": "snapshot", "payload": snapshot}))
        elif command["type"] == "join":
            await websocket.send(json.dumps({
                "topic": "presence",
                "kind": "snapshot",
                "payload": {
                    "session": {"id": payload["session_id"], "name": "Ward 3"},
                    "participants": [payload["user"], {"id": "u2", "name": "Nurse Bo"}],
                    "cursors": [],
                },
            }))

    def types(self):
        return [c["type"] for c in self.received]

    def subscribed(self, channel):
        return sum(1 for c in self.received if c["type"] == "subscribe" and channel in c["payload"]["channels"])


@pytest.mark.integration
@pytest.mark.asyncio
async def test_client_syncs_channels_and_presence(settings, eventually):
    server = FakeSyncServer()
    async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = next(iter(ws_server.sockets)).getsockname()[1]
        client = SyncClient(settings)
        client.channels.subscribe(["counter:patients"])

        await client.start(f"ws://127.0.0.1:{port}")
        try:
            assert await client.connection.wait_until_connected(timeout=5)
            client.join_session("ward-3", "me", "Dr. Ada")

            await eventually(lambda: "patients" in client.channels.counters, timeout=5)
            await eventually(lambda: "u2" in client.presence.participants, timeout=5)

            assert client.channels.counters["patients"].value == 12
            assert client.presence.session.name == "Ward 3"
            assert [t for t in server.types() if t != "subscribe"][0] == "join"
            assert server.subscribed("counter:patients") == 1
            await eventually(lambda: client.notifications.get("s1") is not None, timeout=5)
        finally:
            await client.stop()

    assert not client.is_connected


@pytest.mark.integration
@pytest.mark.asyncio
async def test_client_resubscribes_after_server_drop(settings, eventually):
    server = FakeSyncServer()
    async with websockets.serve(server.handler, "127.0.0.1", 0) as ws_server:
        port = next(iter(ws_server.sockets)).getsockname()[1]
        client = SyncClient(settings)
        client.channels.subscribe(["counter:patients"])

        await client.start(f"ws://127.0.0.1:{port}")
        try:
            await eventually(lambda: server.subscribed("counter:patients") == 1, timeout=5)

            await server.connections[0].close()
            await eventually(lambda: server.subscribed("counter:patients") == 2, timeout=5)

            assert client.connection.connection_stats["reconnections"] == 1
            await eventually(lambda: client.channels.counters.get("patients") is not None, timeout=5)
            await eventually(lambda: server.subscribed("notifications") == 2, timeout=5)
        finally:
            await client.stop()
            await asyncio.sleep(0)
