"""Unit tests for peer_broker.py: registration, links and packet forwarding."""
import sys
import os

import pytest
from fastapi import WebSocketDisconnect

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from peer_broker import PeerBroker


class MockWebSocket:
    def __init__(self, incoming=None):
        self.incoming = list(incoming or [])
        self.sent_messages: list[dict] = []
        self.closed = False

    async def accept(self):
        pass

    async def receive_text(self) -> str:
        if not self.incoming:
            raise WebSocketDisconnect()
        return self.incoming.pop(0)

    async def send_json(self, data: dict):
        self.sent_messages.append(data)

    async def close(self, code: int = 1000):
        self.closed = True

    @property
    def headers(self):
        return {"origin": ""}

    def last(self, msg_type: str) -> dict | None:
        for msg in reversed(self.sent_messages):
            if msg.get("type") == msg_type:
                return msg
        return None


def make_broker():
    broker = PeerBroker()
    host, guest = MockWebSocket(), MockWebSocket()
    broker.peers = {"tug-AB12C": host, "omar": guest}
    broker.links = {"tug-AB12C": set(), "omar": set()}
    return broker, host, guest


class TestPeerBroker:
    @pytest.mark.asyncio
    async def test_register(self):
        broker = PeerBroker()
        ws = MockWebSocket()
        await broker.connect(ws, "tug-AB12C")
        assert ws.sent_messages[0] == {"type": "registered", "peer": "tug-AB12C"}
        assert "tug-AB12C" not in broker.peers  # unregistered after the socket closed

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self):
        broker, host, _ = make_broker()
        ws = MockWebSocket()
        await broker.connect(ws, "tug-AB12C")
        assert ws.last("error")["code"] == "peer_id_taken"
        assert ws.closed
        assert broker.peers["tug-AB12C"] is host

    @pytest.mark.asyncio
    async def test_connect_opens_both_sides(self):
        broker, host, guest = make_broker()
        await broker.handle_message("omar", {"type": "connect", "target": "tug-AB12C"})
        assert host.last("open") == {"type": "open", "peer": "omar"}
        assert guest.last("open") == {"type": "open", "peer": "tug-AB12C"}

    @pytest.mark.asyncio
    async def test_connect_to_missing_peer(self):
        broker, _, guest = make_broker()
        await broker.handle_message("omar", {"type": "connect", "target": "tug-ZZZZZ"})
        assert guest.last("peer_unavailable")["peer"] == "tug-ZZZZZ"

    @pytest.mark.asyncio
    async def test_data_forwarded_over_link(self):
        broker, host, guest = make_broker()
        await broker.handle_message("omar", {"type": "connect", "target": "tug-AB12C"})
        await broker.handle_message("omar", {"type": "data", "target": "tug-AB12C",
                                             "payload": {"type": "join_room", "name": "Omar"}})
        assert host.last("data") == {"type": "data", "from": "omar",
                                     "payload": {"type": "join_room", "name": "Omar"}}
        await broker.handle_message("tug-AB12C", {"type": "data", "target": "omar", "payload": {"type": "x"}})
        assert guest.last("data")["from"] == "tug-AB12C"

    @pytest.mark.asyncio
    async def test_data_without_link_rejected(self):
        broker, host, guest = make_broker()
        await broker.handle_message("omar", {"type": "data", "target": "tug-AB12C", "payload": {}})
        assert host.last("data") is None
        assert guest.last("peer_unavailable") is not None

    @pytest.mark.asyncio
    async def test_unregister_notifies_linked_peers(self):
        broker, _, guest = make_broker()
        await broker.handle_message("omar", {"type": "connect", "target": "tug-AB12C"})
        await broker.unregister("tug-AB12C")
        assert guest.last("peer_closed") == {"type": "peer_closed", "peer": "tug-AB12C"}
        assert broker.links["omar"] == set()
