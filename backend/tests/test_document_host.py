"""Unit tests for document_host.py: path ops, snapshot fan-out and disconnect ops."""
import sys
import os

import pytest
from fastapi import WebSocketDisconnect

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from document_host import Document, DocumentHost, get_path, set_path, update_path


class MockWebSocket:
    """Mock for fastapi.WebSocket that replays a scripted list of frames."""
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


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------

class TestPaths:
    def test_get_path(self):
        data = {"players": {"anna": {"team": 1}}}
        assert get_path(data, "players/anna/team") == 1
        assert get_path(data, "players/omar") is None
        assert get_path(None, "players") is None
        assert get_path(data, "") == data

    def test_set_creates_parents(self):
        data = set_path(None, "game_state/teams/1", {"score": 0})
        assert data == {"game_state": {"teams": {"1": {"score": 0}}}}

    def test_set_none_deletes(self):
        data = {"players": {"anna": {}, "omar": {}}}
        set_path(data, "players/omar", None)
        assert data == {"players": {"anna": {}}}

    def test_set_root(self):
        assert set_path({"a": 1}, "", {"b": 2}) == {"b": 2}
        assert set_path({"a": 1}, "", None) is None

    def test_update_merges_shallowly(self):
        data = {"game_state": {"rope_position": 50, "round": 0}}
        update_path(data, "game_state", {"rope_position": 55})
        assert data["game_state"] == {"rope_position": 55, "round": 0}


# ---------------------------------------------------------------------------
# Ops
# ---------------------------------------------------------------------------

def make_doc():
    doc = Document("AB12C")
    anna, omar = MockWebSocket(), MockWebSocket()
    doc.subscribers = {"anna": anna, "omar": omar}
    return doc, anna, omar


class TestOps:
    @pytest.mark.asyncio
    async def test_set_broadcasts_whole_document(self):
        host = DocumentHost()
        doc, anna, omar = make_doc()
        await host.handle_op(doc, "anna", {"op": "set", "path": "", "value": {"id": "AB12C", "players": {}}})
        assert omar.last("snapshot")["doc"] == {"id": "AB12C", "players": {}}
        assert anna.last("snapshot")["doc"] == {"id": "AB12C", "players": {}}

    @pytest.mark.asyncio
    async def test_update_and_remove(self):
        host = DocumentHost()
        doc, _, omar = make_doc()
        await host.handle_op(doc, "anna", {"op": "set", "path": "game_state", "value": {"rope_position": 50}})
        await host.handle_op(doc, "omar", {"op": "update", "path": "game_state", "value": {"round": 1}})
        assert omar.last("snapshot")["doc"]["game_state"] == {"rope_position": 50, "round": 1}
        await host.handle_op(doc, "omar", {"op": "remove", "path": "game_state/round"})
        assert omar.last("snapshot")["doc"]["game_state"] == {"rope_position": 50}

    @pytest.mark.asyncio
    async def test_update_requires_object(self):
        host = DocumentHost()
        doc, _, omar = make_doc()
        await host.handle_op(doc, "anna", {"op": "update", "path": "game_state", "value": 5})
        assert omar.sent_messages == []

    @pytest.mark.asyncio
    async def test_signal_forwarded_not_stored(self):
        host = DocumentHost()
        doc, anna, omar = make_doc()
        await host.handle_op(doc, "anna", {"op": "signal", "target": "omar", "payload": {"kind": "offer"}})
        assert omar.sent_messages == [{"type": "signal", "from": "anna", "payload": {"kind": "offer"}}]
        assert anna.sent_messages == []
        assert doc.data is None

    @pytest.mark.asyncio
    async def test_disconnect_ops(self):
        host = DocumentHost()
        doc, _, omar = make_doc()
        host.documents["AB12C"] = doc
        await host.handle_op(doc, "anna", {"op": "set", "path": "players/anna", "value": {"team": 1}})
        await host.handle_op(doc, "omar", {"op": "set", "path": "players/omar", "value": {"team": 2}})
        await host.handle_op(doc, "anna", {"op": "on_disconnect_remove", "path": "players/anna"})
        del doc.subscribers["anna"]
        await host._run_disconnect_ops(doc, "anna")
        assert omar.last("snapshot")["doc"]["players"] == {"omar": {"team": 2}}
        assert "AB12C" in host.documents


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------

class TestConnect:
    @pytest.mark.asyncio
    async def test_first_frame_is_snapshot(self):
        host = DocumentHost()
        ws = MockWebSocket()
        await host.connect(ws, "AB12C", "anna")
        assert ws.sent_messages[0] == {"type": "snapshot", "doc": None}

    @pytest.mark.asyncio
    async def test_empty_document_dropped_on_disconnect(self):
        host = DocumentHost()
        await host.connect(MockWebSocket(), "AB12C", "anna")
        assert "AB12C" not in host.documents

    @pytest.mark.asyncio
    async def test_written_document_survives_disconnect(self):
        host = DocumentHost()
        ws = MockWebSocket(['{"op": "set", "path": "", "value": {"id": "AB12C"}}'])
        await host.connect(ws, "AB12C", "anna")
        assert host.documents["AB12C"].data == {"id": "AB12C"}
        assert ws.last("snapshot")["doc"] == {"id": "AB12C"}

    @pytest.mark.asyncio
    async def test_disconnect_removes_registered_paths(self):
        host = DocumentHost()
        ws = MockWebSocket([
            '{"op": "set", "path": "players/anna", "value": {"team": 1}}',
            '{"op": "set", "path": "id", "value": "AB12C"}',
            '{"op": "on_disconnect_remove", "path": "players/anna"}',
        ])
        await host.connect(ws, "AB12C", "anna")
        assert host.documents["AB12C"].data == {"id": "AB12C", "players": {}}

    @pytest.mark.asyncio
    async def test_malformed_json(self):
        host = DocumentHost()
        ws = MockWebSocket(["{oops"])
        await host.connect(ws, "AB12C", "anna")
        assert ws.last("error")["code"] == "invalid_message"
