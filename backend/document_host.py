"""
Hosted shared documents for the shared-document transport.

Each document is a JSON tree that any subscriber may write. After every
write the whole document is pushed to every subscriber (no diffs). The host
knows nothing about the game: rooms, teams and the rope all live inside the
document and are maintained by the clients themselves.

Client ops (one JSON object per frame)::

    {"op": "set", "path": "players/abc", "value": {...}}
    {"op": "update", "path": "game_state", "value": {"rope_position": 55}}
    {"op": "remove", "path": "answers/abc-1"}
    {"op": "on_disconnect_remove", "path": "players/abc"}
    {"op": "signal", "target": "xyz", "payload": {...}}   # forwarded, never stored

An empty path addresses the document root.
"""
from fastapi import WebSocket, WebSocketDisconnect
from typing import Any, Dict, List, Optional
import asyncio
import copy
import json
import time
import logging

import config

logger = logging.getLogger(__name__)


def _split(path: str) -> List[str]:
    return [part for part in (path or "").split("/") if part]


def get_path(data: Optional[dict], path: str) -> Any:
    node: Any = data
    for part in _split(path):
        if not isinstance(node, dict) or part not in node:
            return None
        node = node[part]
    return node


def set_path(data: Optional[dict], path: str, value: Any) -> Optional[dict]:
    """Return the document with ``value`` stored at ``path``; None deletes."""
    parts = _split(path)
    if not parts:
        return copy.deepcopy(value) if value is not None else None
    data = data if isinstance(data, dict) else {}
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    if value is None:
        node.pop(parts[-1], None)
    else:
        node[parts[-1]] = copy.deepcopy(value)
    return data


def update_path(data: Optional[dict], path: str, value: dict) -> Optional[dict]:
    """Shallow-merge ``value`` into the object at ``path``."""
    current = get_path(data, path)
    merged = dict(current) if isinstance(current, dict) else {}
    merged.update(copy.deepcopy(value))
    return set_path(data, path, merged)


class Document:
    def __init__(self, doc_id: str):
        self.doc_id = doc_id
        self.data: Optional[dict] = None
        self.subscribers: Dict[str, WebSocket] = {}  # client_id -> ws
        self.on_disconnect: Dict[str, List[str]] = {}  # client_id -> paths to remove
        self.last_activity = time.time()

    def touch(self):
        self.last_activity = time.time()

    def is_expired(self) -> bool:
        return not self.subscribers and time.time() - self.last_activity > config.ROOM_TTL_SECONDS

    def snapshot_message(self) -> dict:
        return {"type": "snapshot", "doc": self.data}


class DocumentHost:
    def __init__(self):
        self.documents: Dict[str, Document] = {}
        self.allowed_origins: List[str] = []
        self._cleanup_task: Optional[asyncio.Task] = None

    def start_cleanup_loop(self):
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_stale_documents())

    async def _cleanup_stale_documents(self):
        """Stale documents are never deleted by clients; expire them here."""
        while True:
            try:
                await asyncio.sleep(60)
                expired = [doc_id for doc_id, doc in self.documents.items() if doc.is_expired()]
                for doc_id in expired:
                    self.documents.pop(doc_id, None)
                    logger.info("Cleaned up stale document %s", doc_id)
            except asyncio.CancelledError:
                break
            except Exception:
                logger.exception("Error in document cleanup loop")

    async def connect(self, websocket: WebSocket, doc_id: str, client_id: str):
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        doc = self.documents.setdefault(doc_id, Document(doc_id))
        old = doc.subscribers.get(client_id)
        doc.subscribers[client_id] = websocket
        if old is not None:
            try:
                await old.close()
            except Exception:
                pass
        doc.touch()

        try:
            await websocket.send_json(doc.snapshot_message())
            while True:
                data = await websocket.receive_text()
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json({"type": "error", "code": "invalid_message",
                                               "message": "Message too large"})
                    continue
                try:
                    op = json.loads(data)
                except json.JSONDecodeError:
                    logger.warning("Malformed JSON from client %s: %s", client_id, data[:100])
                    await websocket.send_json({"type": "error", "code": "invalid_message",
                                               "message": "Invalid message format"})
                    continue
                await self.handle_op(doc, client_id, op)
        except WebSocketDisconnect:
            logger.info("Client %s disconnected from document %s", client_id, doc_id)
        except Exception:
            logger.exception("WebSocket error for client %s on document %s", client_id, doc_id)
        finally:
            if doc.subscribers.get(client_id) is websocket:
                del doc.subscribers[client_id]
                await self._run_disconnect_ops(doc, client_id)

    async def handle_op(self, doc: Document, client_id: str, op) -> None:
        if not isinstance(op, dict):
            return
        kind = op.get("op")
        path = op.get("path", "")
        if not isinstance(path, str):
            return
        doc.touch()

        if kind == "set":
            doc.data = set_path(doc.data, path, op.get("value"))
        elif kind == "update":
            value = op.get("value")
            if not isinstance(value, dict):
                return
            doc.data = update_path(doc.data, path, value)
        elif kind == "remove":
            doc.data = set_path(doc.data, path, None)
        elif kind == "on_disconnect_remove":
            paths = doc.on_disconnect.setdefault(client_id, [])
            if path not in paths:
                paths.append(path)
            return
        elif kind == "signal":
            target = doc.subscribers.get(op.get("target"))
            if target is not None:
                await target.send_json({"type": "signal", "from": client_id,
                                        "payload": op.get("payload", {})})
            return
        else:
            logger.debug("Ignoring unknown op %r from %s", kind, client_id)
            return
        await self.broadcast(doc)

    async def _run_disconnect_ops(self, doc: Document, client_id: str):
        paths = doc.on_disconnect.pop(client_id, [])
        for path in paths:
            doc.data = set_path(doc.data, path, None)
        if paths:
            logger.info("Ran %d disconnect op(s) for %s on document %s", len(paths), client_id, doc.doc_id)
            await self.broadcast(doc)
        if not doc.subscribers and doc.data is None:
            self.documents.pop(doc.doc_id, None)

    async def broadcast(self, doc: Document):
        message = doc.snapshot_message()
        disconnected = []
        for client_id, ws in list(doc.subscribers.items()):
            try:
                await ws.send_json(message)
            except Exception:
                disconnected.append(client_id)
        for client_id in disconnected:
            doc.subscribers.pop(client_id, None)
