"""
Broker for the direct-link transport.

Peers register under an id, open a link to another peer, then exchange
opaque ``data`` packets over it. The broker never looks inside a packet and
holds no room state: the host peer does. When a peer goes away every peer
linked to it gets ``peer_closed``.
"""
from fastapi import WebSocket, WebSocketDisconnect
from typing import Dict, List, Set
import json
import logging

import config
from errors import InvalidMessage, PeerUnavailable

logger = logging.getLogger(__name__)


class PeerBroker:
    def __init__(self):
        self.peers: Dict[str, WebSocket] = {}
        self.links: Dict[str, Set[str]] = {}
        self.allowed_origins: List[str] = []

    async def connect(self, websocket: WebSocket, peer_id: str):
        origin = websocket.headers.get("origin", "")
        if self.allowed_origins and origin not in self.allowed_origins:
            logger.warning("Rejected WebSocket from unauthorized origin: %s", origin)
            await websocket.close(code=1008)
            return

        await websocket.accept()
        if peer_id in self.peers:
            await websocket.send_json({"type": "error", "code": "peer_id_taken",
                                       "message": f"Peer id {peer_id} is already registered"})
            await websocket.close()
            return

        self.peers[peer_id] = websocket
        self.links[peer_id] = set()
        logger.info("Peer %s registered", peer_id)
        await websocket.send_json({"type": "registered", "peer": peer_id})

        try:
            while True:
                data = await websocket.receive_text()
                if len(data) > config.MAX_WS_MESSAGE_SIZE:
                    await websocket.send_json(InvalidMessage("Message too large").to_message())
                    continue
                try:
                    message = json.loads(data)
                except json.JSONDecodeError:
                    await websocket.send_json(InvalidMessage().to_message())
                    continue
                if isinstance(message, dict):
                    await self.handle_message(peer_id, message)
        except WebSocketDisconnect:
            logger.info("Peer %s disconnected", peer_id)
        except Exception:
            logger.exception("WebSocket error for peer %s", peer_id)
        finally:
            await self.unregister(peer_id)

    async def handle_message(self, peer_id: str, message: dict):
        msg_type = message.get("type")
        target = message.get("target")
        ws = self.peers[peer_id]

        if msg_type == "connect":
            if target not in self.peers or target == peer_id:
                await ws.send_json({"type": "peer_unavailable", "peer": target,
                                    "message": PeerUnavailable.default_message})
                return
            self.links[peer_id].add(target)
            self.links[target].add(peer_id)
            await self.peers[target].send_json({"type": "open", "peer": peer_id})
            await ws.send_json({"type": "open", "peer": target})

        elif msg_type == "data":
            if target not in self.links[peer_id] or target not in self.peers:
                await ws.send_json({"type": "peer_unavailable", "peer": target,
                                    "message": PeerUnavailable.default_message})
                return
            await self.peers[target].send_json({"type": "data", "from": peer_id,
                                                "payload": message.get("payload", {})})

        else:
            logger.debug("Ignoring unknown broker message %r from %s", msg_type, peer_id)

    async def unregister(self, peer_id: str):
        self.peers.pop(peer_id, None)
        linked = self.links.pop(peer_id, set())
        for other in linked:
            self.links.get(other, set()).discard(peer_id)
            ws = self.peers.get(other)
            if ws is None:
                continue
            try:
                await ws.send_json({"type": "peer_closed", "peer": peer_id})
            except Exception:
                logger.warning("Could not notify %s that %s closed", other, peer_id)
