"""Rendezvous service: hands out peer ids and relays connection setup between them.

The service only forwards offers, answers and leave notices; it never sees
media content.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, Literal, Optional

from fastapi import APIRouter, FastAPI, WebSocket, WebSocketDisconnect
from pydantic import BaseModel, ValidationError

from ..config import Config

logging.basicConfig(level=logging.INFO, format="%(levelname)-8s | %(message)s")
logger = logging.getLogger(__name__)


class Envelope(BaseModel):
    """Client-to-server signaling message."""

    type: Literal["OFFER", "ANSWER", "LEAVE", "HEARTBEAT"]
    dst: Optional[str] = None
    payload: Dict[str, Any] = {}


class RendezvousHub:
    """Registry of connected peers keyed by id."""

    def __init__(self) -> None:
        self._peers: Dict[str, WebSocket] = {}
        self._lock = asyncio.Lock()

    @property
    def peer_ids(self) -> list[str]:
        return list(self._peers)

    async def register(self, websocket: WebSocket, requested_id: Optional[str]) -> Optional[str]:
        """Claim ``requested_id`` (or a fresh id); returns None when the id is taken."""
        async with self._lock:
            if requested_id:
                if requested_id in self._peers:
                    return None
                peer_id = requested_id
            else:
                peer_id = uuid.uuid4().hex[:12]
                while peer_id in self._peers:
                    peer_id = uuid.uuid4().hex[:12]
            self._peers[peer_id] = websocket
            return peer_id

    async def unregister(self, peer_id: str, websocket: WebSocket) -> None:
        async with self._lock:
            if self._peers.get(peer_id) is websocket:
                del self._peers[peer_id]

    async def relay(self, src: str, envelope: Envelope) -> bool:
        """Forward to ``envelope.dst``; False when the destination is not connected."""
        target = self._peers.get(envelope.dst or "")
        if target is None:
            return False
        try:
            await target.send_json({"type": envelope.type, "src": src, "payload": envelope.payload})
        except (RuntimeError, WebSocketDisconnect) as error:
            logger.warning("Relay %s -> %s failed: %s", src, envelope.dst, error)
            return False
        return True


hub = RendezvousHub()
router = APIRouter(tags=["signaling"])


async def _serve_peer(websocket: WebSocket, peer_id: str) -> None:
    while True:
        try:
            raw = await websocket.receive_json()
        except ValueError:
            logger.warning("Dropping non-JSON message from %s", peer_id)
            continue
        try:
            envelope = Envelope.model_validate(raw)
        except ValidationError as error:
            logger.warning("Dropping invalid message from %s: %s", peer_id, error)
            continue
        if envelope.type == "HEARTBEAT":
            continue
        if not await hub.relay(peer_id, envelope):
            logger.info("%s from %s: peer %s unavailable", envelope.type, peer_id, envelope.dst)
            if envelope.type == "OFFER":
                await websocket.send_json({
                    "type": "ERROR",
                    "payload": {
                        "kind": "peer-unavailable",
                        "peerId": envelope.dst,
                        "connectionId": envelope.payload.get("connectionId"),
                    },
                })


@router.websocket("/signal")
async def signal(websocket: WebSocket, id: Optional[str] = None):
    """Signaling socket; ``id`` lets a reconnecting peer keep its identifier."""
    await websocket.accept()
    peer_id = await hub.register(websocket, id)
    if peer_id is None:
        logger.info("Rejected registration: id %s is taken", id)
        await websocket.send_json({"type": "ID-TAKEN"})
        await websocket.close()
        return
    logger.info("Peer %s connected", peer_id)
    await websocket.send_json({"type": "OPEN", "id": peer_id})
    try:
        await _serve_peer(websocket, peer_id)
    except WebSocketDisconnect:
        logger.info("Peer %s disconnected", peer_id)
    finally:
        await hub.unregister(peer_id, websocket)


@router.get("/ice-servers")
async def ice_servers() -> list[dict]:
    return Config.ice_servers()


app = FastAPI(title="meshmeet rendezvous service")
app.include_router(router)


@app.get("/healthz")
async def health() -> dict[str, str]:
    return {"status": "ok"}
