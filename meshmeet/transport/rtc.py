"""aiortc peer transport with a websocket rendezvous client.

Every connection attempt is its own ``RTCPeerConnection`` carrying one ordered
data channel and one audio plus one video sender. Offers and answers are
complete SDP (aiortc gathers candidates before ``setLocalDescription``
returns), relayed through the rendezvous websocket.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from typing import Any, Dict, Optional, Tuple

import aiohttp
from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaRelay

from ..config import Config
from ..errors import ChannelClosed, PeerUnreachable, SignalingUnavailable
from ..media.tracks import placeholder_tracks
from ..models import MediaStream
from .base import ChannelEventKind, DataChannel, MediaChannel, PeerTransport

logger = logging.getLogger(__name__)

DATA_CHANNEL_LABEL = "mesh"


def build_configuration(ice_servers: list[dict]) -> Optional[RTCConfiguration]:
    if not ice_servers:
        return None
    servers = [
        RTCIceServer(
            urls=server["urls"],
            username=server.get("username"),
            credential=server.get("credential"),
        )
        for server in ice_servers
    ]
    return RTCConfiguration(iceServers=servers)


class RtcDataChannel(DataChannel):
    """Wraps the aiortc data channel of one link."""

    def __init__(self, link: "PeerLink") -> None:
        super().__init__(link.remote_peer_id, link.connection_id, link.initiator)
        self._link = link
        self._channel = None

    @property
    def is_open(self) -> bool:
        return self._channel is not None and self._channel.readyState == "open" and not self._closed

    def attach(self, channel) -> None:
        self._channel = channel

        @channel.on("open")
        def on_open():
            if not self._closed:
                self.emit(ChannelEventKind.OPEN)

        @channel.on("message")
        def on_message(raw):
            if self._closed:
                return
            try:
                message = json.loads(raw)
            except (TypeError, ValueError):
                logger.warning("Dropping non-JSON message from %s", self.peer_id)
                return
            self.emit(ChannelEventKind.MESSAGE, message=message)

        @channel.on("close")
        def on_close():
            self._link.close()

        if channel.readyState == "open":
            self.emit(ChannelEventKind.OPEN)

    def send(self, message: dict) -> None:
        self._ensure_open()
        self._channel.send(json.dumps(message))

    def close(self) -> None:
        self._link.close()


class RtcMediaChannel(MediaChannel):
    """The audio and video senders of one link plus the tracks received on it."""

    def __init__(self, link: "PeerLink") -> None:
        super().__init__(link.remote_peer_id, link.connection_id, link.initiator)
        self._link = link
        self.remote_media = MediaStream()

    async def replace_track(self, kind: str, track: Any) -> None:
        if self._closed:
            raise ChannelClosed(f"Media channel to {self.peer_id} is closed")
        self._link.replace_outbound(kind, track)

    def close(self) -> None:
        self._link.close()

    def _receive_track(self, track) -> None:
        setattr(self.remote_media, track.kind, track)
        self.emit(ChannelEventKind.STREAM, stream=self.remote_media)


class PeerLink:
    """One connection attempt to a remote peer."""

    def __init__(
        self,
        transport: "RtcPeerTransport",
        remote_peer_id: str,
        connection_id: str,
        initiator: str,
    ) -> None:
        self.transport = transport
        self.remote_peer_id = remote_peer_id
        self.connection_id = connection_id
        self.initiator = initiator
        self.pc = RTCPeerConnection(configuration=build_configuration(transport.ice_servers))
        self.data = RtcDataChannel(self)
        self.media = RtcMediaChannel(self)
        self.senders: Dict[str, Any] = {}
        self.closed = False

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.info("Connection %s state: %s", self.connection_id, self.pc.connectionState)
            if self.pc.connectionState in ("failed", "closed"):
                self.close()

        @self.pc.on("track")
        def on_track(track):
            logger.debug("Received %s track from %s", track.kind, self.remote_peer_id)
            self.media._receive_track(track)

        @self.pc.on("datachannel")
        def on_datachannel(channel):
            if channel.label == DATA_CHANNEL_LABEL:
                self.data.attach(channel)

    def add_outbound_tracks(self, tracks: Tuple[Any, Any]) -> None:
        for track in tracks:
            self.senders[track.kind] = self.pc.addTrack(self._outbound(track))

    def replace_outbound(self, kind: str, track: Any) -> None:
        sender = self.senders.get(kind)
        if sender is None:
            raise ChannelClosed(f"No {kind} sender on connection {self.connection_id}")
        previous = sender.track
        sender.replaceTrack(self._outbound(track))
        if previous is not None:
            previous.stop()

    def _outbound(self, track: Any) -> Any:
        # One local track feeds every connection, so each sender reads its own relay proxy.
        return self.transport.relay.subscribe(track, buffered=False)

    def fail(self, error: BaseException) -> None:
        if self.closed:
            return
        self.data.emit(ChannelEventKind.ERROR, error=error)
        self.close()

    def close(self, notify_remote: bool = True) -> None:
        if self.closed:
            return
        self.closed = True
        for channel in (self.data, self.media):
            if not channel._closed:
                channel._closed = True
                channel.emit(ChannelEventKind.CLOSE)
        for sender in self.senders.values():
            if sender.track is not None:
                sender.track.stop()
        self.transport._forget(self, notify_remote=notify_remote)
        self.transport._spawn(self.pc.close())


class RtcPeerTransport(PeerTransport):
    """Peer transport over aiortc, registered with the rendezvous websocket."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        ice_servers: Optional[list[dict]] = None,
        open_timeout: Optional[float] = None,
        heartbeat: Optional[float] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.url = url or Config.SIGNALING_URL
        self.ice_servers = Config.ice_servers() if ice_servers is None else ice_servers
        self.open_timeout = Config.SIGNALING_OPEN_TIMEOUT if open_timeout is None else open_timeout
        self.heartbeat = Config.SIGNALING_HEARTBEAT_INTERVAL if heartbeat is None else heartbeat
        self.relay = MediaRelay()
        self._links: Dict[str, PeerLink] = {}
        self._session: Optional[aiohttp.ClientSession] = None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._reader: Optional[asyncio.Task] = None
        self._tasks: set[asyncio.Task] = set()

    async def _open(self, requested_id: Optional[str]) -> str:
        await self._close_signaling()
        params = {"id": requested_id} if requested_id else {}
        session = aiohttp.ClientSession()
        try:
            ws = await asyncio.wait_for(
                session.ws_connect(self.url, params=params, heartbeat=self.heartbeat or None),
                timeout=self.open_timeout,
            )
            greeting = await asyncio.wait_for(ws.receive_json(), timeout=self.open_timeout)
        except (aiohttp.ClientError, OSError, asyncio.TimeoutError, TypeError, ValueError) as error:
            await session.close()
            raise SignalingUnavailable(f"Could not reach rendezvous service at {self.url}: {error}") from error

        kind = greeting.get("type") if isinstance(greeting, dict) else None
        if kind != "OPEN" or not greeting.get("id"):
            await ws.close()
            await session.close()
            if kind == "ID-TAKEN":
                raise SignalingUnavailable(f"ID {requested_id} is taken")
            raise SignalingUnavailable(f"Unexpected greeting from rendezvous service: {greeting!r}")

        self._session = session
        self._ws = ws
        self._reader = asyncio.create_task(self._read_loop(ws))
        return greeting["id"]

    async def _close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        links = list(self._links.values())
        for link in links:
            link.close(notify_remote=False)
        if self._ws is not None and not self._ws.closed:
            await asyncio.gather(*(self._send_leave(link) for link in links))
        await self._close_signaling()
        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=self.open_timeout)

    async def _close_signaling(self) -> None:
        ws, self._ws = self._ws, None
        session, self._session = self._session, None
        reader, self._reader = self._reader, None
        if ws is not None:
            await ws.close()
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        if session is not None:
            await session.close()

    def connect(self, remote_peer_id: str, metadata: Optional[dict] = None) -> Tuple[RtcDataChannel, RtcMediaChannel]:
        if self.peer_id is None:
            raise SignalingUnavailable("Transport is not open")
        link = PeerLink(self, remote_peer_id, f"mc_{uuid.uuid4().hex[:12]}", initiator=self.peer_id)
        self._links[link.connection_id] = link
        link.data.attach(link.pc.createDataChannel(DATA_CHANNEL_LABEL, ordered=True))
        link.add_outbound_tracks(self._local_tracks())
        self._spawn(self._offer(link, dict(metadata or {})))
        return link.data, link.media

    async def _offer(self, link: PeerLink, metadata: dict) -> None:
        try:
            await link.pc.setLocalDescription(await link.pc.createOffer())
            await self._signal("OFFER", link.remote_peer_id, {
                "connectionId": link.connection_id,
                "sdp": link.pc.localDescription.sdp,
                "type": link.pc.localDescription.type,
                "metadata": metadata,
            })
        except Exception as error:
            logger.warning("Offer to %s failed: %s", link.remote_peer_id, error)
            link.fail(error)

    async def _answer(self, src: str, payload: dict) -> None:
        connection_id = payload.get("connectionId") or f"mc_{uuid.uuid4().hex[:12]}"
        link = PeerLink(self, src, connection_id, initiator=src)
        self._links[connection_id] = link
        try:
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type=payload.get("type", "offer")))
            link.add_outbound_tracks(self._local_tracks())
            self._deliver_incoming(link.data, link.media, payload.get("metadata") or {})
            await link.pc.setLocalDescription(await link.pc.createAnswer())
            await self._signal("ANSWER", src, {
                "connectionId": connection_id,
                "sdp": link.pc.localDescription.sdp,
                "type": link.pc.localDescription.type,
            })
        except Exception as error:
            logger.warning("Answer to %s failed: %s", src, error)
            link.fail(error)

    async def _accept_answer(self, payload: dict) -> None:
        link = self._links.get(payload.get("connectionId"))
        if link is None or link.closed:
            return
        try:
            await link.pc.setRemoteDescription(RTCSessionDescription(sdp=payload["sdp"], type=payload.get("type", "answer")))
        except Exception as error:
            logger.warning("Invalid answer from %s: %s", link.remote_peer_id, error)
            link.fail(error)

    def _local_tracks(self) -> Tuple[Any, Any]:
        audio, video = self.track_source()
        if audio is None or video is None:
            fallback_audio, fallback_video = placeholder_tracks()
            audio = audio or fallback_audio
            video = video or fallback_video
        return audio, video

    async def _signal(self, kind: str, dst: str, payload: dict) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise SignalingUnavailable("Not connected to the rendezvous service")
        await ws.send_json({"type": kind, "dst": dst, "payload": payload})

    async def _read_loop(self, ws: aiohttp.ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type == aiohttp.WSMsgType.TEXT:
                try:
                    message = json.loads(msg.data)
                except ValueError:
                    logger.warning("Dropping non-JSON signaling message")
                    continue
                self._handle_signal(message)
            elif msg.type == aiohttp.WSMsgType.ERROR:
                logger.warning("Signaling socket error: %s", ws.exception())
                break
        if ws is self._ws:
            self._ws = None
            self._handle_signaling_lost()

    def _handle_signal(self, message: dict) -> None:
        kind = message.get("type")
        payload = message.get("payload") or {}
        if kind == "OFFER":
            self._spawn(self._answer(message.get("src"), payload))
        elif kind == "ANSWER":
            self._spawn(self._accept_answer(payload))
        elif kind == "LEAVE":
            link = self._links.get(payload.get("connectionId"))
            if link is not None:
                link.close(notify_remote=False)
        elif kind == "ERROR":
            link = self._links.get(payload.get("connectionId"))
            if payload.get("kind") == "peer-unavailable" and link is not None:
                logger.info("Peer %s is not available", payload.get("peerId"))
                link.fail(PeerUnreachable(payload.get("peerId") or link.remote_peer_id))
        else:
            logger.debug("Ignoring signaling message %s", kind)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _forget(self, link: PeerLink, notify_remote: bool) -> None:
        self._links.pop(link.connection_id, None)
        if notify_remote and self._ws is not None and not self._ws.closed:
            self._spawn(self._send_leave(link))

    async def _send_leave(self, link: PeerLink) -> None:
        try:
            await self._signal("LEAVE", link.remote_peer_id, {"connectionId": link.connection_id})
        except (SignalingUnavailable, ConnectionError) as error:
            logger.debug("Could not send LEAVE to %s: %s", link.remote_peer_id, error)
