"""In-process rendezvous and transport.

Connections between transports registered on the same :class:`MemoryRendezvous`
behave like real ones from the coordinator's point of view: channels open
asynchronously, messages are serialized and delivered in send order through the
event loop, and closing either end closes both.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..errors import ChannelClosed, PeerUnreachable, SignalingUnavailable
from ..media.tracks import placeholder_tracks
from ..models import MediaStream
from .base import ChannelEventKind, DataChannel, MediaChannel, PeerTransport

logger = logging.getLogger(__name__)


class MemoryDataChannel(DataChannel):

    def __init__(self, link: 'MemoryLink', side: int, peer_id: str) -> None:
        super().__init__(peer_id, link.connection_id, link.initiator)
        self._link = link
        self._side = side
        self._open = False
        self.sent: List[dict] = []

    @property
    def is_open(self) -> bool:
        return self._open and not self._closed

    def send(self, message: dict) -> None:
        self._ensure_open()
        wire = json.dumps(message)
        self.sent.append(message)
        remote = self._link.data[1 - self._side]
        asyncio.get_running_loop().call_soon(remote._receive, wire)

    def close(self) -> None:
        self._link.close(self._side)

    def _mark_open(self) -> None:
        if self._closed or self._open:
            return
        self._open = True
        self.emit(ChannelEventKind.OPEN)

    def _receive(self, wire: str) -> None:
        if not self.is_open:
            return
        self.emit(ChannelEventKind.MESSAGE, message=json.loads(wire))


class MemoryMediaChannel(MediaChannel):

    def __init__(self, link: 'MemoryLink', side: int, peer_id: str, tracks: Tuple[Any, Any]) -> None:
        super().__init__(peer_id, link.connection_id, link.initiator)
        self._link = link
        self._side = side
        self.outbound: Dict[str, Any] = {'audio': tracks[0], 'video': tracks[1]}
        self.replace_calls: List[Tuple[str, Any]] = []
        self.remote_media = None

    async def replace_track(self, kind: str, track: Any) -> None:
        if self._closed:
            raise ChannelClosed(f'Media channel to {self.peer_id} is closed')
        self.replace_calls.append((kind, track))
        self.outbound[kind] = track
        remote = self._link.media[1 - self._side]
        if remote.remote_media is not None:
            setattr(remote.remote_media, kind, track)

    def close(self) -> None:
        self._link.close(self._side)

    def _receive_stream(self, media: MediaStream) -> None:
        if self._closed:
            return
        self.remote_media = media
        self.emit(ChannelEventKind.STREAM, stream=media)


class MemoryLink:
    """Both ends of one connection attempt. Side 0 is the initiator."""

    def __init__(self, connection_id: str, initiator: str) -> None:
        self.connection_id = connection_id
        self.initiator = initiator
        self.data: List[MemoryDataChannel] = []
        self.media: List[MemoryMediaChannel] = []
        self.transports: List['MemoryPeerTransport'] = []
        self.closed = False

    def close(self, side: int) -> None:
        if self.closed:
            return
        self.closed = True
        self._close_side(side)
        if len(self.data) == 2:
            asyncio.get_running_loop().call_soon(self._close_side, 1 - side)
        for transport in self.transports:
            transport._forget(self)

    def _close_side(self, side: int) -> None:
        for channel in (self.data[side], self.media[side]):
            if not channel._closed:
                channel._closed = True
                channel.emit(ChannelEventKind.CLOSE)

    def fail(self, error: BaseException) -> None:
        """Abort a connection attempt that never reached the remote side."""
        if self.closed:
            return
        self.data[0].emit(ChannelEventKind.ERROR, error=error)
        self.close(0)


class MemoryRendezvous:
    """Shared rendezvous hub; every transport registered here can reach the others."""

    def __init__(self, id_factory: Optional[Callable[[], str]] = None) -> None:
        self._peers: Dict[str, 'MemoryPeerTransport'] = {}
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex[:12])
        self.reachable = True
        self.unresponsive: set[str] = set()
        self.links: List[MemoryLink] = []

    def transport(self, **kwargs: Any) -> 'MemoryPeerTransport':
        return MemoryPeerTransport(self, **kwargs)

    def lookup(self, peer_id: str) -> Optional['MemoryPeerTransport']:
        return self._peers.get(peer_id)

    def register(self, transport: 'MemoryPeerTransport', requested_id: Optional[str]) -> str:
        if not self.reachable:
            raise SignalingUnavailable('Rendezvous service is unreachable')
        if requested_id is not None:
            owner = self._peers.get(requested_id)
            if owner is not None and owner is not transport:
                raise SignalingUnavailable(f'ID {requested_id} is taken')
            peer_id = requested_id
        else:
            peer_id = self._id_factory()
            while peer_id in self._peers:
                peer_id = self._id_factory()
        self._peers[peer_id] = transport
        return peer_id

    def unregister(self, transport: 'MemoryPeerTransport') -> None:
        for peer_id, owner in list(self._peers.items()):
            if owner is transport:
                del self._peers[peer_id]

    def drop(self, peer_id: str) -> None:
        """Simulate an unexpected signaling disconnect of one peer."""
        transport = self._peers.pop(peer_id, None)
        if transport is not None:
            transport._handle_signaling_lost()

    def open_links(self) -> List[MemoryLink]:
        return [link for link in self.links if not link.closed]


class MemoryPeerTransport(PeerTransport):

    _counter = itertools.count(1)

    def __init__(self, rendezvous: MemoryRendezvous, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._rendezvous = rendezvous
        self._links: List[MemoryLink] = []
        self.answered_with_placeholder = 0

    @property
    def links(self) -> List[MemoryLink]:
        return list(self._links)

    async def _open(self, requested_id: Optional[str]) -> str:
        await asyncio.sleep(0)
        return self._rendezvous.register(self, requested_id)

    async def _close(self) -> None:
        for link in list(self._links):
            side = 0 if link.transports and link.transports[0] is self else 1
            link.close(side)
        self._rendezvous.unregister(self)

    def connect(self, remote_peer_id: str, metadata: Optional[dict] = None) -> Tuple[MemoryDataChannel, MemoryMediaChannel]:
        if self.peer_id is None:
            raise SignalingUnavailable('Transport is not open')
        link = MemoryLink(f'mc_{next(self._counter)}', initiator=self.peer_id)
        link.transports.append(self)
        link.data.append(MemoryDataChannel(link, 0, remote_peer_id))
        link.media.append(MemoryMediaChannel(link, 0, remote_peer_id, self._outbound_tracks()))
        self._links.append(link)
        self._rendezvous.links.append(link)
        asyncio.get_running_loop().call_soon(self._offer, link, remote_peer_id, dict(metadata or {}))
        return link.data[0], link.media[0]

    def _offer(self, link: MemoryLink, remote_peer_id: str, metadata: dict) -> None:
        if link.closed:
            return
        remote = self._rendezvous.lookup(remote_peer_id)
        if remote is None:
            logger.info('Peer %s is not registered', remote_peer_id)
            link.fail(PeerUnreachable(remote_peer_id))
            return
        if remote_peer_id in self._rendezvous.unresponsive:
            logger.debug('Peer %s never answers', remote_peer_id)
            return
        remote._answer(link, self.peer_id, metadata)

    def _answer(self, link: MemoryLink, remote_peer_id: str, metadata: dict) -> None:
        link.transports.append(self)
        link.data.append(MemoryDataChannel(link, 1, remote_peer_id))
        link.media.append(MemoryMediaChannel(link, 1, remote_peer_id, self._outbound_tracks(answering=True)))
        self._links.append(link)
        self._deliver_incoming(link.data[1], link.media[1], metadata)
        asyncio.get_running_loop().call_soon(self._establish, link)

    @staticmethod
    def _establish(link: MemoryLink) -> None:
        if link.closed:
            return
        for side in (0, 1):
            outbound = link.media[1 - side].outbound
            link.media[side]._receive_stream(MediaStream(audio=outbound['audio'], video=outbound['video']))
        for channel in link.data:
            channel._mark_open()

    def _outbound_tracks(self, answering: bool = False) -> Tuple[Any, Any]:
        audio, video = self.track_source()
        if audio is None or video is None:
            fallback_audio, fallback_video = placeholder_tracks()
            if answering:
                self.answered_with_placeholder += 1
            audio = audio or fallback_audio
            video = video or fallback_video
        return audio, video

    def _forget(self, link: MemoryLink) -> None:
        if link in self._links:
            self._links.remove(link)
