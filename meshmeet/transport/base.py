"""Channel and transport contracts shared by the aiortc and in-process transports."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, List, Optional, Tuple

from ..config import Config
from ..errors import ChannelClosed, SignalingUnavailable
from ..models import Identity, MediaStream

logger = logging.getLogger(__name__)


class TransportStatus(str, Enum):
    CLOSED = 'closed'
    OPENING = 'opening'
    OPEN = 'open'
    DISCONNECTED = 'disconnected'


class ChannelEventKind(str, Enum):
    OPEN = 'open'
    MESSAGE = 'message'
    STREAM = 'stream'
    CLOSE = 'close'
    ERROR = 'error'


@dataclass
class ChannelEvent:
    kind: ChannelEventKind
    channel: 'Channel'
    message: Any = None
    stream: Optional[MediaStream] = None
    error: Optional[BaseException] = None

    @property
    def peer_id(self) -> str:
        return self.channel.peer_id


ChannelListener = Callable[[ChannelEvent], None]
# Returns (audio_track, video_track); either may be None when local media is missing.
TrackSource = Callable[[], Tuple[Any, Any]]
IncomingHandler = Callable[['DataChannel', 'MediaChannel', dict], None]
StatusHandler = Callable[[TransportStatus], None]


class Channel:
    """One side of a connection to a remote peer.

    Events are delivered to a single bound listener. Events emitted before a
    listener is bound are buffered and replayed on :meth:`bind`.
    """

    def __init__(self, peer_id: str, connection_id: str, initiator: str) -> None:
        self.peer_id = peer_id
        self.connection_id = connection_id
        self.initiator = initiator
        self._listener: Optional[ChannelListener] = None
        self._pending: List[ChannelEvent] = []
        self._detached = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def bind(self, listener: ChannelListener) -> None:
        self._listener = listener
        self._detached = False
        pending, self._pending = self._pending, []
        for event in pending:
            listener(event)

    def unbind(self) -> None:
        """Stop delivering events; later events are dropped, not buffered."""
        self._listener = None
        self._detached = True
        self._pending.clear()

    def emit(self, kind: ChannelEventKind, **fields: Any) -> None:
        event = ChannelEvent(kind=kind, channel=self, **fields)
        if self._listener is not None:
            self._listener(event)
        elif not self._detached:
            self._pending.append(event)

    def close(self) -> None:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f'<{type(self).__name__} peer={self.peer_id} conn={self.connection_id}>'


class DataChannel(Channel):
    """Reliable, ordered channel for structured messages."""

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    def send(self, message: dict) -> None:
        raise NotImplementedError

    def _ensure_open(self) -> None:
        if not self.is_open:
            raise ChannelClosed(f'Data channel to {self.peer_id} is not open')


class MediaChannel(Channel):
    """Channel carrying one outbound audio and one outbound video track."""

    remote_media: Optional[MediaStream] = None

    async def replace_track(self, kind: str, track: Any) -> None:
        raise NotImplementedError


class PeerTransport(abc.ABC):
    """Turns rendezvous identifiers into direct peer connections.

    Subclasses implement the signaling specifics; this base owns status
    reporting and the auto-reconnect backoff loop.
    """

    def __init__(
        self,
        *,
        reconnect_initial_delay: Optional[float] = None,
        reconnect_max_delay: Optional[float] = None,
        reconnect_max_attempts: Optional[int] = None,
    ) -> None:
        self.peer_id: Optional[str] = None
        self.identity: Optional[Identity] = None
        self.status = TransportStatus.CLOSED
        self.on_incoming: Optional[IncomingHandler] = None
        self.on_status: Optional[StatusHandler] = None
        self.track_source: TrackSource = lambda: (None, None)
        self._reconnect_initial_delay = (
            Config.RECONNECT_INITIAL_DELAY if reconnect_initial_delay is None else reconnect_initial_delay
        )
        self._reconnect_max_delay = Config.RECONNECT_MAX_DELAY if reconnect_max_delay is None else reconnect_max_delay
        self._reconnect_max_attempts = (
            Config.RECONNECT_MAX_ATTEMPTS if reconnect_max_attempts is None else reconnect_max_attempts
        )
        self._reconnect_task: Optional[asyncio.Task] = None

    async def open(self, identity: Identity) -> Identity:
        """Register with the rendezvous service and return the identity with its peer id.

        Raises:
            SignalingUnavailable: when the rendezvous service cannot be reached.
        """
        self.identity = identity
        self._set_status(TransportStatus.OPENING)
        try:
            peer_id = await self._open(requested_id=None)
        except SignalingUnavailable:
            self._set_status(TransportStatus.CLOSED)
            raise
        if self.status is TransportStatus.CLOSED:
            await self._close()
            raise SignalingUnavailable('Transport was closed while opening')
        self.peer_id = peer_id
        identity.peer_id = peer_id
        self._set_status(TransportStatus.OPEN)
        logger.info('Registered with rendezvous service as %s', peer_id)
        return identity

    @abc.abstractmethod
    def connect(self, remote_peer_id: str, metadata: Optional[dict] = None) -> Tuple[DataChannel, MediaChannel]:
        """Start a connection; channels are returned in the connecting state."""

    async def reconnect(self) -> None:
        """Manual retry: re-register the current identity right away."""
        if self.peer_id is None:
            raise SignalingUnavailable('Transport was never opened')
        if self.status is TransportStatus.OPEN:
            return
        self._cancel_reconnect()
        self._set_status(TransportStatus.OPENING)
        try:
            await self._open(requested_id=self.peer_id)
        except SignalingUnavailable:
            self._set_status(TransportStatus.DISCONNECTED)
            raise
        self._set_status(TransportStatus.OPEN)

    async def close(self) -> None:
        self._cancel_reconnect()
        self._set_status(TransportStatus.CLOSED)
        await self._close()
        self.peer_id = None

    @abc.abstractmethod
    async def _open(self, requested_id: Optional[str]) -> str:
        """Open the signaling session, returning the assigned peer id."""

    @abc.abstractmethod
    async def _close(self) -> None:
        """Close every connection and release the rendezvous identity."""

    def _handle_signaling_lost(self) -> None:
        if self.status is TransportStatus.CLOSED:
            return
        logger.warning('Lost connection to rendezvous service')
        self._set_status(TransportStatus.DISCONNECTED)
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.create_task(self._reconnect_loop())

    async def _reconnect_loop(self) -> None:
        delay = self._reconnect_initial_delay
        attempt = 0
        while self.status is TransportStatus.DISCONNECTED:
            attempt += 1
            if self._reconnect_max_attempts and attempt > self._reconnect_max_attempts:
                logger.error('Giving up on rendezvous reconnect after %d attempts', attempt - 1)
                return
            await asyncio.sleep(delay)
            if self.status is not TransportStatus.DISCONNECTED:
                return
            try:
                await self._open(requested_id=self.peer_id)
            except SignalingUnavailable as error:
                logger.info('Reconnect attempt %d failed: %s', attempt, error)
                delay = min(delay * 2, self._reconnect_max_delay)
                continue
            self._set_status(TransportStatus.OPEN)
            logger.info('Reconnected to rendezvous service as %s', self.peer_id)
            return

    def _cancel_reconnect(self) -> None:
        if self._reconnect_task and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        self._reconnect_task = None

    def _set_status(self, status: TransportStatus) -> None:
        if status is self.status:
            return
        self.status = status
        if self.on_status:
            try:
                self.on_status(status)
            except Exception as error:
                logger.warning('Transport status callback failed: %s', error)

    def _deliver_incoming(self, data: DataChannel, media: MediaChannel, metadata: dict) -> None:
        if self.on_incoming is None:
            logger.warning('Incoming connection from %s with no handler; closing', data.peer_id)
            data.close()
            media.close()
            return
        self.on_incoming(data, media, metadata)
