"""Connection registry: exactly one {data channel, media channel} pair per remote peer."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from .errors import ChannelClosed, PeerUnreachable
from .transport.base import ChannelEvent, ChannelEventKind, DataChannel, MediaChannel

logger = logging.getLogger(__name__)


class PairState(str, Enum):
	CONNECTING = 'connecting'
	OPEN = 'open'
	CLOSED = 'closed'


@dataclass
class ConnectionPair:
	remote_peer_id: str
	data_channel: DataChannel
	media_channel: MediaChannel
	state: PairState = PairState.CONNECTING
	introduced: bool = False
	error: Optional[BaseException] = None
	timer: Optional[asyncio.TimerHandle] = field(default=None, repr=False)

	@property
	def initiator(self) -> str:
		return self.data_channel.initiator

	@property
	def connection_id(self) -> str:
		return self.data_channel.connection_id

	def owns(self, channel: Any) -> bool:
		return channel is self.data_channel or channel is self.media_channel


class RegistryListener:
	"""Receives pair lifecycle and traffic from the registry. Override what you need."""

	def on_pair_open(self, pair: ConnectionPair) -> None:
		pass

	def on_message(self, peer_id: str, message: Any) -> None:
		pass

	def on_stream(self, peer_id: str, stream: Any) -> None:
		pass

	def on_pair_closed(self, peer_id: str, error: Optional[BaseException]) -> None:
		pass


class ConnectionRegistry:
	"""Sole owner of every connection pair.

	All channel events go through :meth:`_dispatch`, which drives each pair
	through ``connecting -> open -> closed``. Events from channels that are not
	part of the current pair for their peer (a discarded duplicate, or a pair
	already torn down) are ignored.

	With ``connect_timeout`` set, a pair whose data channel has not opened
	within that many seconds is torn down as unreachable.
	"""

	def __init__(
		self,
		local_peer_id: str,
		listener: Optional[RegistryListener] = None,
		connect_timeout: Optional[float] = None,
	) -> None:
		self.local_peer_id = local_peer_id
		self.listener = listener or RegistryListener()
		self.connect_timeout = connect_timeout
		self._pairs: Dict[str, ConnectionPair] = {}

	def __len__(self) -> int:
		return len(self._pairs)

	def __contains__(self, peer_id: object) -> bool:
		return peer_id in self._pairs

	def get(self, peer_id: str) -> Optional[ConnectionPair]:
		return self._pairs.get(peer_id)

	def peers(self) -> List[str]:
		return list(self._pairs)

	def pairs(self) -> List[ConnectionPair]:
		return list(self._pairs.values())

	def open_peers(self) -> List[str]:
		return [peer_id for peer_id, pair in self._pairs.items() if pair.state is PairState.OPEN]

	def upsert(self, data_channel: DataChannel, media_channel: MediaChannel) -> ConnectionPair:
		"""Register a connection to a peer, keeping exactly one pair per peer.

		When a pair already exists for the peer, both ends pick the same
		survivor: the connection initiated by the smaller peer id. The other
		connection is closed without touching the participant.
		"""
		peer_id = data_channel.peer_id
		candidate = ConnectionPair(peer_id, data_channel, media_channel)
		existing = self._pairs.get(peer_id)
		if existing is None:
			self._install(candidate)
			return candidate
		if existing.connection_id == candidate.connection_id:
			return existing
		survivor, loser = self._resolve(existing, candidate)
		logger.info(
			'Duplicate connection with %s: keeping %s, closing %s',
			peer_id, survivor.connection_id, loser.connection_id,
		)
		self._discard(loser)
		if survivor is candidate:
			self._install(candidate)
		return survivor

	def broadcast(self, message: dict) -> int:
		"""Send to every open pair; closed or pending pairs are skipped, never queued."""
		delivered = 0
		for pair in list(self._pairs.values()):
			if self._send(pair, message):
				delivered += 1
		return delivered

	def send(self, peer_id: str, message: dict) -> bool:
		pair = self._pairs.get(peer_id)
		if pair is None:
			return False
		return self._send(pair, message)

	async def replace_outbound_track(self, kind: str, track: Any) -> None:
		"""Swap the outbound track of ``kind`` on every live pair.

		Failures are dropped; a dead channel removes its pair through its own
		close event.
		"""
		for pair in list(self._pairs.values()):
			if pair.state is PairState.CLOSED:
				continue
			try:
				await pair.media_channel.replace_track(kind, track)
			except Exception as error:
				logger.debug('Track replacement to %s failed: %s', pair.remote_peer_id, error)

	def close(self, peer_id: str) -> None:
		"""Tear down both channels of a peer's pair. Idempotent."""
		pair = self._pairs.get(peer_id)
		if pair is not None:
			self._teardown(pair)

	def close_all(self) -> None:
		for pair in list(self._pairs.values()):
			self._teardown(pair)

	def _send(self, pair: ConnectionPair, message: dict) -> bool:
		if pair.state is not PairState.OPEN or not pair.data_channel.is_open:
			return False
		try:
			pair.data_channel.send(message)
		except ChannelClosed:
			return False
		return True

	def _resolve(self, existing: ConnectionPair, candidate: ConnectionPair) -> Tuple[ConnectionPair, ConnectionPair]:
		preferred = min(self.local_peer_id, existing.remote_peer_id)
		existing_preferred = existing.initiator == preferred
		candidate_preferred = candidate.initiator == preferred
		if candidate_preferred and not existing_preferred:
			return candidate, existing
		return existing, candidate

	def _install(self, pair: ConnectionPair) -> None:
		self._pairs[pair.remote_peer_id] = pair
		pair.data_channel.bind(self._dispatch)
		pair.media_channel.bind(self._dispatch)
		if self.connect_timeout and pair.state is PairState.CONNECTING:
			loop = asyncio.get_running_loop()
			pair.timer = loop.call_later(self.connect_timeout, self._expire, pair)

	def _discard(self, pair: ConnectionPair) -> None:
		pair.state = PairState.CLOSED
		self._cancel_timer(pair)
		if self._pairs.get(pair.remote_peer_id) is pair:
			del self._pairs[pair.remote_peer_id]
		for channel in (pair.data_channel, pair.media_channel):
			channel.unbind()
			channel.close()

	def _expire(self, pair: ConnectionPair) -> None:
		pair.timer = None
		if pair.state is not PairState.CONNECTING or self._pairs.get(pair.remote_peer_id) is not pair:
			return
		logger.warning('Connection with %s not open after %ss', pair.remote_peer_id, self.connect_timeout)
		pair.error = PeerUnreachable(pair.remote_peer_id)
		self._teardown(pair)

	@staticmethod
	def _cancel_timer(pair: ConnectionPair) -> None:
		if pair.timer is not None:
			pair.timer.cancel()
			pair.timer = None

	def _teardown(self, pair: ConnectionPair) -> None:
		if pair.state is PairState.CLOSED:
			return
		self._discard(pair)
		logger.info('Connection with %s closed', pair.remote_peer_id)
		self.listener.on_pair_closed(pair.remote_peer_id, pair.error)

	def _dispatch(self, event: ChannelEvent) -> None:
		pair = self._pairs.get(event.peer_id)
		if pair is None or not pair.owns(event.channel):
			logger.debug('Ignoring %s from stale channel %r', event.kind.value, event.channel)
			return

		if event.kind is ChannelEventKind.OPEN:
			if event.channel is pair.data_channel and pair.state is PairState.CONNECTING:
				pair.state = PairState.OPEN
				self._cancel_timer(pair)
				logger.info('Data channel with %s open', pair.remote_peer_id)
				self.listener.on_pair_open(pair)
		elif event.kind is ChannelEventKind.MESSAGE:
			if pair.state is PairState.OPEN:
				self.listener.on_message(pair.remote_peer_id, event.message)
		elif event.kind is ChannelEventKind.STREAM:
			self.listener.on_stream(pair.remote_peer_id, event.stream)
		elif event.kind is ChannelEventKind.ERROR:
			logger.warning('Connection with %s failed: %s', pair.remote_peer_id, event.error)
			pair.error = event.error
			self._teardown(pair)
		elif event.kind is ChannelEventKind.CLOSE:
			self._teardown(pair)
