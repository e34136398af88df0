"""Mesh membership: introduce peers to each other until every pair is connected.

A peer that opens a data channel announces itself with ``USER_INFO``. The first
``USER_INFO`` received over a pair is answered with a ``PEER_LIST`` of every
other peer the receiver holds a connection to, and the recipient connects to
each listed peer it does not know yet. Because the registry keeps one pair per
peer, simultaneous connects from both ends converge, and introductions stop
once every peer knows every other peer.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, List, Optional

from . import protocol
from .chat import ChatLog
from .config import Config
from .errors import PeerUnreachable, ProtocolError
from .registry import ConnectionPair, ConnectionRegistry, RegistryListener
from .roster import Roster
from .transport.base import DataChannel, MediaChannel, PeerTransport

logger = logging.getLogger(__name__)


def _monotonic_ms() -> float:
	return time.monotonic() * 1000


class MeshMembership(RegistryListener):
	"""Handles membership and presence traffic for one local peer id."""

	def __init__(
		self,
		local_peer_id: str,
		transport: PeerTransport,
		roster: Roster,
		chat: ChatLog,
		*,
		clock: Optional[Callable[[], float]] = None,
		on_unreachable: Optional[Callable[[str], None]] = None,
		connect_timeout: Optional[float] = None,
	) -> None:
		self.local_peer_id = local_peer_id
		self.transport = transport
		self.roster = roster
		self.chat = chat
		self.clock = clock or _monotonic_ms
		self.on_unreachable = on_unreachable
		if connect_timeout is None:
			connect_timeout = Config.CONNECT_TIMEOUT
		self.registry = ConnectionRegistry(local_peer_id, self, connect_timeout)

	def connect(self, peer_id: str) -> Optional[ConnectionPair]:
		"""Open a connection unless one already exists (or ``peer_id`` is us)."""
		if peer_id == self.local_peer_id:
			return None
		existing = self.registry.get(peer_id)
		if existing is not None:
			return existing
		logger.info('Connecting to %s', peer_id)
		data, media = self.transport.connect(peer_id, {'name': self._local_name()})
		return self.registry.upsert(data, media)

	def accept(self, data: DataChannel, media: MediaChannel, metadata: Optional[dict] = None) -> ConnectionPair:
		"""Incoming connection handler; every inbound attempt goes through the registry."""
		logger.info('Incoming connection from %s', data.peer_id)
		return self.registry.upsert(data, media)

	def announce(self) -> int:
		"""Re-send our identity to every open pair."""
		message = self._user_info()
		if message is None:
			return 0
		return self.registry.broadcast(message)

	def close(self) -> None:
		self.registry.close_all()

	def on_pair_open(self, pair: ConnectionPair) -> None:
		message = self._user_info()
		if message is not None:
			self.registry.send(pair.remote_peer_id, message)

	def on_stream(self, peer_id: str, stream: Any) -> None:
		logger.debug('Media stream from %s', peer_id)
		self.roster.attach_stream(peer_id, stream)

	def on_pair_closed(self, peer_id: str, error: Optional[BaseException]) -> None:
		removed = self.roster.remove(peer_id)
		if removed is not None:
			logger.info('%s (%s) left the meeting', removed.display_name, peer_id)
		if isinstance(error, PeerUnreachable) and self.on_unreachable is not None:
			self.on_unreachable(peer_id)

	def on_message(self, peer_id: str, message: Any) -> None:
		try:
			decoded = protocol.decode(message)
		except ProtocolError as error:
			logger.warning('Dropping malformed message from %s: %s', peer_id, error)
			return

		if decoded.kind == protocol.USER_INFO:
			self._handle_user_info(peer_id, decoded.payload)
		elif decoded.kind == protocol.UPDATE_STATE:
			self._handle_update_state(peer_id, decoded.payload)
		elif decoded.kind == protocol.PEER_LIST:
			self._handle_peer_list(peer_id, decoded.payload)
		elif decoded.kind == protocol.CHAT_MESSAGE:
			self.chat.append(decoded.payload.to_message())
		elif decoded.kind == protocol.REACTION:
			self.roster.add_reaction(peer_id, decoded.payload.emoji, self.clock())

	def _handle_user_info(self, peer_id: str, info: protocol.UserInfo) -> None:
		# The channel identifies the sender; the payload id is informational.
		self.roster.merge_identity(
			peer_id,
			display_name=info.name,
			avatar_ref=info.avatar_ref,
			muted=info.muted,
			camera_off=info.camera_off,
		)
		pair = self.registry.get(peer_id)
		if pair is None or pair.introduced:
			return
		pair.introduced = True
		others = [other for other in self.registry.peers() if other != peer_id]
		if others:
			logger.debug('Introducing %s to %s', peer_id, others)
			self.registry.send(peer_id, protocol.peer_list(others))

	def _handle_update_state(self, peer_id: str, update: protocol.UpdateState) -> None:
		if update.peer_id != peer_id:
			logger.warning('Ignoring state update for %s sent by %s', update.peer_id, peer_id)
			return
		if peer_id not in self.roster:
			self.roster.merge_identity(peer_id)
		self.roster.patch_state(
			peer_id,
			muted=update.muted,
			camera_off=update.camera_off,
			blurred=update.blurred,
		)

	def _handle_peer_list(self, peer_id: str, entries: List[protocol.PeerEntry]) -> None:
		for entry in entries:
			if entry.peer_id == self.local_peer_id or entry.peer_id in self.registry:
				continue
			logger.info('%s introduced %s', peer_id, entry.peer_id)
			self.connect(entry.peer_id)

	def _local_name(self) -> str:
		local = self.roster.local
		return local.display_name if local else ''

	def _user_info(self) -> Optional[dict]:
		local = self.roster.local
		if local is None:
			return None
		return protocol.user_info(
			self.local_peer_id,
			local.display_name,
			local.avatar_ref,
			local.muted,
			local.camera_off,
		)
