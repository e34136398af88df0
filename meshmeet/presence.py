"""Presence and state synchronization: local toggles, reactions and chat fan-out."""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from typing import Callable, Optional

from . import protocol
from .chat import ChatLog
from .config import Config
from .models import REACTIONS, ChatMessage, OriginKind, Participant
from .registry import ConnectionRegistry
from .roster import Roster

logger = logging.getLogger(__name__)

_BROADCAST_FLAGS = ('muted', 'camera_off', 'blurred')


class PresenceSync:
	"""Publishes local state to every open pair, best effort.

	Broadcasts are fire-and-forget: a peer without an open channel misses the
	update and shows stale state until the next toggle or ``USER_INFO``.
	Reactions expire through a periodic sweep which runs between :meth:`start`
	and :meth:`stop`.
	"""

	def __init__(
		self,
		roster: Roster,
		chat: ChatLog,
		*,
		reaction_ttl_ms: Optional[float] = None,
		sweep_interval_ms: Optional[float] = None,
		clock: Optional[Callable[[], float]] = None,
	) -> None:
		self.roster = roster
		self.chat = chat
		self.registry: Optional[ConnectionRegistry] = None
		self.reaction_ttl_ms = Config.REACTION_TTL_MS if reaction_ttl_ms is None else reaction_ttl_ms
		self.sweep_interval_ms = (
			Config.REACTION_SWEEP_INTERVAL_MS if sweep_interval_ms is None else sweep_interval_ms
		)
		self.clock = clock or (lambda: time.monotonic() * 1000)
		self._sweep_task: Optional[asyncio.Task] = None

	@property
	def sweeping(self) -> bool:
		return self._sweep_task is not None and not self._sweep_task.done()

	def attach(self, registry: ConnectionRegistry) -> None:
		self.registry = registry

	def detach(self) -> None:
		self.registry = None

	def update_local(self, **flags: bool) -> Optional[Participant]:
		"""Apply toggles to the local participant and broadcast the wire-visible ones."""
		local = self.roster.local
		if local is None:
			return None
		self.roster.patch_state(local.peer_id, **flags)
		if any(name in _BROADCAST_FLAGS for name in flags):
			self.publish_state()
		return local

	def publish_state(self) -> int:
		local = self.roster.local
		if local is None or self.registry is None:
			return 0
		message = protocol.update_state(local.peer_id, local.muted, local.camera_off, local.blurred)
		return self.registry.broadcast(message)

	def react(self, emoji: str) -> None:
		if emoji not in REACTIONS:
			raise ValueError(f'Unsupported reaction: {emoji}')
		local = self.roster.local
		if local is None:
			return
		self.roster.add_reaction(local.peer_id, emoji, self.clock())
		if self.registry is not None:
			self.registry.broadcast(protocol.reaction(local.peer_id, emoji))

	def send_chat(self, text: str) -> Optional[ChatMessage]:
		text = text.strip()
		local = self.roster.local
		if not text or local is None:
			return None
		message = ChatMessage(
			id=uuid.uuid4().hex,
			sender_id=local.peer_id,
			sender_name=local.display_name,
			text=text,
			timestamp=time.time() * 1000,
		)
		self.chat.append(message)
		if self.registry is not None:
			self.registry.broadcast(protocol.chat_message(message))
		return message

	def post_local(self, text: str, origin: OriginKind, sender_id: str, sender_name: str) -> ChatMessage:
		"""Append a message that stays on this peer (assistant traffic, system lines)."""
		message = ChatMessage(
			id=uuid.uuid4().hex,
			sender_id=sender_id,
			sender_name=sender_name,
			text=text,
			timestamp=time.time() * 1000,
			origin=origin,
		)
		self.chat.append(message)
		return message

	def sweep(self, now: Optional[float] = None) -> int:
		return self.roster.expire_reactions(self.clock() if now is None else now, self.reaction_ttl_ms)

	def start(self) -> None:
		if self.sweeping:
			return
		self._sweep_task = asyncio.create_task(self._sweep_loop())

	async def stop(self) -> None:
		task, self._sweep_task = self._sweep_task, None
		if task is None:
			return
		task.cancel()
		try:
			await task
		except asyncio.CancelledError:
			pass

	async def _sweep_loop(self) -> None:
		interval = self.sweep_interval_ms / 1000
		while True:
			await asyncio.sleep(interval)
			try:
				self.sweep()
			except Exception as error:
				logger.error('Reaction sweep failed: %s', error, exc_info=True)
