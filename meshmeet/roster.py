"""Participant roster keyed by peer id.

Participants are created by whichever event arrives first (identity info or a
media stream) and enriched by the other, so construction commutes.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Iterator, List, Optional

from .models import ConnectionQuality, Participant, Reaction

logger = logging.getLogger(__name__)

LOCAL_PLACEHOLDER_ID = 'local-temp'

_STATE_FLAGS = ('muted', 'camera_off', 'blurred', 'screen_sharing', 'speaking')


class Roster:
	"""Ordered participant set holding at most one entry per peer id."""

	def __init__(self) -> None:
		self._participants: Dict[str, Participant] = {}
		self._listeners: List[Callable[[], None]] = []

	def __iter__(self) -> Iterator[Participant]:
		return iter(list(self._participants.values()))

	def __len__(self) -> int:
		return len(self._participants)

	def __contains__(self, peer_id: object) -> bool:
		return peer_id in self._participants

	def get(self, peer_id: str) -> Optional[Participant]:
		return self._participants.get(peer_id)

	@property
	def local(self) -> Optional[Participant]:
		for participant in self._participants.values():
			if participant.is_local:
				return participant
		return None

	def remote_ids(self) -> List[str]:
		return [p.peer_id for p in self._participants.values() if not p.is_local]

	def add_listener(self, callback: Callable[[], None]) -> None:
		self._listeners.append(callback)

	def add_local(
		self,
		*,
		display_name: str,
		avatar_ref: str,
		is_originator: bool,
		media_stream: Any = None,
		muted: bool = False,
		camera_off: bool = False,
		blurred: bool = False,
	) -> Participant:
		"""Create the local entry under the placeholder id until the transport assigns one."""
		if self.local is not None:
			raise ValueError('Local participant already present')
		participant = Participant(
			peer_id=LOCAL_PLACEHOLDER_ID,
			display_name=display_name,
			avatar_ref=avatar_ref,
			is_originator=is_originator,
			is_local=True,
			muted=muted,
			camera_off=camera_off,
			blurred=blurred,
			connection_quality=ConnectionQuality.EXCELLENT,
			media_stream=media_stream,
		)
		self._participants[participant.peer_id] = participant
		self._changed()
		return participant

	def rekey_local(self, peer_id: str) -> Participant:
		"""Move the local entry to its real peer id, keeping position and state."""
		local = self.local
		if local is None:
			raise ValueError('No local participant to re-key')
		if local.peer_id == peer_id:
			return local
		stale = self._participants.get(peer_id)
		if stale is not None and not stale.is_local:
			logger.warning('Dropping remote entry that collided with local id %s', peer_id)
		rebuilt: Dict[str, Participant] = {}
		for key, participant in self._participants.items():
			if participant is local:
				participant.peer_id = peer_id
				rebuilt[peer_id] = participant
			elif key != peer_id:
				rebuilt[key] = participant
		self._participants = rebuilt
		self._changed()
		return local

	def merge_identity(
		self,
		peer_id: str,
		*,
		display_name: Optional[str] = None,
		avatar_ref: Optional[str] = None,
		is_originator: Optional[bool] = None,
		muted: Optional[bool] = None,
		camera_off: Optional[bool] = None,
	) -> Participant:
		"""Upsert identity fields; an attached media stream is never discarded."""
		participant = self._ensure(peer_id)
		updates = {
			'display_name': display_name,
			'avatar_ref': avatar_ref,
			'is_originator': is_originator,
			'muted': muted,
			'camera_off': camera_off,
		}
		for name, value in updates.items():
			if value is not None:
				setattr(participant, name, value)
		self._changed()
		return participant

	def attach_stream(self, peer_id: str, media_stream: Any) -> Participant:
		participant = self._ensure(peer_id)
		participant.media_stream = media_stream
		self._changed()
		return participant

	def patch_state(self, peer_id: str, **flags: Optional[bool]) -> bool:
		"""Patch toggle flags of an existing participant; unknown ids are ignored."""
		participant = self._participants.get(peer_id)
		if participant is None:
			return False
		for name, value in flags.items():
			if name not in _STATE_FLAGS:
				raise ValueError(f'Unknown participant flag: {name}')
			if value is not None:
				setattr(participant, name, value)
		self._changed()
		return True

	def remove(self, peer_id: str) -> Optional[Participant]:
		participant = self._participants.get(peer_id)
		if participant is None or participant.is_local:
			return None
		del self._participants[peer_id]
		self._changed()
		return participant

	def add_reaction(self, peer_id: str, emoji: str, now: float) -> bool:
		participant = self._participants.get(peer_id)
		if participant is None:
			return False
		participant.reactions.append(Reaction(emoji=emoji, created_at=now))
		self._changed()
		return True

	def expire_reactions(self, now: float, ttl: float) -> int:
		"""Remove every reaction whose age is at least ``ttl``; returns how many were removed."""
		removed = 0
		for participant in self._participants.values():
			kept = [r for r in participant.reactions if now - r.created_at < ttl]
			removed += len(participant.reactions) - len(kept)
			participant.reactions = kept
		if removed:
			self._changed()
		return removed

	def clear(self) -> None:
		self._participants.clear()
		self._changed()

	def snapshot(self, now: Optional[float] = None, ttl: Optional[float] = None) -> List[dict]:
		"""Plain-dict view of every participant.

		Given ``now`` and ``ttl``, reactions at least ``ttl`` old are left out
		even if the periodic sweep has not removed them yet.
		"""
		if now is None or ttl is None:
			return [participant.to_dict() for participant in self._participants.values()]
		return [
			participant.to_dict([r for r in participant.reactions if now - r.created_at < ttl])
			for participant in self._participants.values()
		]

	def _ensure(self, peer_id: str) -> Participant:
		participant = self._participants.get(peer_id)
		if participant is None:
			participant = Participant(peer_id=peer_id)
			self._participants[peer_id] = participant
			logger.debug('Created participant placeholder for %s', peer_id)
		return participant

	def _changed(self) -> None:
		for callback in list(self._listeners):
			try:
				callback()
			except Exception as error:
				logger.warning('Roster listener failed: %s', error)
