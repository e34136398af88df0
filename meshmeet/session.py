"""Session coordinator: the meeting lifecycle state machine.

``LOBBY -> JOINING -> IN_MEETING -> LEFT -> LOBBY``. The coordinator owns the
transport, the capability provider and the membership layer (which in turn owns
the connection registry) and builds or tears them down on its transitions.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, List, Optional

from . import notices as notice_texts
from .assistant import MeetingAssistant
from .chat import ChatLog
from .config import Config
from .errors import MediaUnavailable, SessionStateError, SignalingUnavailable
from .invite import build_join_link
from .media.provider import CapabilityProvider
from .membership import MeshMembership
from .models import Identity, MediaStream, MeetingState, OriginKind, default_avatar
from .notices import NoticeBoard
from .presence import PresenceSync
from .roster import Roster
from .transport.base import DataChannel, MediaChannel, PeerTransport, TransportStatus

logger = logging.getLogger(__name__)

ASSISTANT_PREFIX = '@gemini'
ASSISTANT_ID = 'gemini-bot'
ASSISTANT_NAME = 'Gemini AI'
SYSTEM_ID = 'system'
SUMMARY_PENDING = 'Generating meeting summary...'

StateListener = Callable[[MeetingState], None]


class SessionCoordinator:
	"""Drives one local participant through lobby, meeting and back."""

	def __init__(
		self,
		transport_factory: Callable[[], PeerTransport],
		*,
		provider_factory: Optional[Callable[[], CapabilityProvider]] = None,
		assistant: Optional[MeetingAssistant] = None,
		notices: Optional[NoticeBoard] = None,
		clock: Optional[Callable[[], float]] = None,
		reaction_ttl_ms: Optional[float] = None,
		sweep_interval_ms: Optional[float] = None,
		preview_on_lobby: Optional[bool] = None,
	) -> None:
		self.transport_factory = transport_factory
		self.provider_factory = provider_factory or CapabilityProvider
		self.assistant = assistant or MeetingAssistant()
		self.notices = notices or NoticeBoard()
		self.preview_on_lobby = Config.PREVIEW_ON_LOBBY if preview_on_lobby is None else preview_on_lobby
		self.roster = Roster()
		self.chat = ChatLog()
		self.presence = PresenceSync(
			self.roster,
			self.chat,
			reaction_ttl_ms=reaction_ttl_ms,
			sweep_interval_ms=sweep_interval_ms,
			clock=clock,
		)
		self.state = MeetingState.LOBBY
		self.identity: Optional[Identity] = None
		self.meeting_id: Optional[str] = None
		self.host_id: Optional[str] = None
		self.transport: Optional[PeerTransport] = None
		self.provider: Optional[CapabilityProvider] = None
		self.membership: Optional[MeshMembership] = None
		self.muted = False
		self.camera_off = False
		self.blurred = False
		self.screen_sharing = False
		self._state_listeners: List[StateListener] = []
		self._join_attempt: Optional[object] = None

	@property
	def peer_id(self) -> Optional[str]:
		return self.identity.peer_id if self.identity else None

	@property
	def signaling_status(self) -> TransportStatus:
		return self.transport.status if self.transport else TransportStatus.CLOSED

	@property
	def registry(self):
		return self.membership.registry if self.membership else None

	def add_state_listener(self, callback: StateListener) -> None:
		self._state_listeners.append(callback)

	def participants(self) -> List[dict]:
		return self.roster.snapshot(self.presence.clock(), self.presence.reaction_ttl_ms)

	def join_link(self) -> Optional[str]:
		if self.meeting_id is None:
			return None
		return build_join_link(self.meeting_id)

	async def preview(self):
		"""Acquire local media for the lobby preview. Idempotent.

		Returns the outbound track state, or None when the devices are unavailable.
		"""
		if self.state is not MeetingState.LOBBY:
			raise SessionStateError(f'Preview is only available in the lobby, not {self.state.value}')
		provider = self._ensure_provider()
		try:
			return await provider.acquire_local_media()
		except MediaUnavailable as e:
			logger.warning('Lobby preview unavailable: %s', e)
			self.notices.post(notice_texts.MEDIA_DENIED)
			return None

	async def join(self, display_name: str, avatar_ref: str = '', host_id: Optional[str] = None) -> Identity:
		"""Join a meeting, or start one when ``host_id`` is None.

		Raises:
			SessionStateError: when not in the lobby, the name is empty, or
				:meth:`leave` was called before the join finished.
			SignalingUnavailable: when the rendezvous service cannot be reached;
				the coordinator is back in the lobby.
		"""
		if self.state is not MeetingState.LOBBY:
			raise SessionStateError(f'Cannot join from state {self.state.value}')
		name = (display_name or '').strip()
		if not name:
			raise SessionStateError('A display name is required to join')
		host_id = (host_id or '').strip() or None

		self._set_state(MeetingState.JOINING)
		attempt = self._join_attempt = object()
		identity = Identity(
			display_name=name,
			avatar_ref=avatar_ref or default_avatar(name),
			is_originator=host_id is None,
		)
		self.host_id = host_id

		provider = self._ensure_provider()
		try:
			await provider.acquire_local_media()
		except MediaUnavailable as e:
			logger.warning('Joining without local media: %s', e)
			self.notices.post(notice_texts.MEDIA_DENIED)
		if self._join_attempt is not attempt:
			raise SessionStateError('Left the meeting while joining')
		audio, video = provider.outbound_tracks()
		self.roster.add_local(
			display_name=identity.display_name,
			avatar_ref=identity.avatar_ref,
			is_originator=identity.is_originator,
			media_stream=MediaStream(audio=audio, video=video) if provider.acquired else None,
			muted=self.muted,
			camera_off=self.camera_off,
			blurred=self.blurred,
		)

		transport = self.transport_factory()
		transport.track_source = provider.outbound_tracks
		transport.on_incoming = self._on_incoming
		transport.on_status = self._on_transport_status
		self.transport = transport
		try:
			await transport.open(identity)
		except SignalingUnavailable as e:
			if self._join_attempt is not attempt:
				raise SessionStateError('Left the meeting while joining') from e
			logger.error('Could not reach rendezvous service: %s', e)
			await self._close_meeting(release_media=False)
			self._set_state(MeetingState.LOBBY)
			raise

		peer_id = identity.peer_id
		self.identity = identity
		self.meeting_id = host_id or peer_id
		self.roster.rekey_local(peer_id)
		self.membership = MeshMembership(
			peer_id,
			transport,
			self.roster,
			self.chat,
			clock=self.presence.clock,
			on_unreachable=self._on_peer_unreachable,
		)
		self.presence.attach(self.membership.registry)
		provider.add_track_listener(self._on_track_replaced)
		self._set_state(MeetingState.IN_MEETING)
		self.presence.start()
		if host_id is not None and host_id != peer_id:
			self.membership.connect(host_id)
		logger.info('In meeting %s as %s (%s)', self.meeting_id, name, peer_id)
		return identity

	async def leave(self) -> None:
		"""Close every connection, release media and identity, and return to the lobby."""
		if self.state not in (MeetingState.JOINING, MeetingState.IN_MEETING):
			return
		await self._close_meeting(release_media=True)
		self._set_state(MeetingState.LEFT)
		self.muted = self.camera_off = self.blurred = self.screen_sharing = False
		self._set_state(MeetingState.LOBBY)
		if self.preview_on_lobby:
			await self.preview()

	async def shutdown(self) -> None:
		if self.state in (MeetingState.JOINING, MeetingState.IN_MEETING):
			await self._close_meeting(release_media=True)
			self._set_state(MeetingState.LEFT)
		elif self.provider is not None:
			await self.provider.release()
			self.provider = None
		self.notices.close()

	async def reconnect(self) -> bool:
		"""Manual retry of the rendezvous registration."""
		if self.transport is None or self.state is not MeetingState.IN_MEETING:
			return False
		try:
			await self.transport.reconnect()
		except SignalingUnavailable as e:
			logger.warning('Manual reconnect failed: %s', e)
			self.notices.post(notice_texts.SIGNALING_LOST)
			return False
		return True

	async def set_muted(self, muted: bool) -> bool:
		previous, self.muted = self.muted, muted
		if self.provider is not None:
			try:
				await self.provider.set_muted(muted)
			except MediaUnavailable as e:
				logger.warning('Could not re-open microphone: %s', e)
				self.muted = previous
				self.notices.post(notice_texts.MICROPHONE_DENIED)
				return False
		self.presence.update_local(muted=muted)
		return True

	async def set_camera_off(self, camera_off: bool) -> bool:
		previous, self.camera_off = self.camera_off, camera_off
		if self.provider is not None:
			try:
				await self.provider.set_camera_off(camera_off)
			except MediaUnavailable as e:
				logger.warning('Could not re-open camera: %s', e)
				self.camera_off = previous
				self.notices.post(notice_texts.CAMERA_DENIED)
				return False
		self.presence.update_local(camera_off=camera_off)
		return True

	async def set_blurred(self, blurred: bool) -> bool:
		self.blurred = blurred
		if self.provider is not None:
			await self.provider.set_blurred(blurred)
		self.presence.update_local(blurred=blurred)
		return True

	def set_screen_sharing(self, sharing: bool) -> None:
		self.screen_sharing = sharing
		self.presence.update_local(screen_sharing=sharing)

	def react(self, emoji: str) -> None:
		self.presence.react(emoji)

	async def send_chat(self, text: str):
		"""Send a chat line; lines starting with ``@gemini`` go to the assistant instead."""
		if text.strip().startswith(ASSISTANT_PREFIX):
			query = text.strip()[len(ASSISTANT_PREFIX):].strip()
			return await self.ask_assistant(query)
		return self.presence.send_chat(text)

	async def ask_assistant(self, query: str):
		local = self.roster.local
		sender_name = local.display_name if local else ''
		self.presence.post_local(f'{ASSISTANT_PREFIX} {query}', OriginKind.USER, ASSISTANT_ID, sender_name)
		answer = await self.assistant.answer(query, self.chat.messages)
		return self.presence.post_local(answer, OriginKind.ASSISTANT, ASSISTANT_ID, ASSISTANT_NAME)

	async def summarize_chat(self):
		transcript = [message for message in self.chat.messages if not message.is_system]
		self.presence.post_local(SUMMARY_PENDING, OriginKind.SYSTEM, SYSTEM_ID, 'System')
		summary = await self.assistant.summarize(transcript)
		return self.presence.post_local(summary, OriginKind.ASSISTANT, ASSISTANT_ID, ASSISTANT_NAME)

	def _ensure_provider(self) -> CapabilityProvider:
		if self.provider is None:
			provider = self.provider_factory()
			provider.muted = self.muted
			provider.camera_off = self.camera_off
			provider.blurred = self.blurred
			self.provider = provider
		return self.provider

	async def _close_meeting(self, *, release_media: bool) -> None:
		await self.presence.stop()
		self.presence.detach()
		if self.membership is not None:
			self.membership.close()
			self.membership = None
		if self.provider is not None:
			self.provider.remove_track_listener(self._on_track_replaced)
			if release_media:
				await self.provider.release()
				self.provider = None
		if self.transport is not None:
			transport, self.transport = self.transport, None
			transport.on_incoming = None
			transport.on_status = None
			await transport.close()
		self.roster.clear()
		self.chat.clear()
		self._join_attempt = None
		self.identity = None
		self.meeting_id = None
		self.host_id = None

	def _set_state(self, state: MeetingState) -> None:
		if state is self.state:
			return
		logger.debug('Meeting state %s -> %s', self.state.value, state.value)
		self.state = state
		for callback in list(self._state_listeners):
			try:
				callback(state)
			except Exception as e:
				logger.warning('State listener failed: %s', e)

	def _on_incoming(self, data: DataChannel, media: MediaChannel, metadata: dict) -> None:
		if self.membership is None:
			logger.warning('Rejecting connection from %s before the meeting started', data.peer_id)
			data.close()
			media.close()
			return
		self.membership.accept(data, media, metadata)

	def _on_transport_status(self, status: TransportStatus) -> None:
		if status is TransportStatus.DISCONNECTED and self.state is MeetingState.IN_MEETING:
			self.notices.post(notice_texts.SIGNALING_LOST)

	def _on_peer_unreachable(self, peer_id: str) -> None:
		if peer_id == self.host_id:
			self.notices.post(notice_texts.MEETING_NOT_FOUND)
		else:
			logger.info('Introduced peer %s is no longer reachable', peer_id)

	async def _on_track_replaced(self, kind: str, track: Any) -> None:
		local = self.roster.local
		if local is not None and local.media_stream is not None:
			setattr(local.media_stream, kind, track)
		if self.membership is not None:
			await self.membership.registry.replace_outbound_track(kind, track)
