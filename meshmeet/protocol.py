"""Wire schema for messages exchanged over the mesh data channels.

Every message is a JSON object ``{"type": <kind>, "payload": <body>}``.
Field names on the wire use the camelCase spelling browsers send.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .errors import ProtocolError
from .models import ChatMessage, OriginKind

USER_INFO = 'USER_INFO'
UPDATE_STATE = 'UPDATE_STATE'
PEER_LIST = 'PEER_LIST'
CHAT_MESSAGE = 'CHAT_MESSAGE'
REACTION = 'REACTION'


class _WireModel(BaseModel):
	model_config = ConfigDict(populate_by_name=True, extra='ignore')


class UserInfo(_WireModel):
	"""Identity announcement sent as soon as a data channel opens."""
	peer_id: Optional[str] = Field(default=None, alias='id')
	name: str = 'Guest'
	avatar_ref: str = Field(default='', alias='avatarUrl')
	muted: bool = Field(default=False, alias='isMuted')
	camera_off: bool = Field(default=False, alias='isVideoOff')


class UpdateState(_WireModel):
	peer_id: str = Field(alias='peerId')
	muted: Optional[bool] = Field(default=None, alias='isMuted')
	camera_off: Optional[bool] = Field(default=None, alias='isVideoOff')
	blurred: Optional[bool] = Field(default=None, alias='isBlurredBackground')


class PeerEntry(_WireModel):
	peer_id: str = Field(alias='id')


class ChatPayload(_WireModel):
	id: str
	sender_id: str = Field(alias='senderId')
	sender_name: str = Field(alias='senderName')
	text: str
	timestamp: float
	is_system: bool = Field(default=False, alias='isSystem')
	is_ai: bool = Field(default=False, alias='isAi')

	@classmethod
	def from_message(cls, message: ChatMessage) -> 'ChatPayload':
		return cls(
			id=message.id,
			sender_id=message.sender_id,
			sender_name=message.sender_name,
			text=message.text,
			timestamp=message.timestamp,
			is_system=message.is_system,
			is_ai=message.is_assistant,
		)

	def to_message(self) -> ChatMessage:
		if self.is_system:
			origin = OriginKind.SYSTEM
		elif self.is_ai:
			origin = OriginKind.ASSISTANT
		else:
			origin = OriginKind.USER
		return ChatMessage(
			id=self.id,
			sender_id=self.sender_id,
			sender_name=self.sender_name,
			text=self.text,
			timestamp=self.timestamp,
			origin=origin,
		)


class ReactionPayload(_WireModel):
	peer_id: str = Field(alias='peerId')
	emoji: str


Payload = Union[UserInfo, UpdateState, List[PeerEntry], ChatPayload, ReactionPayload]


@dataclass(frozen=True)
class Message:
	kind: str
	payload: Any


def _dump(model: BaseModel) -> dict:
	return model.model_dump(by_alias=True, exclude_none=True)


def user_info(peer_id: Optional[str], name: str, avatar_ref: str, muted: bool, camera_off: bool) -> dict:
	body = UserInfo(peer_id=peer_id, name=name, avatar_ref=avatar_ref, muted=muted, camera_off=camera_off)
	return {'type': USER_INFO, 'payload': _dump(body)}


def update_state(peer_id: str, muted: bool, camera_off: bool, blurred: bool) -> dict:
	body = UpdateState(peer_id=peer_id, muted=muted, camera_off=camera_off, blurred=blurred)
	return {'type': UPDATE_STATE, 'payload': _dump(body)}


def peer_list(peer_ids: List[str]) -> dict:
	return {'type': PEER_LIST, 'payload': [_dump(PeerEntry(peer_id=peer_id)) for peer_id in peer_ids]}


def chat_message(message: ChatMessage) -> dict:
	return {'type': CHAT_MESSAGE, 'payload': _dump(ChatPayload.from_message(message))}


def reaction(peer_id: str, emoji: str) -> dict:
	return {'type': REACTION, 'payload': _dump(ReactionPayload(peer_id=peer_id, emoji=emoji))}


def decode(raw: Any) -> Message:
	"""Validate a received message and return its typed payload.

	Raises:
		ProtocolError: when the message is not an object, has an unknown type,
			or its payload does not match the schema of that type.
	"""
	if not isinstance(raw, dict):
		raise ProtocolError(f'Expected a JSON object, got {type(raw).__name__}')
	kind = raw.get('type')
	body = raw.get('payload')
	try:
		if kind == USER_INFO:
			payload: Payload = UserInfo.model_validate(body or {})
		elif kind == UPDATE_STATE:
			payload = UpdateState.model_validate(body)
		elif kind == PEER_LIST:
			if not isinstance(body, list):
				raise ProtocolError('PEER_LIST payload must be a list')
			payload = [PeerEntry.model_validate(item) for item in body]
		elif kind == CHAT_MESSAGE:
			payload = ChatPayload.model_validate(body)
		elif kind == REACTION:
			payload = ReactionPayload.model_validate(body)
		else:
			raise ProtocolError(f'Unknown message type: {kind!r}')
	except ValidationError as error:
		raise ProtocolError(f'Invalid {kind} payload: {error}') from error
	return Message(kind=kind, payload=payload)
