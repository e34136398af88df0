"""Data model shared by the roster, protocol and session layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, List, Optional
from urllib.parse import quote


class ConnectionQuality(str, Enum):
	EXCELLENT = 'Excellent'
	GOOD = 'Good'
	POOR = 'Poor'


class MeetingState(str, Enum):
	LOBBY = 'LOBBY'
	JOINING = 'JOINING'
	IN_MEETING = 'IN_MEETING'
	LEFT = 'LEFT'


class OriginKind(str, Enum):
	USER = 'user'
	SYSTEM = 'system'
	ASSISTANT = 'assistant'


REACTIONS = ('👍', '👏', '❤️', '😂', '😮', '🎉')

PLACEHOLDER_NAME = 'Connecting...'


def default_avatar(name: str) -> str:
	"""Generated initials avatar used when no avatar reference was chosen."""
	return f'https://ui-avatars.com/api/?name={quote(name or "?")}&background=2563eb&color=fff'


@dataclass
class Identity:
	display_name: str
	avatar_ref: str = ''
	is_originator: bool = False
	peer_id: Optional[str] = None


@dataclass(frozen=True)
class Reaction:
	emoji: str
	created_at: float


@dataclass
class MediaStream:
	"""Audio and video tracks of one participant."""

	audio: Any = None
	video: Any = None

	@property
	def tracks(self) -> list:
		return [track for track in (self.audio, self.video) if track is not None]


@dataclass
class Participant:
	peer_id: str
	display_name: str = PLACEHOLDER_NAME
	avatar_ref: str = ''
	is_originator: bool = False
	is_local: bool = False
	muted: bool = False
	camera_off: bool = False
	blurred: bool = False
	screen_sharing: bool = False
	speaking: bool = False
	connection_quality: ConnectionQuality = ConnectionQuality.GOOD
	reactions: List[Reaction] = field(default_factory=list)
	media_stream: Any = None

	def to_dict(self, reactions: Optional[List[Reaction]] = None) -> dict:
		if reactions is None:
			reactions = self.reactions
		return {
			'peer_id': self.peer_id,
			'display_name': self.display_name,
			'avatar_ref': self.avatar_ref,
			'is_originator': self.is_originator,
			'is_local': self.is_local,
			'muted': self.muted,
			'camera_off': self.camera_off,
			'blurred': self.blurred,
			'screen_sharing': self.screen_sharing,
			'speaking': self.speaking,
			'connection_quality': self.connection_quality.value,
			'reactions': [reaction.emoji for reaction in reactions],
			'has_media': self.media_stream is not None,
		}


@dataclass(frozen=True)
class ChatMessage:
	id: str
	sender_id: str
	sender_name: str
	text: str
	timestamp: float
	origin: OriginKind = OriginKind.USER

	@property
	def is_system(self) -> bool:
		return self.origin is OriginKind.SYSTEM

	@property
	def is_assistant(self) -> bool:
		return self.origin is OriginKind.ASSISTANT


@dataclass
class OutboundTrackState:
	"""Which local tracks exist and which video track is currently sent.

	Owned and mutated only by the capability provider.
	"""

	audio_track: Any
	raw_track: Any
	transformed_track: Any = None
	selected_track: Any = None

	def __post_init__(self) -> None:
		if self.selected_track is None:
			self.selected_track = self.raw_track

	@property
	def transformed(self) -> bool:
		return self.transformed_track is not None and self.selected_track is self.transformed_track
