"""Error taxonomy for the mesh session coordinator."""

from __future__ import annotations

from typing import Optional


class MeshMeetError(Exception):
	"""Base class for every error raised by meshmeet."""


class MediaUnavailable(MeshMeetError):
	"""Camera or microphone access was denied or the device is missing."""


class SignalingUnavailable(MeshMeetError):
	"""The rendezvous service could not be reached."""


class PeerUnreachable(MeshMeetError):
	"""The target peer id is not registered with the rendezvous service."""

	def __init__(self, peer_id: str, message: Optional[str] = None) -> None:
		super().__init__(message or f'Peer {peer_id} is not available')
		self.peer_id = peer_id


class ChannelClosed(MeshMeetError):
	"""A data or media channel was used after it closed."""


class TransformFailure(MeshMeetError):
	"""The frame transform failed or did not finish in time."""


class ProtocolError(MeshMeetError, ValueError):
	"""A wire message could not be parsed."""


class SessionStateError(MeshMeetError, RuntimeError):
	"""An operation is not allowed in the current meeting state."""
