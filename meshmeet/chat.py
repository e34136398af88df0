"""Append-only meeting chat log."""

from __future__ import annotations

import logging
from typing import Callable, Iterator, List, Set, Tuple

from .models import ChatMessage

logger = logging.getLogger(__name__)


class ChatLog:
	"""Messages in arrival order. A message id seen twice is ignored."""

	def __init__(self) -> None:
		self._messages: List[ChatMessage] = []
		self._ids: Set[str] = set()
		self._listeners: List[Callable[[ChatMessage], None]] = []

	def __iter__(self) -> Iterator[ChatMessage]:
		return iter(tuple(self._messages))

	def __len__(self) -> int:
		return len(self._messages)

	@property
	def messages(self) -> Tuple[ChatMessage, ...]:
		return tuple(self._messages)

	def add_listener(self, callback: Callable[[ChatMessage], None]) -> None:
		self._listeners.append(callback)

	def append(self, message: ChatMessage) -> bool:
		if message.id in self._ids:
			logger.debug('Ignoring duplicate chat message %s', message.id)
			return False
		self._ids.add(message.id)
		self._messages.append(message)
		for callback in list(self._listeners):
			try:
				callback(message)
			except Exception as error:
				logger.warning('Chat listener failed: %s', error)
		return True

	def clear(self) -> None:
		self._messages.clear()
		self._ids.clear()
