"""Short-lived, auto-dismissing notifications shown to the local user."""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import Config

logger = logging.getLogger(__name__)

MEDIA_DENIED = 'Could not access camera/microphone'
CAMERA_DENIED = 'Could not access camera'
MICROPHONE_DENIED = 'Could not access microphone'
MEETING_NOT_FOUND = 'Meeting ID not found. Check the code.'
SIGNALING_LOST = 'Lost connection to server.'


@dataclass(frozen=True)
class Notice:
	id: int
	text: str
	created_at: float


class NoticeBoard:
	"""Holds active notices; each one is dismissed after ``ttl`` seconds."""

	def __init__(self, ttl: Optional[float] = None) -> None:
		self.ttl = Config.NOTICE_TTL if ttl is None else ttl
		self._ids = itertools.count(1)
		self._active: Dict[int, Notice] = {}
		self._timers: Dict[int, asyncio.TimerHandle] = {}
		self._listeners: List[Callable[[List[Notice]], None]] = []

	@property
	def active(self) -> List[Notice]:
		return list(self._active.values())

	def texts(self) -> List[str]:
		return [notice.text for notice in self._active.values()]

	def add_listener(self, callback: Callable[[List[Notice]], None]) -> None:
		self._listeners.append(callback)

	def post(self, text: str) -> Notice:
		notice = Notice(id=next(self._ids), text=text, created_at=time.time())
		self._active[notice.id] = notice
		logger.info('Notice: %s', text)
		if self.ttl > 0:
			loop = asyncio.get_running_loop()
			self._timers[notice.id] = loop.call_later(self.ttl, self.dismiss, notice.id)
		self._notify()
		return notice

	def dismiss(self, notice_id: int) -> None:
		timer = self._timers.pop(notice_id, None)
		if timer is not None:
			timer.cancel()
		if self._active.pop(notice_id, None) is not None:
			self._notify()

	def close(self) -> None:
		for timer in self._timers.values():
			timer.cancel()
		self._timers.clear()
		self._active.clear()

	def _notify(self) -> None:
		snapshot = self.active
		for callback in list(self._listeners):
			try:
				callback(snapshot)
			except Exception as error:
				logger.warning('Notice listener failed: %s', error)
