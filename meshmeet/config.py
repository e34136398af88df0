"""Configuration management for the mesh meeting client and rendezvous service."""

from __future__ import annotations

import logging
import os
from typing import Tuple

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

load_dotenv()

_TRUE_VALUES = {'true', '1', 'yes', 'on'}


def _parse_float(name: str, default: float) -> Tuple[float, bool]:
	"""Return environment variable as float when possible, falling back to default."""
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return float(value), False
	except ValueError:
		logger.warning('Ignoring invalid float for %s: %s', name, value)
		return default, True


def _parse_int(name: str, default: int) -> Tuple[int, bool]:
	"""Return environment variable as int when possible, falling back to default."""
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default, True
	try:
		return int(value), False
	except ValueError:
		logger.warning('Ignoring invalid integer for %s: %s', name, value)
		return default, True


def _parse_bool(name: str, default: bool) -> bool:
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return default
	return value.strip().lower() in _TRUE_VALUES


def _parse_list(name: str, default: list[str]) -> list[str]:
	value = os.getenv(name)
	if value is None or value.strip() == '':
		return list(default)
	return [item.strip() for item in value.split(',') if item.strip()]


class Config:
	"""Centralized configuration for signaling, media and assistant settings."""

	# Rendezvous / signaling
	SIGNALING_URL: str = os.getenv('SIGNALING_URL', 'ws://localhost:9000/signal').strip()
	SIGNALING_HOST: str = os.getenv('SIGNALING_HOST', '0.0.0.0').strip()
	_SIGNALING_PORT, _ = _parse_int('SIGNALING_PORT', 9000)
	SIGNALING_PORT: int = _SIGNALING_PORT
	_SIGNALING_OPEN_TIMEOUT, _ = _parse_float('SIGNALING_OPEN_TIMEOUT', 10.0)
	SIGNALING_OPEN_TIMEOUT: float = _SIGNALING_OPEN_TIMEOUT
	_SIGNALING_HEARTBEAT_INTERVAL, _ = _parse_float('SIGNALING_HEARTBEAT_INTERVAL', 5.0)
	SIGNALING_HEARTBEAT_INTERVAL: float = _SIGNALING_HEARTBEAT_INTERVAL
	# Seconds a new peer connection may stay unopened before it counts as unreachable
	_CONNECT_TIMEOUT, _ = _parse_float('CONNECT_TIMEOUT', 15.0)
	CONNECT_TIMEOUT: float = _CONNECT_TIMEOUT

	# Auto-reconnect backoff after an unexpected signaling disconnect
	_RECONNECT_INITIAL_DELAY, _ = _parse_float('RECONNECT_INITIAL_DELAY', 1.0)
	RECONNECT_INITIAL_DELAY: float = _RECONNECT_INITIAL_DELAY
	_RECONNECT_MAX_DELAY, _ = _parse_float('RECONNECT_MAX_DELAY', 30.0)
	RECONNECT_MAX_DELAY: float = _RECONNECT_MAX_DELAY
	_RECONNECT_MAX_ATTEMPTS, _ = _parse_int('RECONNECT_MAX_ATTEMPTS', 10)
	RECONNECT_MAX_ATTEMPTS: int = _RECONNECT_MAX_ATTEMPTS

	# ICE servers
	STUN_URLS: list[str] = _parse_list(
		'STUN_URLS',
		['stun:stun.l.google.com:19302', 'stun:stun1.l.google.com:19302'],
	)
	COTURN_HOST: str | None = os.getenv('COTURN_HOST') or None
	COTURN_PORT: str | None = os.getenv('COTURN_PORT') or None
	COTURN_USERNAME: str | None = os.getenv('COTURN_USERNAME') or None
	COTURN_PASSWORD: str | None = os.getenv('COTURN_PASSWORD') or None

	# Local media
	_VIDEO_WIDTH, _ = _parse_int('VIDEO_WIDTH', 640)
	VIDEO_WIDTH: int = _VIDEO_WIDTH
	_VIDEO_HEIGHT, _ = _parse_int('VIDEO_HEIGHT', 480)
	VIDEO_HEIGHT: int = _VIDEO_HEIGHT
	_VIDEO_FPS, _ = _parse_int('VIDEO_FPS', 30)
	VIDEO_FPS: int = _VIDEO_FPS
	MEDIA_VIDEO_DEVICE: str | None = os.getenv('MEDIA_VIDEO_DEVICE') or None
	MEDIA_AUDIO_DEVICE: str | None = os.getenv('MEDIA_AUDIO_DEVICE') or None
	# Stop the device on mute/camera-off so the hardware is released (camera light goes off)
	RELEASE_DEVICES_ON_DISABLE: bool = _parse_bool('RELEASE_DEVICES_ON_DISABLE', False)

	# Background blur transform
	_BLUR_RADIUS, _ = _parse_float('BLUR_RADIUS', 15.0)
	BLUR_RADIUS: float = _BLUR_RADIUS
	_TRANSFORM_TIMEOUT, _ = _parse_float('TRANSFORM_TIMEOUT', 0.1)
	TRANSFORM_TIMEOUT: float = _TRANSFORM_TIMEOUT
	_TRANSFORM_FAILURE_LIMIT, _ = _parse_int('TRANSFORM_FAILURE_LIMIT', 30)
	TRANSFORM_FAILURE_LIMIT: int = _TRANSFORM_FAILURE_LIMIT

	# Presence
	_REACTION_TTL_MS, _ = _parse_int('REACTION_TTL_MS', 2000)
	REACTION_TTL_MS: int = _REACTION_TTL_MS
	_REACTION_SWEEP_INTERVAL_MS, _ = _parse_int('REACTION_SWEEP_INTERVAL_MS', 500)
	REACTION_SWEEP_INTERVAL_MS: int = _REACTION_SWEEP_INTERVAL_MS
	_NOTICE_TTL, _ = _parse_float('NOTICE_TTL', 3.0)
	NOTICE_TTL: float = _NOTICE_TTL

	PREVIEW_ON_LOBBY: bool = _parse_bool('PREVIEW_ON_LOBBY', True)

	# Meeting assistant (Gemini)
	GEMINI_API_KEY: str = os.getenv('GEMINI_API_KEY', '') or os.getenv('API_KEY', '')
	GEMINI_MODEL: str = os.getenv('GEMINI_MODEL', 'gemini-2.5-flash')
	_GEMINI_TEMPERATURE, _ = _parse_float('GEMINI_TEMPERATURE', 0.3)
	GEMINI_TEMPERATURE: float = _GEMINI_TEMPERATURE
	_ASSISTANT_TIMEOUT, _ = _parse_float('ASSISTANT_TIMEOUT', 60.0)
	ASSISTANT_TIMEOUT: float = _ASSISTANT_TIMEOUT
	_ASSISTANT_CONTEXT_MESSAGES, _ = _parse_int('ASSISTANT_CONTEXT_MESSAGES', 10)
	ASSISTANT_CONTEXT_MESSAGES: int = _ASSISTANT_CONTEXT_MESSAGES

	JOIN_BASE_URL: str = os.getenv('JOIN_BASE_URL', 'http://localhost:3000/').strip()

	@classmethod
	def ice_servers(cls) -> list[dict]:
		"""Return ICE server dictionaries; TURN is only added when fully configured."""
		servers: list[dict] = [{'urls': url} for url in cls.STUN_URLS]
		if cls.COTURN_HOST and cls.COTURN_PORT and cls.COTURN_USERNAME and cls.COTURN_PASSWORD:
			servers.append({
				'urls': f'turn:{cls.COTURN_HOST}:{cls.COTURN_PORT}',
				'username': cls.COTURN_USERNAME,
				'credential': cls.COTURN_PASSWORD,
			})
		return servers

	@classmethod
	def validate(cls) -> bool:
		"""Ensure the settings needed to join a meeting are usable."""
		if not cls.SIGNALING_URL.startswith(('ws://', 'wss://')):
			logger.error('SIGNALING_URL must be a ws:// or wss:// URL, got %s', cls.SIGNALING_URL)
			return False
		if cls.CONNECT_TIMEOUT <= 0:
			logger.error('CONNECT_TIMEOUT must be positive, got %s', cls.CONNECT_TIMEOUT)
			return False
		if cls.REACTION_SWEEP_INTERVAL_MS <= 0 or cls.REACTION_TTL_MS <= 0:
			logger.error('Reaction TTL and sweep interval must be positive.')
			return False
		if not cls.GEMINI_API_KEY:
			logger.warning('GEMINI_API_KEY not set; the meeting assistant is disabled.')
		return True

	@classmethod
	def log_config(cls) -> None:
		"""Print non-sensitive settings to stdout."""
		print('Configuration:')
		print(f'  Signaling URL: {cls.SIGNALING_URL}')
		print(f'  ICE servers: {len(cls.ice_servers())} ({"TURN" if cls.COTURN_HOST else "STUN only"})')
		print(f'  Video: {cls.VIDEO_WIDTH}x{cls.VIDEO_HEIGHT}@{cls.VIDEO_FPS}')
		print(f'  Release devices on disable: {cls.RELEASE_DEVICES_ON_DISABLE}')
		print(f'  Gemini Model: {cls.GEMINI_MODEL}')
		print(f'  Gemini API Key: {"set" if bool(cls.GEMINI_API_KEY) else "missing"}')
