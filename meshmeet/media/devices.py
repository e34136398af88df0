"""Camera and microphone acquisition through FFmpeg capture devices."""

from __future__ import annotations

import asyncio
import logging
import platform
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from ..config import Config
from ..errors import MediaUnavailable

logger = logging.getLogger(__name__)


@dataclass
class LocalDevices:
    audio: Any = None
    video: Any = None


DeviceOpener = Callable[..., Awaitable[LocalDevices]]


def _capture_sources(audio: bool, video: bool) -> list[tuple[str, str, dict]]:
    """Return (file, format, options) tuples for the current platform."""
    size = f"{Config.VIDEO_WIDTH}x{Config.VIDEO_HEIGHT}"
    video_options = {"video_size": size, "framerate": str(Config.VIDEO_FPS)}
    system = platform.system()
    if system == "Darwin":
        video_device = Config.MEDIA_VIDEO_DEVICE or "default"
        audio_device = Config.MEDIA_AUDIO_DEVICE or "default"
        if audio and video:
            return [(f"{video_device}:{audio_device}", "avfoundation", video_options)]
        if video:
            return [(f"{video_device}:none", "avfoundation", video_options)]
        return [(f"none:{audio_device}", "avfoundation", {})]
    if system == "Windows":
        sources = []
        if video:
            sources.append((f"video={Config.MEDIA_VIDEO_DEVICE or 'Integrated Camera'}", "dshow", video_options))
        if audio:
            sources.append((f"audio={Config.MEDIA_AUDIO_DEVICE or 'Microphone'}", "dshow", {}))
        return sources
    sources = []
    if video:
        sources.append((Config.MEDIA_VIDEO_DEVICE or "/dev/video0", "v4l2", video_options))
    if audio:
        sources.append((Config.MEDIA_AUDIO_DEVICE or "default", "pulse", {}))
    return sources


async def open_devices(*, audio: bool = True, video: bool = True) -> LocalDevices:
    """Open the requested capture devices.

    Raises:
        MediaUnavailable: when a device is missing or access is denied.
    """
    devices = LocalDevices()
    players: list[MediaPlayer] = []
    try:
        for file, fmt, options in _capture_sources(audio, video):
            player = await asyncio.to_thread(MediaPlayer, file, format=fmt, options=options)
            players.append(player)
            if audio and player.audio is not None and devices.audio is None:
                devices.audio = player.audio
            if video and player.video is not None and devices.video is None:
                devices.video = player.video
    except (OSError, FFmpegError) as error:
        for player in players:
            for track in (player.audio, player.video):
                if track is not None:
                    track.stop()
        logger.error("Could not open capture device: %s", error)
        raise MediaUnavailable(str(error)) from error

    if (audio and devices.audio is None) or (video and devices.video is None):
        for track in (devices.audio, devices.video):
            if track is not None:
                track.stop()
        raise MediaUnavailable("Requested capture device produced no track")
    logger.info("Opened local devices (audio=%s, video=%s)", devices.audio is not None, devices.video is not None)
    return devices


def stop_devices(devices: Optional[LocalDevices]) -> None:
    if devices is None:
        return
    for track in (devices.audio, devices.video):
        if track is not None:
            track.stop()
