"""Local media tracks: gated device tracks, the transformed video track and placeholders."""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Tuple

import numpy as np
from aiortc import AudioStreamTrack, MediaStreamTrack, VideoStreamTrack
from aiortc.mediastreams import MediaStreamError
from av import AudioFrame, VideoFrame

from ..config import Config

logger = logging.getLogger(__name__)


def blank_video_frame(width: int, height: int) -> VideoFrame:
    """Return a black frame of the given size."""
    return VideoFrame.from_ndarray(np.zeros((height, width, 3), dtype=np.uint8), format="rgb24")


def blank_like(frame):
    """Return a black/silent frame with the same shape and timing as ``frame``."""
    if isinstance(frame, VideoFrame):
        blank = blank_video_frame(frame.width, frame.height)
    else:
        blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.sample_rate = frame.sample_rate
    blank.pts = frame.pts
    blank.time_base = frame.time_base
    return blank


class BlankVideoTrack(VideoStreamTrack):
    """Video track producing black frames; used when no camera is available."""

    kind = "video"

    def __init__(self, width: Optional[int] = None, height: Optional[int] = None) -> None:
        super().__init__()
        self.width = width or Config.VIDEO_WIDTH
        self.height = height or Config.VIDEO_HEIGHT

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        frame = blank_video_frame(self.width, self.height)
        frame.pts = pts
        frame.time_base = time_base
        return frame


def placeholder_tracks() -> Tuple[MediaStreamTrack, MediaStreamTrack]:
    """Silent audio plus black video, for answering when local media never initialized."""
    return AudioStreamTrack(), BlankVideoTrack()


class GatedTrack(MediaStreamTrack):
    """Wraps a device track with an ``enabled`` switch.

    While disabled the source keeps being consumed but black frames or silence are
    emitted in its place, so muting never renegotiates a connection. Once the
    source ends (device released) a local generator takes over.
    """

    def __init__(self, source: MediaStreamTrack, *, enabled: bool = True) -> None:
        super().__init__()
        self.kind = source.kind
        self.enabled = enabled
        self._source = source
        self._fallback: MediaStreamTrack = BlankVideoTrack() if source.kind == "video" else AudioStreamTrack()

    @property
    def source(self) -> MediaStreamTrack:
        return self._source

    async def recv(self):
        if self.readyState != "live":
            raise MediaStreamError
        if self._source.readyState == "live":
            try:
                frame = await self._source.recv()
            except MediaStreamError:
                logger.debug("Source %s track ended, switching to generated frames", self.kind)
            else:
                return frame if self.enabled else blank_like(frame)
        return await self._fallback.recv()

    def stop(self) -> None:
        super().stop()
        self._source.stop()
        self._fallback.stop()


class TransformedVideoTrack(VideoStreamTrack):
    """Video track fed by the frame pump with composited frames."""

    kind = "video"

    def __init__(self, *, enabled: bool = True, frame_timeout: float = 0.5) -> None:
        super().__init__()
        self.enabled = enabled
        self.frame_timeout = frame_timeout
        self._frames: asyncio.Queue = asyncio.Queue(maxsize=2)
        self._last: Optional[VideoFrame] = None

    def push(self, frame: VideoFrame) -> None:
        """Queue a composited frame, dropping the oldest one when full."""
        if self._frames.full():
            try:
                self._frames.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self._frames.put_nowait(frame)

    async def recv(self) -> VideoFrame:
        pts, time_base = await self.next_timestamp()
        try:
            frame = await asyncio.wait_for(self._frames.get(), timeout=self.frame_timeout)
            self._last = frame
        except asyncio.TimeoutError:
            frame = self._last
        if frame is None:
            frame = blank_video_frame(Config.VIDEO_WIDTH, Config.VIDEO_HEIGHT)
        elif not self.enabled:
            frame = blank_video_frame(frame.width, frame.height)
        else:
            frame = VideoFrame.from_ndarray(frame.to_ndarray(format="rgb24"), format="rgb24")
        frame.pts = pts
        frame.time_base = time_base
        return frame
