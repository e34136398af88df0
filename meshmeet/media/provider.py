"""Capability provider: local media acquisition and outbound track selection."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple

from aiortc.contrib.media import MediaRelay

from ..config import Config
from ..models import OutboundTrackState
from .blur import BackgroundBlur
from .devices import DeviceOpener, LocalDevices, open_devices, stop_devices
from .pump import FramePump, FrameTransform
from .tracks import GatedTrack, TransformedVideoTrack

logger = logging.getLogger(__name__)

TrackListener = Callable[[str, Any], Awaitable[None]]


class CapabilityProvider:
    """Owns the local camera/microphone and decides which video track is sent.

    Toggles normally flip the ``enabled`` flag of the gated tracks, so no
    connection is touched. With ``release_on_disable`` the device itself is
    stopped and re-enabling opens a fresh one, which is pushed to listeners
    (the connection registry) as a track replacement.
    """

    def __init__(
        self,
        *,
        opener: Optional[DeviceOpener] = None,
        transform: Optional[FrameTransform] = None,
        release_on_disable: Optional[bool] = None,
        transform_timeout: Optional[float] = None,
        transform_failure_limit: Optional[int] = None,
    ) -> None:
        self._opener = opener or open_devices
        self._transform = transform or BackgroundBlur()
        self.release_on_disable = (
            Config.RELEASE_DEVICES_ON_DISABLE if release_on_disable is None else release_on_disable
        )
        self._transform_timeout = transform_timeout
        self._transform_failure_limit = transform_failure_limit
        self._relay = MediaRelay()
        self._devices: Optional[LocalDevices] = None
        self._pump: Optional[FramePump] = None
        self._listeners: List[TrackListener] = []
        self._fallback_task: Optional[asyncio.Task] = None
        self.state: Optional[OutboundTrackState] = None
        self.muted = False
        self.camera_off = False
        self.blurred = False
        self.transform_degraded = False

    @property
    def acquired(self) -> bool:
        return self.state is not None

    @property
    def pump(self) -> Optional[FramePump]:
        return self._pump

    def add_track_listener(self, listener: TrackListener) -> None:
        self._listeners.append(listener)

    def remove_track_listener(self, listener: TrackListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def outbound_tracks(self) -> Tuple[Any, Any]:
        """Return (audio, selected video), or (None, None) before acquisition."""
        if self.state is None:
            return None, None
        return self.state.audio_track, self.state.selected_track

    async def acquire_local_media(self) -> OutboundTrackState:
        """Open camera and microphone; a no-op when media is already live.

        Raises:
            MediaUnavailable: on denied permission or missing hardware.
        """
        if self.state is not None:
            return self.state
        devices = await self._opener(audio=True, video=True)
        self._devices = devices
        audio = GatedTrack(devices.audio, enabled=not self.muted)
        raw = GatedTrack(self._relay.subscribe(devices.video, buffered=False), enabled=not self.camera_off)
        self.state = OutboundTrackState(audio_track=audio, raw_track=raw)
        if self.muted and self.release_on_disable:
            devices.audio.stop()
        if self.camera_off and self.release_on_disable:
            devices.video.stop()
        if self.blurred:
            self._start_transform()
        logger.info("Local media acquired")
        return self.state

    async def set_muted(self, muted: bool) -> None:
        if muted == self.muted:
            return
        if self.state is None:
            self.muted = muted
            return
        if not self.release_on_disable:
            self.muted = muted
            self.state.audio_track.enabled = not muted
            return
        if muted:
            self.muted = True
            self.state.audio_track.enabled = False
            self._devices.audio.stop()
            return
        fresh = await self._opener(audio=True, video=False)
        self.muted = False
        self._devices.audio = fresh.audio
        previous = self.state.audio_track
        self.state.audio_track = GatedTrack(fresh.audio)
        await self._notify("audio", self.state.audio_track)
        previous.stop()

    async def set_camera_off(self, camera_off: bool) -> None:
        if camera_off == self.camera_off:
            return
        if self.state is None:
            self.camera_off = camera_off
            return
        if not self.release_on_disable:
            self.camera_off = camera_off
            self._sync_video_enabled()
            return
        if camera_off:
            self.camera_off = True
            self._sync_video_enabled()
            self._devices.video.stop()
            return
        fresh = await self._opener(audio=False, video=True)
        self.camera_off = False
        self._devices.video = fresh.video
        previous = self.state.raw_track
        self.state.raw_track = GatedTrack(self._relay.subscribe(fresh.video, buffered=False))
        if self.state.transformed:
            await self._restart_pump()
        else:
            self.state.selected_track = self.state.raw_track
        self._sync_video_enabled()
        await self._notify("video", self.state.selected_track)
        previous.stop()

    async def set_blurred(self, blurred: bool) -> None:
        if blurred == self.blurred:
            return
        self.blurred = blurred
        if self.state is None:
            return
        if blurred:
            self.transform_degraded = False
            self._start_transform()
            await self._notify("video", self.state.selected_track)
        else:
            await self._stop_transform()

    async def release(self) -> None:
        """Stop the pump and every local track, releasing the devices."""
        if self._fallback_task and not self._fallback_task.done():
            self._fallback_task.cancel()
        self._fallback_task = None
        if self._pump is not None:
            await self._pump.stop()
            self._pump = None
        if self.state is not None:
            for track in (self.state.audio_track, self.state.raw_track, self.state.transformed_track):
                if track is not None:
                    track.stop()
            self.state = None
        stop_devices(self._devices)
        self._devices = None
        self._listeners.clear()
        logger.info("Local media released")

    def _sync_video_enabled(self) -> None:
        enabled = not self.camera_off
        self.state.raw_track.enabled = enabled
        if self.state.transformed_track is not None:
            self.state.transformed_track.enabled = enabled

    def _new_pump(self, sink: TransformedVideoTrack) -> FramePump:
        source = self._relay.subscribe(self._devices.video, buffered=False)
        return FramePump(
            source,
            sink,
            self._transform,
            timeout=self._transform_timeout,
            failure_limit=self._transform_failure_limit,
            on_exhausted=self._on_transform_exhausted,
        )

    def _start_transform(self) -> None:
        transformed = TransformedVideoTrack(enabled=not self.camera_off)
        self._pump = self._new_pump(transformed)
        self.state.transformed_track = transformed
        self.state.selected_track = transformed
        self._pump.start()

    async def _restart_pump(self) -> None:
        if self._pump is not None:
            await self._pump.stop()
        self._pump = self._new_pump(self.state.transformed_track)
        self._pump.start()

    async def _stop_transform(self) -> None:
        transformed = self.state.transformed_track
        pump, self._pump = self._pump, None
        self.transform_degraded = False
        if transformed is not None and self.state.selected_track is transformed:
            # Select raw before stopping the transformed track so a track is always selected.
            self.state.selected_track = self.state.raw_track
            self._sync_video_enabled()
            await self._notify("video", self.state.raw_track)
        self.state.transformed_track = None
        if pump is not None:
            await pump.stop()
        if transformed is not None:
            transformed.stop()

    def _on_transform_exhausted(self) -> None:
        self.transform_degraded = True
        self._fallback_task = asyncio.ensure_future(self._fall_back_to_raw())

    async def _fall_back_to_raw(self) -> None:
        if self.state is None or not self.state.transformed:
            return
        transformed = self.state.transformed_track
        self.state.selected_track = self.state.raw_track
        self._sync_video_enabled()
        await self._notify("video", self.state.raw_track)
        self.state.transformed_track = None
        pump, self._pump = self._pump, None
        if pump is not None:
            await pump.stop()
        transformed.stop()

    async def _notify(self, kind: str, track: Any) -> None:
        for listener in list(self._listeners):
            try:
                await listener(kind, track)
            except Exception as error:
                logger.warning("Track listener failed for %s: %s", kind, error, exc_info=True)
