"""Tests for the frame pump."""

from __future__ import annotations

import asyncio

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from meshmeet.media.pump import FramePump
from meshmeet.media.tracks import TransformedVideoTrack, blank_video_frame
from tests.conftest import wait_for


class FrameSource(MediaStreamTrack):
    """Finite video source yielding ``count`` frames, then ending."""

    kind = "video"

    def __init__(self, count: int) -> None:
        super().__init__()
        self.remaining = count

    async def recv(self):
        await asyncio.sleep(0)
        if self.remaining <= 0:
            self.stop()
            raise MediaStreamError
        self.remaining -= 1
        return blank_video_frame(32, 24)


class TestFramePump:
    async def test_frames_reach_sink(self) -> None:
        sink = TransformedVideoTrack()
        pump = FramePump(FrameSource(3), sink, lambda frame: frame, timeout=1.0, failure_limit=5)

        pump.start()
        assert await wait_for(lambda: not pump.running)

        assert pump.frames_in == 3
        assert pump.frames_out == 3
        assert pump.failures == 0
        assert sink._frames.qsize() == 2

    async def test_async_transform(self) -> None:
        seen = []

        async def transform(frame):
            seen.append(frame)
            return frame

        pump = FramePump(FrameSource(2), TransformedVideoTrack(), transform, timeout=1.0)
        pump.start()
        assert await wait_for(lambda: not pump.running)
        assert len(seen) == 2

    async def test_consecutive_failures_exhaust_once(self) -> None:
        exhausted = []

        def broken(frame):
            raise ValueError("no mask")

        pump = FramePump(
            FrameSource(10),
            TransformedVideoTrack(),
            broken,
            timeout=1.0,
            failure_limit=3,
            on_exhausted=lambda: exhausted.append(True),
        )
        pump.start()
        assert await wait_for(lambda: not pump.running)

        assert exhausted == [True]
        assert pump.frames_in == 3
        assert pump.failures == 3
        assert pump.frames_out == 0

    async def test_single_failure_is_dropped_frame(self) -> None:
        exhausted = []
        results = iter([None, "ok", "ok"])

        def flaky(frame):
            return frame if next(results) else None

        pump = FramePump(
            FrameSource(3),
            TransformedVideoTrack(),
            flaky,
            timeout=1.0,
            failure_limit=2,
            on_exhausted=lambda: exhausted.append(True),
        )
        pump.start()
        assert await wait_for(lambda: not pump.running)

        assert exhausted == []
        assert pump.failures == 1
        assert pump.frames_out == 2

    async def test_timeout_counts_as_failure(self) -> None:
        exhausted = []

        async def slow(frame):
            await asyncio.sleep(1)
            return frame

        pump = FramePump(
            FrameSource(5),
            TransformedVideoTrack(),
            slow,
            timeout=0.01,
            failure_limit=2,
            on_exhausted=lambda: exhausted.append(True),
        )
        pump.start()
        assert await wait_for(lambda: not pump.running)

        assert exhausted == [True]
        assert pump.frames_out == 0

    async def test_stop_cancels_and_stops_source(self) -> None:
        source = FrameSource(10_000)

        async def slow(frame):
            await asyncio.sleep(0.01)
            return frame

        pump = FramePump(source, TransformedVideoTrack(), slow, timeout=1.0)
        pump.start()
        await asyncio.sleep(0.03)

        await pump.stop()

        assert not pump.running
        assert source.readyState == "ended"
        await pump.stop()
