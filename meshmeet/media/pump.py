"""Frame pump feeding captured frames through the external transform."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Optional

from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from ..config import Config
from ..errors import TransformFailure
from .tracks import TransformedVideoTrack

logger = logging.getLogger(__name__)

FrameTransform = Callable[[Any], Any]


class FramePump:
    """Reads frames from a source track, transforms them and pushes them into a sink.

    Transform errors and timeouts drop the frame and the pump continues; after
    ``failure_limit`` consecutive failures ``on_exhausted`` is called and the
    pump stops.
    """

    def __init__(
        self,
        source: MediaStreamTrack,
        sink: TransformedVideoTrack,
        transform: FrameTransform,
        *,
        timeout: Optional[float] = None,
        failure_limit: Optional[int] = None,
        on_exhausted: Optional[Callable[[], None]] = None,
    ) -> None:
        self.source = source
        self.sink = sink
        self.transform = transform
        self.timeout = Config.TRANSFORM_TIMEOUT if timeout is None else timeout
        self.failure_limit = Config.TRANSFORM_FAILURE_LIMIT if failure_limit is None else failure_limit
        self.on_exhausted = on_exhausted
        self.frames_in = 0
        self.frames_out = 0
        self.failures = 0
        self._consecutive_failures = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._pump_loop())
        logger.info("Frame pump started")

    async def stop(self) -> None:
        if not self._running and self._task is None:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        self.source.stop()
        logger.info("Frame pump stopped (%d in, %d out, %d dropped)", self.frames_in, self.frames_out, self.failures)

    async def _apply(self, frame):
        if inspect.iscoroutinefunction(self.transform):
            return await self.transform(frame)
        return await asyncio.to_thread(self.transform, frame)

    async def _transform(self, frame):
        try:
            result = await asyncio.wait_for(self._apply(frame), timeout=self.timeout)
        except asyncio.TimeoutError as error:
            raise TransformFailure("Frame transform timed out") from error
        except asyncio.CancelledError:
            raise
        except Exception as error:
            raise TransformFailure(f"Frame transform failed: {error}") from error
        if result is None:
            raise TransformFailure("Frame transform returned no frame")
        return result

    async def _pump_loop(self) -> None:
        while self._running:
            try:
                frame = await self.source.recv()
            except MediaStreamError:
                logger.info("Pump source ended")
                self._running = False
                return
            self.frames_in += 1
            try:
                composited = await self._transform(frame)
            except TransformFailure as error:
                self.failures += 1
                self._consecutive_failures += 1
                logger.debug("Dropping frame: %s", error)
                if self.failure_limit and self._consecutive_failures >= self.failure_limit:
                    logger.warning(
                        "Frame transform failed %d times in a row, falling back to raw video",
                        self._consecutive_failures,
                    )
                    self._running = False
                    if self.on_exhausted:
                        self.on_exhausted()
                    return
                continue
            self._consecutive_failures = 0
            self.frames_out += 1
            self.sink.push(composited)
