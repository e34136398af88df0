"""Default background blur compositor."""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from av import VideoFrame
from PIL import Image, ImageDraw, ImageFilter

from ..config import Config

logger = logging.getLogger(__name__)


class BackgroundBlur:
    """Keep an elliptical foreground region sharp and blur everything else.

    There is no segmentation model here: the foreground is assumed to be the
    centred subject, as in a typical webcam framing. The mask is cached per
    frame size.
    """

    def __init__(self, radius: Optional[float] = None, feather: float = 4.0, foreground: float = 0.6) -> None:
        self.radius = Config.BLUR_RADIUS if radius is None else radius
        self.feather = feather
        self.foreground = foreground
        self._mask: Optional[Image.Image] = None
        self._mask_size: Optional[Tuple[int, int]] = None

    def _mask_for(self, size: Tuple[int, int]) -> Image.Image:
        if self._mask is None or self._mask_size != size:
            width, height = size
            margin_x = width * (1 - self.foreground) / 2
            margin_y = height * (1 - self.foreground) / 4
            mask = Image.new("L", size, 0)
            ImageDraw.Draw(mask).ellipse(
                (margin_x, margin_y, width - margin_x, height),
                fill=255,
            )
            self._mask = mask.filter(ImageFilter.GaussianBlur(self.feather))
            self._mask_size = size
        return self._mask

    def __call__(self, frame: VideoFrame) -> VideoFrame:
        image = frame.to_image()
        if image.mode != "RGB":
            image = image.convert("RGB")
        background = image.filter(ImageFilter.GaussianBlur(self.radius))
        composited = Image.composite(image, background, self._mask_for(image.size))
        result = VideoFrame.from_image(composited)
        result.pts = frame.pts
        result.time_base = frame.time_base
        return result
