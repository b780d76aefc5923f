"""Screenshot stabilization and canonical frame construction."""
from __future__ import annotations

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Optional, Tuple

from PIL import Image, ImageChops, ImageStat, UnidentifiedImageError
from tenacity import AsyncRetrying, stop_after_attempt, wait_exponential

from config import StabilityConfig
from exceptions import ScreenshotError, SurfaceError
from run_types import CancellationToken
from surfaces.base import ControlledSurface, ViewportMetrics

# Captures smaller than this are treated as failed captures.
MIN_CAPTURE_SIZE = 16


@dataclass(frozen=True)
class FrameTransform:
    """Mapping between a frame's pixel space and the page's CSS pixel space.

    Crop values are in page CSS pixels; frame size is the output image size.
    """

    crop_x: float
    crop_y: float
    crop_width: float
    crop_height: float
    device_pixel_ratio: float
    viewport_width: int
    viewport_height: int
    frame_width: int
    frame_height: int

    @property
    def frame_scale_x(self) -> float:
        return self.crop_width / self.frame_width if self.frame_width else 1.0

    @property
    def frame_scale_y(self) -> float:
        return self.crop_height / self.frame_height if self.frame_height else 1.0


@dataclass
class Frame:
    """A stabilized, cropped and resolution-capped screenshot."""

    raw_width: int
    raw_height: int
    data: bytes
    signature: Image.Image
    transform: FrameTransform
    settled: bool = True
    polls: int = 1
    captured_at: float = field(default_factory=time.time)
    mime_type: str = "image/png"

    @property
    def width(self) -> int:
        return self.transform.frame_width

    @property
    def height(self) -> int:
        return self.transform.frame_height


def decode_capture(data: bytes) -> Image.Image:
    """Decode raw screenshot bytes into an RGB image or raise ScreenshotError."""
    if not data:
        raise ScreenshotError("Screenshot returned no data")
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise ScreenshotError(f"Screenshot is not a valid image: {e}") from e
    if image.width < MIN_CAPTURE_SIZE or image.height < MIN_CAPTURE_SIZE:
        raise ScreenshotError(f"Screenshot too small: {image.width}x{image.height}")
    return image.convert("RGB")


def crop_to_aspect(width: int, height: int, aspect: float) -> Tuple[int, int, int, int]:
    """Centered crop box (left, top, width, height) trimming the longer dimension."""
    if width <= 0 or height <= 0 or aspect <= 0:
        return 0, 0, max(width, 0), max(height, 0)
    if width / height > aspect:
        crop_w = max(1, min(width, round(height * aspect)))
        return (width - crop_w) // 2, 0, crop_w, height
    crop_h = max(1, min(height, round(width / aspect)))
    return 0, (height - crop_h) // 2, width, crop_h


def compute_signature(image: Image.Image, size: Tuple[int, int] = (96, 60)) -> Image.Image:
    """Cheap downsampled color signature of an image."""
    return image.convert("RGB").resize(size, Image.Resampling.BILINEAR)


def signature_difference(a: Image.Image, b: Image.Image) -> float:
    """Mean absolute per-channel difference in [0, 1]."""
    if a.size != b.size:
        return 1.0
    stat = ImageStat.Stat(ImageChops.difference(a, b))
    return sum(stat.mean) / (len(stat.mean) * 255.0)


class FrameStabilizer:
    """Captures a screenshot only once visual change has settled."""

    def __init__(self, config: Optional[StabilityConfig] = None, logger: Optional[logging.Logger] = None):
        self.config = config or StabilityConfig()
        self.logger = logger or logging.getLogger("pagepilot.frames")

    @property
    def signature_size(self) -> Tuple[int, int]:
        return self.config.signature_width, self.config.signature_height

    async def capture_raw(self, surface: ControlledSurface) -> Image.Image:
        """Take one screenshot, retrying failed or invalid captures with backoff."""
        attempts = self.config.capture_retries
        backoff = self.config.capture_backoff
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(attempts),
                wait=wait_exponential(multiplier=backoff, min=backoff, max=max(backoff * 4, backoff)),
                reraise=True,
            ):
                with attempt:
                    data = await surface.screenshot()
                    return decode_capture(data)
        except Exception as e:
            self.logger.warning(f"Screenshot capture failed after {attempts} attempts: {e}")
            raise ScreenshotError(f"Screenshot capture failed: {e}", attempts=attempts) from e
        raise ScreenshotError("Screenshot capture failed", attempts=attempts)

    async def capture_stable_frame(
        self,
        surface: ControlledSurface,
        token: Optional[CancellationToken] = None,
    ) -> Frame:
        """Poll screenshots until two consecutive signatures agree or the timeout elapses."""
        cfg = self.config
        deadline = time.monotonic() + cfg.timeout

        image = await self.capture_raw(surface)
        signature = self._signature(image)
        polls = 1
        settled = False

        while True:
            if token is not None and token.cancelled:
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            delay = min(cfg.poll_interval, remaining)
            if token is not None:
                if await token.sleep(delay):
                    break
            else:
                await asyncio.sleep(delay)

            next_image = await self.capture_raw(surface)
            next_signature = self._signature(next_image)
            polls += 1
            diff = signature_difference(signature, next_signature)
            image, signature = next_image, next_signature
            if diff < cfg.threshold:
                settled = True
                break

        if not settled:
            self.logger.debug(f"Frame did not settle after {polls} captures; using the last one")

        viewport = await self._read_viewport(surface)
        return self.build_frame(image, viewport, signature=signature, settled=settled, polls=polls)

    def build_frame(
        self,
        image: Image.Image,
        viewport: Optional[ViewportMetrics] = None,
        signature: Optional[Image.Image] = None,
        settled: bool = True,
        polls: int = 1,
    ) -> Frame:
        """Crop to the canonical aspect ratio, cap the resolution, record the transform."""
        cfg = self.config
        raw_w, raw_h = image.size
        left, top, crop_w, crop_h = crop_to_aspect(raw_w, raw_h, cfg.aspect_ratio)
        cropped = image.crop((left, top, left + crop_w, top + crop_h))

        scale = min(1.0, cfg.max_frame_width / crop_w, cfg.max_frame_height / crop_h)
        frame_w = max(1, round(crop_w * scale))
        frame_h = max(1, round(crop_h * scale))
        if (frame_w, frame_h) != cropped.size:
            output = cropped.resize((frame_w, frame_h), Image.Resampling.LANCZOS)
        else:
            output = cropped

        if viewport is not None:
            dpr = raw_w / viewport.width if viewport.width else viewport.device_pixel_ratio
            viewport_w, viewport_h = viewport.width, viewport.height
        else:
            dpr = 1.0
            viewport_w, viewport_h = raw_w, raw_h
        if dpr <= 0:
            dpr = 1.0

        buf = io.BytesIO()
        output.save(buf, format="PNG")

        transform = FrameTransform(
            crop_x=left / dpr,
            crop_y=top / dpr,
            crop_width=crop_w / dpr,
            crop_height=crop_h / dpr,
            device_pixel_ratio=dpr,
            viewport_width=viewport_w,
            viewport_height=viewport_h,
            frame_width=frame_w,
            frame_height=frame_h,
        )
        return Frame(
            raw_width=raw_w,
            raw_height=raw_h,
            data=buf.getvalue(),
            signature=signature if signature is not None else self._signature(image),
            transform=transform,
            settled=settled,
            polls=polls,
        )

    def drift_ratio(self, frame: Frame, raw_png: bytes) -> float:
        """Perceptual difference between a stabilized frame and a fresh capture."""
        image = decode_capture(raw_png)
        return signature_difference(frame.signature, self._signature(image))

    async def measure_drift(self, surface: ControlledSurface, frame: Frame) -> float:
        """Capture the surface once and compare it with ``frame``."""
        return self.drift_ratio(frame, await surface.screenshot())

    def _signature(self, image: Image.Image) -> Image.Image:
        left, top, crop_w, crop_h = crop_to_aspect(image.width, image.height, self.config.aspect_ratio)
        return compute_signature(image.crop((left, top, left + crop_w, top + crop_h)), self.signature_size)

    async def _read_viewport(self, surface: ControlledSurface) -> Optional[ViewportMetrics]:
        try:
            return await surface.viewport_metrics()
        except SurfaceError as e:
            self.logger.debug(f"Viewport metrics unavailable: {e}")
            return None
