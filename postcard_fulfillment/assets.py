"""Print asset preparation: download, resample, logo composite, upload.

Images coming from the design generator are 1800x1200 (6"x4" at 300 DPI).
The mail provider prints 6"x4" postcards with a 0.12" bleed on each side,
so every front is resampled to exactly 1871x1271 pixels before upload.
Pillow work is CPU bound and runs in a worker thread.
"""

from __future__ import annotations

import asyncio
import io
from dataclasses import dataclass
from typing import Optional, Tuple

import aiohttp
from PIL import Image, ImageOps, UnidentifiedImageError

from .errors import DownloadError, ImageProcessingError
from .logger import get_logger
from .models import Brand, ProcessedImage, utc_now
from .storage import ObjectStorage

DPI = 300
PRINT_WIDTH = 1871
PRINT_HEIGHT = 1271
GENERATED_WIDTH = 1800
GENERATED_HEIGHT = 1200
JPEG_QUALITY = 95
THUMBNAIL_QUALITY = 80

LOGO_X_IN = 0.25
LOGO_Y_IN = 0.25
LOGO_MAX_WIDTH_IN = 1.5
LOGO_MAX_HEIGHT_IN = 1.0


@dataclass(frozen=True)
class LogoPosition:
    """Logo placement in inches from the top-left corner."""

    x: float
    y: float
    width: float
    height: float

    def to_pixels(self, dpi: int = DPI) -> Tuple[int, int, int, int]:
        """Return ``(left, top, width, height)`` in pixels."""
        return (
            round(self.x * dpi),
            round(self.y * dpi),
            max(1, round(self.width * dpi)),
            max(1, round(self.height * dpi)),
        )


def calculate_logo_position(
    aspect_ratio: float,
    *,
    x: float = LOGO_X_IN,
    y: float = LOGO_Y_IN,
    max_width: float = LOGO_MAX_WIDTH_IN,
    max_height: float = LOGO_MAX_HEIGHT_IN,
) -> LogoPosition:
    """Fit a logo of ``aspect_ratio`` (width / height) into the default box.

    Wide logos keep the full box width and derive their height; tall logos
    keep the full box height and derive their width.
    """
    if aspect_ratio <= 0:
        aspect_ratio = 1.0
    if aspect_ratio >= 1:
        return LogoPosition(x=x, y=y, width=max_width, height=max_width / aspect_ratio)
    return LogoPosition(x=x, y=y, width=max_height * aspect_ratio, height=max_height)


def _open(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ImageProcessingError(f"Cannot decode image: {exc}") from exc
    return image


def _encode_jpeg(image: Image.Image, quality: int, progressive: bool = False) -> bytes:
    buffer = io.BytesIO()
    image.convert("RGB").save(buffer, "JPEG", quality=quality, progressive=progressive, optimize=True)
    return buffer.getvalue()


def image_size(data: bytes) -> Tuple[int, int]:
    """Return ``(width, height)`` of an encoded image."""
    return _open(data).size


def resample_to_print(data: bytes, size: Tuple[int, int] = (PRINT_WIDTH, PRINT_HEIGHT)) -> bytes:
    """Resize to exactly ``size`` with Lanczos, ignoring the source aspect ratio."""
    image = _open(data)
    resized = image.convert("RGB").resize(size, Image.Resampling.LANCZOS)
    return _encode_jpeg(resized, JPEG_QUALITY, progressive=True)


def composite_logo(data: bytes, logo: bytes, position: LogoPosition, dpi: int = DPI) -> bytes:
    """Alpha-composite ``logo`` over ``data`` inside the box given by ``position``."""
    left, top, width, height = position.to_pixels(dpi)
    base = _open(data).convert("RGBA")
    mark = ImageOps.contain(_open(logo).convert("RGBA"), (width, height), Image.Resampling.LANCZOS)
    if left + mark.width > base.width or top + mark.height > base.height:
        raise ImageProcessingError(
            f"Logo box {mark.width}x{mark.height} at ({left}, {top}) exceeds image {base.width}x{base.height}"
        )
    base.alpha_composite(mark, dest=(left, top))
    return _encode_jpeg(base, JPEG_QUALITY, progressive=True)


def make_thumbnail(data: bytes, max_width: int) -> bytes:
    """Shrink to ``max_width`` preserving aspect ratio. Never enlarges."""
    image = _open(data).convert("RGB")
    if image.width > max_width:
        height = max(1, round(image.height * max_width / image.width))
        image = image.resize((max_width, height), Image.Resampling.LANCZOS)
    return _encode_jpeg(image, THUMBNAIL_QUALITY)


def final_asset_path(campaign_id: str, design_id: str) -> str:
    return f"campaigns/{campaign_id}/final/{design_id}-front-processed.jpg"


def thumbnail_path(campaign_id: str, design_id: str) -> str:
    return f"campaigns/{campaign_id}/previews/{design_id}-thumbnail.jpg"


class AssetProcessor:
    """Turn generated design images into print-ready fronts."""

    def __init__(
        self,
        storage: ObjectStorage,
        *,
        download_timeout: float = 30.0,
        logo_max_width: float = LOGO_MAX_WIDTH_IN,
        logo_max_height: float = LOGO_MAX_HEIGHT_IN,
        logger=None,
    ):
        self.storage = storage
        self.download_timeout = float(download_timeout)
        self.logo_max_width = float(logo_max_width)
        self.logo_max_height = float(logo_max_height)
        self.logger = logger or get_logger()

    async def download(self, url: str) -> bytes:
        """Fetch ``url``. Any network error or non-2xx response raises :class:`DownloadError`."""
        timeout = aiohttp.ClientTimeout(total=self.download_timeout)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.get(url) as resp:
                    if resp.status < 200 or resp.status >= 300:
                        raise DownloadError(url, f"HTTP {resp.status}")
                    return await resp.read()
        except DownloadError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as exc:
            raise DownloadError(url, str(exc) or exc.__class__.__name__) from exc

    def logo_position(self, aspect_ratio: float) -> LogoPosition:
        return calculate_logo_position(
            aspect_ratio, max_width=self.logo_max_width, max_height=self.logo_max_height
        )

    async def _upload(self, path: str, data: bytes) -> ProcessedImage:
        width, height = await asyncio.to_thread(image_size, data)
        metadata = {
            "processedAt": utc_now().isoformat(),
            "width": str(width),
            "height": str(height),
        }
        url = await self.storage.upload(path, data, "image/jpeg", metadata)
        return ProcessedImage(url=url, width=width, height=height, size=len(data))

    async def process_design(
        self,
        source_url: str,
        brand: Optional[Brand],
        campaign_id: str,
        design_id: str,
    ) -> ProcessedImage:
        """Produce and upload the print-ready front of one design.

        Raises:
            DownloadError: The design image or the logo could not be fetched.
            ImageProcessingError: An image could not be decoded or composited.
            UploadError: The storage backend rejected the result.
        """
        source = await self.download(source_url)
        processed = await asyncio.to_thread(resample_to_print, source)

        logo = brand.print_logo() if brand is not None else None
        if logo is not None:
            logo_bytes = await self.download(logo.url)
            position = self.logo_position(logo.aspect_ratio)
            processed = await asyncio.to_thread(composite_logo, processed, logo_bytes, position)
        else:
            self.logger.debug("Design %s: brand has no logo, skipping composite", design_id)

        result = await self._upload(final_asset_path(campaign_id, design_id), processed)
        self.logger.info(
            "Processed design %s for campaign %s (%sx%s, %s bytes)",
            design_id,
            campaign_id,
            result.width,
            result.height,
            result.size,
        )
        return result

    async def generate_thumbnail(
        self,
        image_url: str,
        campaign_id: str,
        design_id: str,
        max_width: int = 400,
    ) -> str:
        """Upload a preview of ``image_url`` and return its URL."""
        source = await self.download(image_url)
        thumbnail = await asyncio.to_thread(make_thumbnail, source, int(max_width))
        result = await self._upload(thumbnail_path(campaign_id, design_id), thumbnail)
        return result.url

    async def validate_image(self, image_url: str) -> bool:
        """Return whether ``image_url`` downloads and decodes."""
        try:
            data = await self.download(image_url)
            width, height = await asyncio.to_thread(image_size, data)
        except (DownloadError, ImageProcessingError) as exc:
            self.logger.error("Image validation failed for %s: %s", image_url, exc)
            return False
        if (width, height) != (GENERATED_WIDTH, GENERATED_HEIGHT):
            self.logger.warning(
                "Image dimensions mismatch for %s. Expected %sx%s, got %sx%s",
                image_url,
                GENERATED_WIDTH,
                GENERATED_HEIGHT,
                width,
                height,
            )
        return True
