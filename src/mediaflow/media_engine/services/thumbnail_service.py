"""
Thumbnail Service
Decodes raster images, resizes them without enlarging, and re-encodes them
for storage next to the original upload.
"""

from __future__ import annotations

import io
import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from PIL import Image, ImageColor, UnidentifiedImageError

from mediaflow.config import get_settings
from mediaflow.config.settings import Settings
from mediaflow.exceptions.handlers import UnsupportedFormatError, ValidationError

logger = logging.getLogger(__name__)

SUPPORTED_SOURCE_FORMATS = ("jpeg", "jpg", "png", "gif", "webp", "tiff", "bmp")
OUTPUT_FORMATS = ("jpeg", "png", "webp")
FIT_MODES = ("cover", "contain", "fill", "inside", "outside")

MAX_DIMENSION = 4096

# Pillow format names accepted from the decoder (MPO is multi-picture JPEG)
_DECODE_FORMATS = {"JPEG", "MPO", "PNG", "GIF", "WEBP", "TIFF", "BMP"}

_COLOR_SPACES = {
    "1": "b-w",
    "L": "b-w",
    "LA": "b-w",
    "I": "grey16",
    "I;16": "grey16",
    "F": "grey16",
    "P": "srgb",
    "PA": "srgb",
    "RGB": "srgb",
    "RGBA": "srgb",
    "RGBX": "srgb",
    "CMYK": "cmyk",
    "YCbCr": "ycbcr",
    "LAB": "lab",
}

_BIT_DEPTHS = {"1": 1, "I": 32, "I;16": 16, "F": 32}

_DECODE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    SyntaxError,
    ValueError,
)


@dataclass
class ThumbnailOptions:
    width: int = 300
    height: int = 300
    quality: int = 80
    format: str = "jpeg"
    fit: str = "cover"
    background: str = "#FFFFFF"


@dataclass
class ProcessingOptions:
    """Bounding-box mode: output keeps the source aspect ratio."""

    max_width: Optional[int] = None
    max_height: Optional[int] = None
    quality: Optional[int] = None
    format: Optional[str] = None


@dataclass
class ThumbnailResult:
    data: bytes
    format: str
    width: int
    height: int
    size: int
    source_metadata: Dict[str, Any] = field(default_factory=dict)


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


class ThumbnailService:
    def __init__(self, default_options: Optional[ThumbnailOptions] = None):
        self.default_options = default_options or ThumbnailOptions()

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ThumbnailService":
        settings = settings or get_settings()
        return cls(
            ThumbnailOptions(
                width=settings.THUMBNAIL_WIDTH,
                height=settings.THUMBNAIL_HEIGHT,
                quality=settings.THUMBNAIL_QUALITY,
                format=settings.THUMBNAIL_FORMAT,
                fit=settings.THUMBNAIL_FIT,
                background=settings.THUMBNAIL_BACKGROUND,
            )
        )

    def get_supported_formats(self) -> List[str]:
        return list(OUTPUT_FORMATS)

    def get_default_options(self) -> ThumbnailOptions:
        return replace(self.default_options)

    def validate_options(self, options: ThumbnailOptions) -> bool:
        if not 1 <= options.width <= MAX_DIMENSION:
            return False
        if not 1 <= options.height <= MAX_DIMENSION:
            return False
        if not 1 <= options.quality <= 100:
            return False
        if options.format not in OUTPUT_FORMATS:
            return False
        if options.fit not in FIT_MODES:
            return False
        try:
            ImageColor.getrgb(options.background)
        except ValueError:
            return False
        return True

    def _resolve_options(
        self, options: Union[ThumbnailOptions, Mapping[str, Any], None]
    ) -> ThumbnailOptions:
        if isinstance(options, ThumbnailOptions):
            resolved = options
        else:
            overrides = {k: v for k, v in (options or {}).items() if v is not None}
            resolved = replace(self.default_options, **overrides)
        resolved = replace(resolved, format=str(resolved.format).lower())
        if not self.validate_options(resolved):
            raise ValidationError(
                "Invalid thumbnail options", field="options", options=asdict(resolved)
            )
        return resolved

    def generate_thumbnail(
        self,
        data: bytes,
        options: Union[ThumbnailOptions, Mapping[str, Any], None] = None,
    ) -> ThumbnailResult:
        """
        Generate a thumbnail from an encoded image.

        The image is never enlarged: each output axis is bounded by the
        requested target and by the source size.
        """
        opts = self._resolve_options(options)
        image = self._decode(data)
        source_metadata = self.describe(image)
        logger.debug(
            "Generating thumbnail %sx%s %s/%s from %s %sx%s (%s bytes)",
            opts.width,
            opts.height,
            opts.format,
            opts.fit,
            source_metadata["format"],
            source_metadata["width"],
            source_metadata["height"],
            len(data),
        )

        working = self._normalize_mode(image, source_metadata["has_alpha"])
        resized = self._resize(working, opts)
        encoded = self._encode(resized, opts)

        result = ThumbnailResult(
            data=encoded,
            format=opts.format,
            width=resized.width,
            height=resized.height,
            size=len(encoded),
            source_metadata=source_metadata,
        )
        logger.info(
            "Thumbnail generated %sx%s -> %sx%s, %s -> %s bytes (%s)",
            source_metadata["width"],
            source_metadata["height"],
            result.width,
            result.height,
            len(data),
            result.size,
            compression_ratio(len(data), result.size),
        )
        return result

    def process_image_format(
        self,
        data: bytes,
        source_format: str,
        options: Optional[ProcessingOptions] = None,
    ) -> ThumbnailResult:
        """
        Bounding-box thumbnail for a source of a declared format.

        The declared format is checked before any decoding happens.
        """
        fmt = (source_format or "").lower()
        if fmt not in SUPPORTED_SOURCE_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported image format: {source_format}", format=source_format
            )

        options = options or ProcessingOptions()
        defaults = self.default_options
        max_width = options.max_width or defaults.width
        max_height = options.max_height or defaults.height

        try:
            with Image.open(io.BytesIO(data)) as probe:
                source_width, source_height = probe.size
        except _DECODE_ERRORS as exc:
            raise UnsupportedFormatError(
                f"Input is not a decodable {fmt} image: {exc}", format=fmt
            ) from exc

        width, height = self.calculate_optimal_dimensions(
            source_width, source_height, max_width, max_height
        )
        return self.generate_thumbnail(
            data,
            ThumbnailOptions(
                width=width,
                height=height,
                quality=options.quality or defaults.quality,
                format=(options.format or defaults.format).lower(),
                fit="inside",
                background=defaults.background,
            ),
        )

    @staticmethod
    def calculate_optimal_dimensions(
        original_width: int,
        original_height: int,
        max_width: int,
        max_height: int,
    ) -> Tuple[int, int]:
        """Fit within the bounds preserving aspect ratio; never upscale."""
        if original_width <= 0 or original_height <= 0:
            return max_width, max_height
        if original_width <= max_width and original_height <= max_height:
            return original_width, original_height

        aspect_ratio = original_width / original_height
        if aspect_ratio > 1:
            width = max_width
            height = _round(max_width / aspect_ratio)
            if height > max_height:
                height = max_height
                width = _round(max_height * aspect_ratio)
        else:
            height = max_height
            width = _round(max_height * aspect_ratio)
            if width > max_width:
                width = max_width
                height = _round(max_width / aspect_ratio)
        return max(width, 1), max(height, 1)

    @staticmethod
    def resize_geometry(
        source_width: int,
        source_height: int,
        target_width: int,
        target_height: int,
        fit: str,
    ) -> Tuple[Tuple[int, int], Tuple[int, int]]:
        """
        Returns ((resized_w, resized_h), (canvas_w, canvas_h)).

        cover crops the resized image to the canvas, contain letterboxes it,
        the others use the resized image as-is. No axis exceeds the source.
        """
        if fit == "fill":
            size = (min(target_width, source_width), min(target_height, source_height))
            return size, size

        width_ratio = target_width / source_width
        height_ratio = target_height / source_height
        if fit in ("inside", "contain"):
            scale = min(width_ratio, height_ratio, 1.0)
        else:
            scale = min(max(width_ratio, height_ratio), 1.0)

        resized = (
            max(_round(source_width * scale), 1),
            max(_round(source_height * scale), 1),
        )
        if fit == "cover":
            canvas = (min(target_width, resized[0]), min(target_height, resized[1]))
        elif fit == "contain":
            canvas = (min(target_width, source_width), min(target_height, source_height))
        else:
            canvas = resized
        return resized, canvas

    @staticmethod
    def describe(image: Image.Image) -> Dict[str, Any]:
        bands = image.getbands()
        has_alpha = "A" in bands or (
            image.mode == "P" and "transparency" in image.info
        )
        orientation = None
        try:
            orientation = image.getexif().get(0x0112)
        except (AttributeError, OSError, SyntaxError, ValueError):
            orientation = None
        dpi = image.info.get("dpi")
        density = _round(float(dpi[0])) if dpi else None
        fmt = (image.format or "").lower()
        return {
            "width": image.width,
            "height": image.height,
            "format": "jpeg" if fmt == "mpo" else fmt,
            "channels": len(bands),
            "has_alpha": has_alpha,
            "space": _COLOR_SPACES.get(image.mode, image.mode.lower()),
            "depth": _BIT_DEPTHS.get(image.mode, 8),
            "orientation": orientation,
            "density": density,
        }

    def _decode(self, data: bytes) -> Image.Image:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except _DECODE_ERRORS as exc:
            raise UnsupportedFormatError(
                f"Input buffer is not a decodable raster image: {exc}"
            ) from exc
        if (image.format or "").upper() not in _DECODE_FORMATS:
            raise UnsupportedFormatError(
                f"Unsupported image format: {image.format}", format=image.format
            )
        return image

    @staticmethod
    def _normalize_mode(image: Image.Image, has_alpha: bool) -> Image.Image:
        target_mode = "RGBA" if has_alpha else "RGB"
        if image.mode == target_mode:
            return image
        try:
            return image.convert(target_mode)
        except ValueError as exc:
            raise UnsupportedFormatError(
                f"Cannot convert image mode {image.mode}: {exc}"
            ) from exc

    def _resize(self, image: Image.Image, opts: ThumbnailOptions) -> Image.Image:
        (resized_w, resized_h), (canvas_w, canvas_h) = self.resize_geometry(
            image.width, image.height, opts.width, opts.height, opts.fit
        )
        resized = image
        if (resized_w, resized_h) != image.size:
            resized = image.resize((resized_w, resized_h), Image.Resampling.LANCZOS)

        if opts.fit == "cover" and (canvas_w, canvas_h) != resized.size:
            left = (resized.width - canvas_w) // 2
            top = (resized.height - canvas_h) // 2
            return resized.crop((left, top, left + canvas_w, top + canvas_h))

        if opts.fit == "contain" and (canvas_w, canvas_h) != resized.size:
            canvas = Image.new(
                resized.mode,
                (canvas_w, canvas_h),
                ImageColor.getcolor(opts.background, resized.mode),
            )
            offset = ((canvas_w - resized.width) // 2, (canvas_h - resized.height) // 2)
            canvas.paste(resized, offset)
            return canvas

        return resized

    @staticmethod
    def _encode(image: Image.Image, opts: ThumbnailOptions) -> bytes:
        buffer = io.BytesIO()
        if opts.format == "jpeg":
            if image.mode == "RGBA":
                flattened = Image.new("RGB", image.size, ImageColor.getrgb(opts.background))
                flattened.paste(image, mask=image.getchannel("A"))
                image = flattened
            image.save(
                buffer,
                format="JPEG",
                quality=opts.quality,
                progressive=True,
                optimize=True,
            )
        elif opts.format == "png":
            image.save(buffer, format="PNG", compress_level=9, optimize=True)
        elif opts.format == "webp":
            image.save(buffer, format="WEBP", quality=opts.quality, method=6)
        else:
            raise ValidationError(f"Unsupported output format: {opts.format}", field="format")
        return buffer.getvalue()


def compression_ratio(original_size: int, derived_size: int) -> str:
    if original_size <= 0:
        return "0.0%"
    return f"{(original_size - derived_size) / original_size * 100:.1f}%"
