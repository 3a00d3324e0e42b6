"""Text overlay compositing for item images, plus placeholder generation."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from functools import lru_cache
from io import BytesIO
import logging
from typing import Callable, List, Optional, Tuple, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from PIL import Image, ImageDraw, ImageFont

from . import config
from .errors import InvalidImageError
from .models import ItemRenderContext
from .preprocessing import downscale, load_image_from_bytes

logger = logging.getLogger(__name__)

FontLike = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]

_FONT_CANDIDATES = (
    "DejaVuSans-Bold.ttf",
    "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
    "LiberationSans-Bold.ttf",
    "arialbd.ttf",
)

TEXT_MARGIN = 20
BAND_PADDING = 10
LINE_SPACING = 4
WATERMARK_PADDING = 14
WATERMARK_GAP = 8
WATERMARK_MIN_FONT_SIZE = 10
WATERMARK_SEPARATOR = " · "


@dataclass
class CompositorOptions:
    max_width: int = 1280
    max_height: int = 720
    quality: int = 85
    font_path: Optional[str] = None
    font_size: int = 48
    min_font_size: int = 20
    font_step: int = 2
    band_opacity: int = 180
    include_region: bool = False
    measurement_unit: str = "°C"
    watermark_text: Optional[str] = None
    include_timestamp: bool = True
    timezone: str = "Europe/Amsterdam"
    watermark_font_size: Optional[int] = None
    watermark_opacity: float = 0.75
    placeholder_width: Optional[int] = None
    placeholder_height: Optional[int] = None
    placeholder_color: Tuple[int, int, int, int] = (45, 45, 45, 255)
    placeholder_label: str = "No image available"

    @classmethod
    def from_settings(cls, settings: Optional[config.Settings] = None) -> "CompositorOptions":
        settings = settings or config.get_settings()
        return cls(
            max_width=settings.image_max_width,
            max_height=settings.image_max_height,
            quality=settings.image_quality,
            font_path=settings.overlay_font_path,
            font_size=settings.overlay_font_size,
            min_font_size=settings.overlay_min_font_size,
            font_step=settings.overlay_font_step,
            band_opacity=settings.overlay_band_opacity,
            include_region=settings.overlay_include_region,
            measurement_unit=settings.measurement_unit,
            watermark_text=settings.watermark_text,
            include_timestamp=settings.include_timestamp,
            timezone=settings.overlay_timezone,
            watermark_font_size=settings.watermark_font_size,
            watermark_opacity=settings.watermark_opacity,
            placeholder_width=settings.placeholder_width,
            placeholder_height=settings.placeholder_height,
            placeholder_color=parse_hex_color(settings.placeholder_color) or (45, 45, 45, 255),
            placeholder_label=settings.placeholder_label,
        )

    @property
    def jpeg_quality(self) -> int:
        return min(max(int(self.quality), 30), 100)


@dataclass
class FittedText:
    font: FontLike
    font_size: int
    lines: List[str]
    width: int
    height: int

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def parse_hex_color(value: Optional[str]) -> Optional[Tuple[int, int, int, int]]:
    """Parse `#RRGGBB` or `#AARRGGBB` into an RGBA tuple."""
    if not value:
        return None
    raw = value.strip().lstrip("#")
    try:
        if len(raw) == 6:
            return (int(raw[0:2], 16), int(raw[2:4], 16), int(raw[4:6], 16), 255)
        if len(raw) == 8:
            return (int(raw[2:4], 16), int(raw[4:6], 16), int(raw[6:8], 16), int(raw[0:2], 16))
    except ValueError:
        return None
    return None


@lru_cache(maxsize=128)
def load_font(size: int, font_path: Optional[str] = None) -> FontLike:
    """Return a TrueType font at `size`, falling back to Pillow's bundled font."""
    candidates = ((font_path,) if font_path else ()) + _FONT_CANDIDATES
    for candidate in candidates:
        try:
            return ImageFont.truetype(candidate, size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


_MEASURE_DRAW = ImageDraw.Draw(Image.new("RGB", (1, 1)))


def _text_width(text: str, font: FontLike) -> int:
    if not text:
        return 0
    return _MEASURE_DRAW.textbbox((0, 0), text, font=font)[2]


def measure_lines(lines: List[str], font: FontLike) -> Tuple[int, int]:
    """Width and height of the block as drawn from origin (0, 0)."""
    if not lines:
        return 0, 0
    bbox = _MEASURE_DRAW.multiline_textbbox((0, 0), "\n".join(lines), font=font, spacing=LINE_SPACING)
    return bbox[2], bbox[3]


def _break_word(word: str, font: FontLike, max_width: int) -> List[str]:
    pieces: List[str] = []
    current = ""
    for ch in word:
        if current and _text_width(current + ch, font) > max_width:
            pieces.append(current)
            current = ch
        else:
            current += ch
    if current:
        pieces.append(current)
    return pieces


def wrap_text(text: str, font: FontLike, max_width: int) -> List[str]:
    """Greedy word wrap; words wider than the box are split per character."""
    lines: List[str] = []
    for paragraph in text.split("\n"):
        current = ""
        for word in paragraph.split():
            candidate = f"{current} {word}" if current else word
            if _text_width(candidate, font) <= max_width:
                current = candidate
                continue
            if current:
                lines.append(current)
            if _text_width(word, font) <= max_width:
                current = word
            else:
                *full, current = _break_word(word, font, max_width)
                lines.extend(full)
        lines.append(current)
    return lines


def fit_text(
    text: str,
    max_width: int,
    base_size: int,
    min_size: int,
    step: int,
    max_height: Union[int, Callable[[int], int], None] = None,
    font_path: Optional[str] = None,
) -> FittedText:
    """
    Shrink the font from `base_size` until the wrapped text fits.

    The search is monotone: it stops at the first size that fits or at
    `min_size`, whichever comes first. `max_height` may depend on the font
    size (the overlay band grows with it).
    """
    size = max(base_size, min_size)
    while True:
        font = load_font(size, font_path)
        lines = wrap_text(text, font, max_width)
        width, height = measure_lines(lines, font)
        limit = max_height(size) if callable(max_height) else max_height
        fits = width <= max_width and (limit is None or height <= limit)
        if fits or size <= min_size:
            return FittedText(font=font, font_size=size, lines=lines, width=width, height=height)
        size = max(min_size, size - step)


def band_height_for(font_size: int) -> int:
    return int(max(font_size * 3, font_size + 2 * BAND_PADDING))


def format_measurement(value: Optional[float], unit: str) -> str:
    if value is None:
        return "N/A"
    return f"{value:.1f}{unit}"


def build_label(context: ItemRenderContext, options: CompositorOptions) -> str:
    name_line = context.name
    if options.include_region and context.region and context.region.strip():
        name_line = f"{context.name} ({context.region})"
    return f"{name_line}\n{format_measurement(context.measurement, options.measurement_unit)}"


def build_watermark(options: CompositorOptions, now: Optional[datetime] = None) -> str:
    stamp = None
    if options.include_timestamp:
        moment = now or datetime.now(timezone.utc)
        try:
            moment = moment.astimezone(ZoneInfo(options.timezone))
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning("Unknown timezone %r; using UTC for watermark", options.timezone)
            moment = moment.astimezone(timezone.utc)
        stamp = moment.strftime("%Y-%m-%d %H:%M")
    parts = [p for p in (options.watermark_text, stamp) if p and p.strip()]
    return WATERMARK_SEPARATOR.join(parts)


def _encode_jpeg(image: Image.Image, quality: int) -> bytes:
    buffer = BytesIO()
    image.convert("RGB").save(buffer, format="JPEG", quality=quality)
    return buffer.getvalue()


def _draw_band(image: Image.Image, label: str, options: CompositorOptions) -> Tuple[Image.Image, int, int]:
    """Draw the label band; returns the image, band top and chosen font size."""
    available_width = max(TEXT_MARGIN, image.width - 2 * TEXT_MARGIN)
    fitted = fit_text(
        label,
        max_width=available_width,
        base_size=options.font_size,
        min_size=options.min_font_size,
        step=options.font_step,
        max_height=lambda size: band_height_for(size) - 2 * BAND_PADDING,
        font_path=options.font_path,
    )

    band_height = max(band_height_for(fitted.font_size), fitted.height + 2 * BAND_PADDING)
    band_top = max(0, image.height - band_height - BAND_PADDING)

    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    draw.rectangle(
        [(0, band_top), (image.width, image.height)],
        fill=(0, 0, 0, min(max(options.band_opacity, 0), 255)),
    )
    draw.multiline_text(
        (TEXT_MARGIN, band_top + BAND_PADDING),
        fitted.text,
        font=fitted.font,
        fill=(255, 255, 255, 255),
        spacing=LINE_SPACING,
    )
    return Image.alpha_composite(image, overlay), band_top, fitted.font_size


def _draw_watermark(
    image: Image.Image, text: str, band_top: int, label_font_size: int, options: CompositorOptions
) -> Image.Image:
    base_size = options.watermark_font_size or max(int(label_font_size * 0.5), 14)
    fitted = fit_text(
        text,
        max_width=max(1, image.width - 2 * WATERMARK_PADDING),
        base_size=base_size,
        min_size=min(WATERMARK_MIN_FONT_SIZE, base_size),
        step=options.font_step,
        font_path=options.font_path,
    )

    target_bottom = band_top - WATERMARK_GAP
    pos_x = max(0, image.width - fitted.width - WATERMARK_PADDING)
    pos_y = target_bottom - fitted.height - WATERMARK_PADDING
    if pos_y - 4 < 0:
        logger.debug("No room above the band for watermark %r", text)
        return image

    overlay = Image.new("RGBA", image.size, (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)
    draw.rectangle(
        [
            (max(0, pos_x - 8), pos_y - 4),
            (min(image.width, pos_x + fitted.width + 8), pos_y + fitted.height + 4),
        ],
        fill=(0, 0, 0, 120),
    )
    alpha = int(255 * min(max(options.watermark_opacity, 0.0), 1.0))
    draw.multiline_text(
        (pos_x, pos_y), fitted.text, font=fitted.font, fill=(255, 255, 255, alpha), spacing=LINE_SPACING
    )
    return Image.alpha_composite(image, overlay)


def render_placeholder_image(options: CompositorOptions, label: Optional[str] = None) -> Image.Image:
    """Solid canvas with one centered label. Drawing problems leave a bare canvas."""
    width = max(1, int(options.placeholder_width or options.max_width or 1280))
    height = max(1, int(options.placeholder_height or options.max_height or 720))
    image = Image.new("RGBA", (width, height), options.placeholder_color)
    text = label if label is not None else options.placeholder_label
    if not text:
        return image
    try:
        fitted = fit_text(
            text,
            max_width=max(1, width - 2 * TEXT_MARGIN),
            base_size=max(20, int(options.font_size * 0.7)),
            min_size=min(options.min_font_size, 20),
            step=options.font_step,
            max_height=max(1, height - 2 * TEXT_MARGIN),
            font_path=options.font_path,
        )
        draw = ImageDraw.Draw(image)
        draw.multiline_text(
            ((width - fitted.width) / 2, (height - fitted.height) / 2),
            fitted.text,
            font=fitted.font,
            fill=(255, 255, 255, 255),
            spacing=LINE_SPACING,
            align="center",
        )
    except Exception:  # noqa: BLE001
        logger.warning("Could not draw placeholder label; returning bare canvas", exc_info=True)
    return image


def create_placeholder(options: Optional[CompositorOptions] = None, label: Optional[str] = None) -> bytes:
    """Encoded placeholder JPEG used when no source image is available."""
    options = options or CompositorOptions.from_settings()
    return _encode_jpeg(render_placeholder_image(options, label), options.jpeg_quality)


def compose_item_image(
    image_bytes: bytes,
    context: ItemRenderContext,
    options: Optional[CompositorOptions] = None,
    now: Optional[datetime] = None,
) -> bytes:
    """
    Overlay an item's label and measurement onto its image.

    Undecodable or empty input is replaced by a generated placeholder so a
    labelled image is always produced.
    """
    options = options or CompositorOptions.from_settings()
    try:
        image = load_image_from_bytes(image_bytes)
    except InvalidImageError as exc:
        logger.warning("Source image for item %s unusable (%s); using placeholder", context.item_id, exc)
        image = render_placeholder_image(options)

    image = downscale(image, options.max_width, options.max_height)
    image, band_top, font_size = _draw_band(image, build_label(context, options), options)

    watermark = build_watermark(options, now)
    if watermark:
        image = _draw_watermark(image, watermark, band_top, font_size, options)

    return _encode_jpeg(image, options.jpeg_quality)
