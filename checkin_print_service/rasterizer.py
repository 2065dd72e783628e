"""
Badge Rasterizer
================

Turns attendee data into a raster sized and dithered for a label printer.

Pipeline:
    1. Pick the label (pinned in the settings, else the largest supported)
    2. Size the canvas from millimeters at the printer's DPI
    3. Lay out name, email, QR code and VIP marker (landscape or portrait)
    4. Render with Pillow
    5. Monochrome printers: luminance threshold or Floyd-Steinberg dithering
    6. Reserve cut margins on printers with a cutter

Monochrome output is packed 1 bit per pixel, MSB first, rows padded to a
full byte, 1 = black. Color output is PNG.
"""

import io
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Optional, Dict, Any, List

import qrcode
from PIL import Image, ImageDraw, ImageFont, ImageOps

from .models import BadgePayload, LabelSize, PrinterCapabilities, PrintSettings, PrintQuality
from .config import CUT_MARGIN_MM, MIN_FONT_SIZE, DEFAULT_LABEL_SIZES
from .exceptions import RasterizationError

logger = logging.getLogger(__name__)

MONOCHROME_FORMAT = 'monochrome-bitmap'
COLOR_FORMAT = 'color-raster'

LUMINANCE_THRESHOLD = 128
MM_PER_INCH = 25.4

BLACK = (0, 0, 0)
WHITE = (255, 255, 255)
VIP_FILL_COLOR = (212, 175, 55)
VIP_FILL_GRAY = (170, 170, 170)


class DitheringMethod:
    AUTO = 'auto'
    FLOYD_STEINBERG = 'floyd_steinberg'
    THRESHOLD = 'threshold'


@dataclass(frozen=True)
class RasterArtifact:
    """Transport-ready badge image."""

    data: bytes
    width: int
    height: int
    format: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_monochrome(self) -> bool:
        return self.format == MONOCHROME_FORMAT

    @property
    def row_bytes(self) -> int:
        return (self.width + 7) // 8

    def to_image(self) -> Image.Image:
        """Decode back to a Pillow image ('L' for monochrome, 'RGB' for color)."""
        if self.is_monochrome:
            packed = Image.frombytes('1', (self.width, self.height), self.data)
            return ImageOps.invert(packed.convert('L'))
        return Image.open(io.BytesIO(self.data)).convert('RGB')


def mm_to_px(mm: float, dpi: int) -> int:
    return int(round(mm / MM_PER_INCH * dpi))


def threshold(img: Image.Image, level: int = LUMINANCE_THRESHOLD) -> Image.Image:
    """
    Two-level conversion: pixels brighter than ``level`` become white.

    Args:
        img: Grayscale PIL Image

    Returns:
        PIL Image in mode 'L' holding only 0 and 255
    """
    return img.point(lambda value: 255 if value > level else 0)


def floyd_steinberg(img: Image.Image) -> Image.Image:
    """
    Floyd-Steinberg error diffusion to two levels (Pillow's ditherer).

    Args:
        img: Grayscale PIL Image

    Returns:
        PIL Image in mode 'L', same size, holding only 0 and 255
    """
    return img.convert('1', dither=Image.Dither.FLOYDSTEINBERG).convert('L')


def pack_monochrome(img: Image.Image) -> bytes:
    """1 bit per pixel, MSB first, 1 = black."""
    return ImageOps.invert(img).convert('1', dither=Image.Dither.NONE).tobytes()


@lru_cache(maxsize=64)
def _font(size: int) -> ImageFont.ImageFont:
    return ImageFont.load_default(size=size)


def _fit_font(draw: ImageDraw.ImageDraw, text: str, max_width: int, max_height: int):
    """Largest default font size that fits the box, never below MIN_FONT_SIZE."""
    size = max(int(max_height), MIN_FONT_SIZE)
    while size > MIN_FONT_SIZE:
        font = _font(size)
        left, top, right, bottom = draw.textbbox((0, 0), text, font=font)
        if right - left <= max_width and bottom - top <= max_height:
            return font
        size -= max(1, size // 10)
    return _font(MIN_FONT_SIZE)


def _qr_image(data: str, size: int) -> Image.Image:
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=1,
        border=1,
    )
    qr.add_data(data)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white").convert('RGB')
    return img.resize((size, size), resample=Image.Resampling.NEAREST)


class BadgeRasterizer:
    """Renders badges for a printer capability profile."""

    def __init__(self, dithering: str = DitheringMethod.AUTO, cut_margin_mm: float = CUT_MARGIN_MM,
                 optimized_for: str = 'brother_ql'):
        self.dithering = dithering
        self.cut_margin_mm = cut_margin_mm
        self.optimized_for = optimized_for

    def select_label_size(self, capabilities: PrinterCapabilities,
                          settings: Optional[PrintSettings] = None) -> LabelSize:
        """Pinned label size, else the largest supported one."""
        if settings is not None and settings.label_size is not None:
            return settings.label_size
        largest = capabilities.largest_label_size()
        if largest is not None:
            return largest
        return LabelSize.from_dict(DEFAULT_LABEL_SIZES[0])

    def _use_dithering(self, settings: PrintSettings) -> bool:
        if self.dithering == DitheringMethod.FLOYD_STEINBERG:
            return True
        if self.dithering == DitheringMethod.THRESHOLD:
            return False
        return settings.quality != PrintQuality.DRAFT

    def optimize(self, payload: BadgePayload, capabilities: PrinterCapabilities,
                 settings: Optional[PrintSettings] = None) -> RasterArtifact:
        """
        Render one badge.

        Raises:
            RasterizationError: If the label size gives an empty canvas
        """
        settings = settings or PrintSettings()
        label = self.select_label_size(capabilities, settings)
        dpi = capabilities.max_resolution_dpi

        width = mm_to_px(label.width_mm, dpi)
        height = mm_to_px(label.height_mm, dpi)
        if width <= 0 or height <= 0:
            raise RasterizationError(
                f"Label size {label.id} gives an empty canvas",
                {'width_px': width, 'height_px': height, 'dpi': dpi},
            )

        landscape = label.is_landscape
        cut_margin = 0
        if capabilities.supports_cutting and settings.auto_cut:
            cut_margin = mm_to_px(self.cut_margin_mm, dpi)

        canvas = Image.new('RGB', (width, height), WHITE)
        self._draw_badge(canvas, payload, landscape, cut_margin, capabilities.supports_color)

        metadata = {
            'label_size': label.id,
            'label_size_name': label.name,
            'dpi': dpi,
            'orientation': 'landscape' if landscape else 'portrait',
            'cut_margin_px': cut_margin,
            'optimized_for': self.optimized_for,
            'dithered': False,
        }

        if capabilities.supports_color:
            buffer = io.BytesIO()
            canvas.save(buffer, format='PNG')
            return RasterArtifact(buffer.getvalue(), width, height, COLOR_FORMAT, metadata)

        gray = canvas.convert('L')
        if self._use_dithering(settings):
            mono = floyd_steinberg(gray)
            metadata['dithered'] = True
        else:
            mono = threshold(gray)

        logger.debug(f"[Rasterizer] {payload.attendee_name}: {width}x{height} {label.id}")
        return RasterArtifact(pack_monochrome(mono), width, height, MONOCHROME_FORMAT, metadata)

    def optimize_batch(self, payloads: List[BadgePayload], capabilities: PrinterCapabilities,
                       settings: Optional[PrintSettings] = None) -> List[RasterArtifact]:
        """Render several badges, preserving order."""
        return [self.optimize(payload, capabilities, settings) for payload in payloads]

    # =========================================================================
    # Layout
    # =========================================================================

    def _draw_badge(self, canvas: Image.Image, payload: BadgePayload, landscape: bool,
                    cut_margin: int, color: bool):
        width, height = canvas.size
        draw = ImageDraw.Draw(canvas)
        padding = max(1, int(width * 0.08))

        # Content box; cut margins sit on the two edges along the feed axis
        if landscape:
            box = (cut_margin + padding // 2, padding // 2,
                   width - cut_margin - padding // 2, height - padding // 2)
        else:
            box = (padding // 2, cut_margin + padding // 2,
                   width - padding // 2, height - cut_margin - padding // 2)
        if box[2] - box[0] < 4 or box[3] - box[1] < 4:
            raise RasterizationError("Label too small for badge layout", {'width_px': width, 'height_px': height})

        draw.rectangle(box, outline=BLACK, width=max(1, width // 300))
        inner = (box[0] + padding // 2, box[1] + padding // 4, box[2] - padding // 2, box[3] - padding // 4)

        if landscape:
            self._layout_landscape(draw, canvas, payload, inner, color)
        else:
            self._layout_portrait(draw, canvas, payload, inner, color)

    def _layout_landscape(self, draw, canvas, payload: BadgePayload, box, color: bool):
        x0, y0, x1, y1 = box
        w, h = x1 - x0, y1 - y0
        text_width = int(w * 0.65)

        self._draw_text(draw, payload.attendee_name, x0, y0, text_width, int(h * 0.40))
        if payload.attendee_email:
            self._draw_text(draw, payload.attendee_email, x0, y0 + int(h * 0.45), text_width, int(h * 0.18))
        if payload.is_vip:
            self._draw_vip(draw, x0, y0 + int(h * 0.75), int(text_width * 0.4), int(h * 0.22), color)

        if payload.qr_code:
            size = max(1, min(int(w * 0.30), h))
            qr_x = x1 - size
            qr_y = y0 + (h - size) // 2
            canvas.paste(_qr_image(payload.qr_code, size), (qr_x, qr_y))

    def _layout_portrait(self, draw, canvas, payload: BadgePayload, box, color: bool):
        x0, y0, x1, y1 = box
        w, h = x1 - x0, y1 - y0

        self._draw_text(draw, payload.attendee_name, x0, y0, w, int(h * 0.25))
        if payload.attendee_email:
            self._draw_text(draw, payload.attendee_email, x0, y0 + int(h * 0.30), w, int(h * 0.10))

        top = y0 + int(h * 0.55)
        size = 0
        if payload.qr_code:
            size = max(1, min(int(w * 0.70), int(h * 0.35)))
            canvas.paste(_qr_image(payload.qr_code, size), (x0 + (w - size) // 2, top))
        if payload.is_vip:
            vip_top = top + size + max(2, int(h * 0.02))
            vip_height = min(int(h * 0.07), y1 - vip_top)
            if vip_height > 0:
                self._draw_vip(draw, x0 + w // 4, vip_top, w // 2, vip_height, color)

    @staticmethod
    def _draw_text(draw, text: str, x: int, y: int, max_width: int, max_height: int):
        if not text or max_height <= 0:
            return
        font = _fit_font(draw, text, max_width, max_height)
        draw.text((x, y), text, fill=BLACK, font=font)

    @staticmethod
    def _draw_vip(draw, x: int, y: int, width: int, height: int, color: bool):
        if width <= 0 or height <= 0:
            return
        fill = VIP_FILL_COLOR if color else VIP_FILL_GRAY
        draw.rectangle((x, y, x + width, y + height), fill=fill, outline=BLACK)
        font = _fit_font(draw, "VIP", int(width * 0.8), int(height * 0.8))
        left, top, right, bottom = draw.textbbox((0, 0), "VIP", font=font)
        text_x = x + (width - (right - left)) // 2 - left
        text_y = y + (height - (bottom - top)) // 2 - top
        draw.text((text_x, text_y), "VIP", fill=BLACK, font=font)
