"""
Strip image generator for Apple Wallet loyalty passes.
Renders the stamp-progress grid shown on the pass face.
"""

from dataclasses import dataclass
from typing import List, Optional, Union
import io
import logging
import math
import re

from PIL import Image, ImageDraw, ImageFont, ImageOps

from tapstamp.domain.errors import AssetGenerationError
from tapstamp.domain.schemas import Branding

logger = logging.getLogger(__name__)

# storeCard strip sizes (1x, 2x, 3x)
STRIP_SIZES = {
    "strip.png": (312, 84),
    "strip@2x.png": (624, 168),
    "strip@3x.png": (936, 252),
}

# Empty logo stamps keep 15% of their alpha
EMPTY_LOGO_OPACITY = 0.15
# Stamp numbers are drawn at 60% of the label colour
NUMBER_OPACITY = 0.6

# Material "check" glyph in a 24x24 box
CHECKMARK_POINTS = [(9, 16.17), (4.83, 12), (3.41, 13.41), (9, 19), (21, 7), (19.59, 5.59)]

RGB = tuple[int, int, int]


def parse_color(value: Optional[str], default: RGB = (0, 0, 0)) -> RGB:
    """Parse '#RRGGBB', '#RGB' or 'rgb(r,g,b)' to an RGB tuple."""
    if not value:
        return default

    value = value.strip()

    match = re.fullmatch(r"rgb\(\s*(\d{1,3})\s*,\s*(\d{1,3})\s*,\s*(\d{1,3})\s*\)", value)
    if match:
        return tuple(min(255, int(v)) for v in match.groups())  # type: ignore

    hex_color = value.lstrip("#")
    if len(hex_color) == 3:
        hex_color = "".join(c * 2 for c in hex_color)
    if re.fullmatch(r"[0-9a-fA-F]{6}", hex_color):
        return tuple(int(hex_color[i : i + 2], 16) for i in (0, 2, 4))  # type: ignore

    return default


def get_font(size: int, bold: bool = False) -> Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]:
    """Get a font, falling back to Pillow's bundled one."""
    if bold:
        font_paths = [
            "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
            "/usr/share/fonts/TTF/DejaVuSans-Bold.ttf",
            "/System/Library/Fonts/Helvetica.ttc",
        ]
    else:
        font_paths = [
            "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
            "/usr/share/fonts/TTF/DejaVuSans.ttf",
            "/System/Library/Fonts/Helvetica.ttc",
        ]

    size = max(1, int(size))
    for font_path in font_paths:
        try:
            return ImageFont.truetype(font_path, size)
        except (OSError, IOError):
            continue

    return ImageFont.load_default(size=size)


def to_png(img: Image.Image) -> bytes:
    """Encode as PNG. No metadata chunks are written, so output is stable."""
    buffer = io.BytesIO()
    img.save(buffer, format="PNG", optimize=True)
    return buffer.getvalue()


@dataclass
class StampSlot:
    """Top-left corner of one stamp slot."""
    x: int
    y: int
    index: int


@dataclass
class StripLayout:
    slots: List[StampSlot]
    stamp_size: int
    cols: int
    rows: int


def calculate_stamp_layout(reward_goal: int, width: int, height: int) -> StripLayout:
    """
    Lay out `reward_goal` slots on a width x height canvas.

    Slots fill two rows of ceil(goal / 2) columns (a single row when the goal
    is 1), spread across the central area between 18% side margins. Stamps
    are 95% of a row's height, shrunk when needed so a row always fits.
    """
    if reward_goal <= 0:
        return StripLayout(slots=[], stamp_size=0, cols=0, rows=0)

    cols = math.ceil(reward_goal / 2)
    rows = 2 if reward_goal > cols else 1

    safe_margin_x = round(width * 0.18)
    padding_y = round(height * 0.02)
    safe_width = width - safe_margin_x * 2
    min_gap = max(1, round(width * 0.01))

    row_height = (height - padding_y * 2) / rows
    stamp_size = math.floor(row_height * 0.95)
    stamp_size = min(stamp_size, (safe_width - (cols - 1) * min_gap) // cols)
    stamp_size = max(stamp_size, 1)

    gap_x = (safe_width - stamp_size * cols) // (cols - 1) if cols > 1 else 0
    gap_y = (height - padding_y * 2 - stamp_size * rows) // (rows - 1) if rows > 1 else 0

    start_x = safe_margin_x if cols > 1 else (width - stamp_size) // 2
    start_y = padding_y

    slots = []
    for i in range(reward_goal):
        row, col = divmod(i, cols)
        slots.append(StampSlot(
            x=start_x + col * (stamp_size + gap_x),
            y=start_y + row * (stamp_size + gap_y),
            index=i,
        ))

    return StripLayout(slots=slots, stamp_size=stamp_size, cols=cols, rows=rows)


def _fit_logo_tile(logo: Image.Image, size: int) -> Image.Image:
    """Scale the logo to fit a size x size transparent tile, centered."""
    fitted = ImageOps.contain(logo, (size, size), Image.Resampling.LANCZOS)
    tile = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    tile.paste(fitted, ((size - fitted.width) // 2, (size - fitted.height) // 2))
    return tile


def _fade_logo_tile(tile: Image.Image) -> Image.Image:
    """Greyscale copy of the tile at EMPTY_LOGO_OPACITY of its alpha."""
    gray = tile.convert("L")
    alpha = tile.getchannel("A").point(lambda a: round(a * EMPTY_LOGO_OPACITY))
    return Image.merge("RGBA", (gray, gray, gray, alpha))


class StripImageGenerator:
    """Generates strip.png images for one branding and reward goal."""

    def __init__(
        self,
        branding: Branding,
        reward_goal: int,
        logo_data: Optional[bytes] = None,
    ):
        if reward_goal <= 0:
            raise AssetGenerationError(f"Reward goal must be positive, got {reward_goal}")

        self.branding = branding
        self.reward_goal = reward_goal
        self._logo: Optional[Image.Image] = None

        if branding.stamp.shape == "logo" and logo_data:
            try:
                self._logo = Image.open(io.BytesIO(logo_data)).convert("RGBA")
            except (OSError, ValueError) as e:
                logger.warning(f"Stamp logo could not be decoded, using circle stamps: {e}")

        self.filled_color = parse_color(branding.stamp.filled_color)
        self.empty_color = parse_color(branding.stamp.empty_color, (255, 255, 255))
        self.outline_color = parse_color(branding.stamp.outline_color)
        self.label_color = parse_color(branding.label_color)

    @property
    def shape(self) -> str:
        """Effective stamp shape. Logo stamps without a logo become circles."""
        shape = self.branding.stamp.shape
        if shape == "logo" and self._logo is None:
            return "circle"
        return shape

    def _draw_checkmark(self, draw: ImageDraw.ImageDraw, slot: StampSlot, size: int) -> None:
        check_size = size * 0.4
        scale = check_size / 24
        left = slot.x + size / 2 - check_size / 2
        top = slot.y + size / 2 - check_size / 2
        points = [(left + px * scale, top + py * scale) for px, py in CHECKMARK_POINTS]
        draw.polygon(points, fill=self.label_color + (255,))

    def _draw_shape_stamp(
        self,
        draw: ImageDraw.ImageDraw,
        slot: StampSlot,
        size: int,
        filled: bool,
        stroke: int,
    ) -> None:
        fill = (self.filled_color if filled else self.empty_color) + (255,)
        outline = self.outline_color + (255,)

        if self.shape == "circle":
            inset = stroke
            draw.ellipse(
                [slot.x + inset, slot.y + inset, slot.x + size - inset, slot.y + size - inset],
                fill=fill,
                outline=outline,
                width=stroke,
            )
        else:
            draw.rounded_rectangle(
                [slot.x, slot.y, slot.x + size - 1, slot.y + size - 1],
                radius=max(2, size // 16),
                fill=fill,
                outline=outline,
                width=stroke,
            )

        if filled:
            self._draw_checkmark(draw, slot, size)

    def _draw_numbers(self, img: Image.Image, layout: StripLayout) -> Image.Image:
        font_size = max(6, round(layout.stamp_size * 0.15))
        font = get_font(font_size)
        overlay = Image.new("RGBA", img.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(overlay)
        color = self.label_color + (round(255 * NUMBER_OPACITY),)
        offset = max(2, round(layout.stamp_size * 0.04))

        for slot in layout.slots:
            draw.text((slot.x + offset, slot.y + offset), str(slot.index + 1), fill=color, font=font)

        return Image.alpha_composite(img, overlay)

    def generate(self, stamps: int, width: int, height: int) -> bytes:
        """Render one strip image at the given pixel size."""
        stamps = max(0, min(stamps, self.reward_goal))
        layout = calculate_stamp_layout(self.reward_goal, width, height)
        img = Image.new("RGBA", (width, height), (0, 0, 0, 0))

        if self.shape == "logo":
            filled_tile = _fit_logo_tile(self._logo, layout.stamp_size)
            empty_tile = _fade_logo_tile(filled_tile)
            for slot in layout.slots:
                tile = filled_tile if slot.index < stamps else empty_tile
                img.alpha_composite(tile, dest=(slot.x, slot.y))
        else:
            draw = ImageDraw.Draw(img)
            stroke = max(1, layout.stamp_size // 30)
            for slot in layout.slots:
                self._draw_shape_stamp(draw, slot, layout.stamp_size, slot.index < stamps, stroke)

        img = self._draw_numbers(img, layout)
        return to_png(img)

    def generate_all_resolutions(self, stamps: int) -> dict[str, bytes]:
        """
        Generate strip images for all required resolutions.

        Returns dict with keys: 'strip.png', 'strip@2x.png', 'strip@3x.png'
        """
        return {
            filename: self.generate(stamps, width, height)
            for filename, (width, height) in STRIP_SIZES.items()
        }


def render_stamp_strip(
    branding: Branding,
    stamp_count: int,
    reward_goal: int,
    width: int,
    height: int,
    logo_data: Optional[bytes] = None,
) -> bytes:
    """Render a single stamp strip PNG."""
    return StripImageGenerator(branding, reward_goal, logo_data).generate(stamp_count, width, height)
