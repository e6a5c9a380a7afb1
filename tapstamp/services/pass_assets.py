"""
Icon and logo images for Apple Wallet passes.

Apple requires icon.png and logo.png in every bundle, so each render here
has a fallback that always produces a valid PNG.
"""

import io
import logging
from typing import Optional

import httpx
from PIL import Image, ImageDraw, ImageFont, ImageOps

from tapstamp.domain.errors import AssetGenerationError, LogoFetchError
from tapstamp.domain.schemas import Branding
from tapstamp.services.strip_generator import get_font, parse_color, to_png

# Optional import for SVG rendering
try:
    import cairosvg
    CAIROSVG_AVAILABLE = True
except (ImportError, OSError):
    CAIROSVG_AVAILABLE = False

logger = logging.getLogger(__name__)

ICON_SIZES = {"icon.png": 29, "icon@2x.png": 58, "icon@3x.png": 87}
LOGO_SIZES = {"logo.png": (160, 50), "logo@2x.png": (320, 100)}

# SVG logos are rasterized at 300 dpi (cairosvg's default is 96)
SVG_RENDER_SCALE = 300 / 96


def download_logo(url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0) -> bytes:
    """Download logo bytes from a URL.

    Raises:
        LogoFetchError: on any network error or non-200 response
    """
    try:
        if client is None:
            with httpx.Client(timeout=timeout, follow_redirects=True) as own_client:
                response = own_client.get(url)
        else:
            response = client.get(url)
    except httpx.HTTPError as e:
        raise LogoFetchError(url, str(e)) from e

    if response.status_code != 200:
        raise LogoFetchError(url, f"HTTP {response.status_code}")
    if not response.content:
        raise LogoFetchError(url, "empty response")
    return response.content


def is_svg(url: str | None, data: bytes) -> bool:
    if url and url.lower().split("?")[0].endswith(".svg"):
        return True
    head = data[:256].lstrip().lower()
    return head.startswith(b"<svg") or (head.startswith(b"<?xml") and b"<svg" in data[:1024].lower())


def decode_logo(data: bytes, svg: bool = False) -> Image.Image:
    """Decode raster or SVG logo bytes into an RGBA image."""
    if svg:
        if not CAIROSVG_AVAILABLE:
            raise AssetGenerationError("SVG logo given but cairosvg is not available")
        try:
            data = cairosvg.svg2png(bytestring=data, scale=SVG_RENDER_SCALE)
        except Exception as e:
            raise AssetGenerationError(f"Could not render SVG logo: {e}") from e

    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise AssetGenerationError(f"Could not decode logo image: {e}") from e
    return img.convert("RGBA")


def process_logo(data: bytes, max_width: int, max_height: int, svg: bool = False) -> bytes:
    """Fit a logo inside max_width x max_height, keeping its aspect ratio."""
    img = decode_logo(data, svg=svg)
    resized = ImageOps.contain(img, (max_width, max_height), Image.Resampling.LANCZOS)
    return to_png(resized)


def generate_icon(branding: Branding, size: int) -> bytes:
    """Solid circle in the brand's primary colour."""
    color = parse_color(branding.primary_color)
    img = Image.new("RGBA", (size, size), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    draw.ellipse([2, 2, size - 2, size - 2], fill=color + (255,))
    return to_png(img)


def generate_text_logo(merchant_name: str, branding: Branding, width: int, height: int) -> bytes:
    """Merchant name in the primary colour, for merchants without a header logo."""
    text = merchant_name.strip() or "Loyalty"
    font_size = min(height * 0.6, width / len(text) * 1.5)
    font = get_font(round(font_size), bold=True)

    img = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(img)
    color = parse_color(branding.primary_color) + (255,)
    baseline = round(height * 0.7)

    if isinstance(font, ImageFont.FreeTypeFont):
        draw.text((0, baseline), text, fill=color, font=font, anchor="ls")
    else:
        draw.text((0, baseline - round(font_size)), text, fill=color, font=font)

    return to_png(img)


def generate_icons(branding: Branding) -> dict[str, bytes]:
    return {filename: generate_icon(branding, size) for filename, size in ICON_SIZES.items()}


def generate_logos(
    merchant_name: str,
    branding: Branding,
    header_logo: Optional[bytes] = None,
    header_logo_url: Optional[str] = None,
) -> dict[str, bytes]:
    """logo.png and logo@2x.png from the header logo, or a text logo.

    A header logo that cannot be decoded falls back to the text logo.
    """
    if header_logo:
        try:
            svg = is_svg(header_logo_url, header_logo)
            return {
                filename: process_logo(header_logo, w, h, svg=svg)
                for filename, (w, h) in LOGO_SIZES.items()
            }
        except AssetGenerationError as e:
            logger.warning(f"Header logo unusable, falling back to text logo: {e}")

    return {
        filename: generate_text_logo(merchant_name, branding, w, h)
        for filename, (w, h) in LOGO_SIZES.items()
    }


def prepare_stamp_logo(data: Optional[bytes], url: Optional[str] = None) -> Optional[bytes]:
    """PNG bytes suitable for logo-shaped stamps, or None if unusable.

    SVGs are rasterized at high density so the stamps stay crisp.
    """
    if not data:
        return None
    try:
        svg = is_svg(url, data)
        if not svg:
            decode_logo(data)
            return data
        return to_png(decode_logo(data, svg=True))
    except AssetGenerationError as e:
        logger.warning(f"Stamp logo unusable, falling back to circle stamps: {e}")
        return None
