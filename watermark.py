"""Watermark overlay and QR codes for finished images."""

from __future__ import annotations

import base64
import io
import logging
import os
import threading
import uuid
from pathlib import Path

import qrcode
from PIL import Image, ImageDraw, ImageFont

from cartoon_core import TARGET_HEIGHT, TARGET_WIDTH

log = logging.getLogger(__name__)

DEFAULT_WATERMARK = Path(__file__).parent / "assets" / "watermark.png"
WATERMARK_TEXT = "CARTOONIZED"

_render_lock = threading.Lock()


def watermark_path() -> Path:
    return Path(os.environ.get("WATERMARK_PATH", DEFAULT_WATERMARK))


def _render_default_watermark(path: Path) -> None:
    """Draw a translucent footer band with text and save it as the asset."""
    mark = Image.new("RGBA", (TARGET_WIDTH, TARGET_HEIGHT), (0, 0, 0, 0))
    draw = ImageDraw.Draw(mark)
    band_top = TARGET_HEIGHT - 90
    draw.rectangle([0, band_top, TARGET_WIDTH, TARGET_HEIGHT], fill=(0, 0, 0, 90))
    font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), WATERMARK_TEXT, font=font)
    x = (TARGET_WIDTH - (right - left)) // 2
    y = band_top + (90 - (bottom - top)) // 2
    draw.text((x, y), WATERMARK_TEXT, fill=(255, 255, 255, 200), font=font)
    path.parent.mkdir(parents=True, exist_ok=True)
    # Readers only ever see a complete file
    tmp = path.with_name(f".{path.name}.{uuid.uuid4().hex}.tmp")
    try:
        mark.save(tmp, format="PNG")
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()
    log.info("Rendered default watermark asset: %s", path)


def load_watermark() -> Image.Image:
    path = watermark_path()
    if not path.exists():
        with _render_lock:
            if not path.exists():
                _render_default_watermark(path)
    with Image.open(path) as img:
        return img.convert("RGBA")


def apply_watermark(input_path: str, output_path: str) -> bool:
    """Composite the transparent watermark "over" the image at input_path."""
    final_path = output_path
    if os.path.abspath(input_path) == os.path.abspath(output_path):
        final_path = os.path.join(
            os.path.dirname(output_path), f"temp_{os.path.basename(output_path)}"
        )

    try:
        with Image.open(input_path) as src:
            base = src.convert("RGBA")
        mark = load_watermark()
        if mark.size != base.size:
            mark = mark.resize(base.size, Image.Resampling.LANCZOS)
        out = Image.alpha_composite(base, mark)
        if Path(final_path).suffix.lower() in (".jpg", ".jpeg"):
            out = out.convert("RGB")
        out.save(final_path)

        if final_path != output_path:
            os.replace(final_path, output_path)
    except (OSError, ValueError) as exc:
        log.error("Error applying watermark to %s: %s", input_path, exc)
        raise

    log.debug("Watermark applied: %s", output_path)
    return True


def qr_code_base64(url: str) -> str:
    """PNG QR code pointing at url, as base64 text."""
    qr = qrcode.QRCode(border=2)
    qr.add_data(url)
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")
    buf = io.BytesIO()
    img.save(buf)
    return base64.b64encode(buf.getvalue()).decode("ascii")
