"""Render UPI payloads as framed PNG QR codes."""
from __future__ import annotations

import base64
import io
from typing import Any

import qrcode
from PIL import Image, ImageDraw, ImageFont

_BACKGROUND = "#F5F7FA"
_LABEL_FILL = "#FFFFFF"
_TEXT_FILL = "#1F2937"
_MUTED_FILL = "#6B7280"
_MARGIN = 40
_LINE_HEIGHT = 20
_MAX_LABEL_CHARS = 32


def _build_matrix(data: str) -> Image.Image:
    # Medium correction keeps long upi:// URIs at a scannable module size.
    qr = qrcode.QRCode(version=None, error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=4)
    qr.add_data(data)
    qr.make(fit=True)
    return qr.make_image(fill_color="black", back_color="white").convert("RGBA")


def _draw_centered(draw: ImageDraw.ImageDraw, text: str, width: int, top: int, fill: str) -> None:
    font = ImageFont.load_default()
    left, upper, right, lower = draw.textbbox((0, 0), text, font=font)
    x = (width - (right - left)) // 2
    y = top + (_LINE_HEIGHT - (lower - upper)) // 2
    draw.text((x, y), text, fill=fill, font=font)


def generate_qr_image(data: str, title: str = "stablepay", subtitle: str | None = None) -> Image.Image:
    """Draw the QR inside a quiet frame with the payee name (and optional amount) below."""

    matrix = _build_matrix(data)
    size = matrix.size[0]
    lines = [((title or "stablepay").upper()[:_MAX_LABEL_CHARS], _TEXT_FILL)]
    if subtitle:
        lines.append((subtitle[:_MAX_LABEL_CHARS], _MUTED_FILL))
    label_height = _LINE_HEIGHT * len(lines) + _MARGIN // 4

    canvas_width = size + _MARGIN * 2
    canvas = Image.new("RGBA", (canvas_width, size + _MARGIN * 2 + label_height), color=_BACKGROUND)
    canvas.paste(matrix, (_MARGIN, _MARGIN))

    draw = ImageDraw.Draw(canvas)
    label_top = _MARGIN + size
    draw.rectangle(
        [(_MARGIN // 2, label_top), (canvas_width - _MARGIN // 2, label_top + label_height)],
        fill=_LABEL_FILL,
    )
    for index, (text, fill) in enumerate(lines):
        _draw_centered(draw, text, canvas_width, label_top + _MARGIN // 8 + index * _LINE_HEIGHT, fill)
    return canvas


def to_png_bytes(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def render_qr_payload(payload: str, title: str = "stablepay", subtitle: str | None = None) -> dict[str, Any]:
    png = to_png_bytes(generate_qr_image(payload, title=title, subtitle=subtitle))
    return {"png_bytes": png, "png_base64": base64.b64encode(png).decode("ascii")}
