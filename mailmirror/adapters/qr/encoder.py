"""QR code encoder for public preview URLs."""
from __future__ import annotations

import base64
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_L
from qrcode.image.svg import SvgPathImage


class QRCodeEncoder:
    """CodeEncoderPort implementation backed by ``qrcode``."""

    def __init__(self, border: int = 2) -> None:
        self._border = border

    def _build(self, url: str) -> qrcode.QRCode:
        if not url.strip():
            raise ValueError("Cannot encode an empty URL")
        qr = qrcode.QRCode(
            version=None,
            error_correction=ERROR_CORRECT_L,
            box_size=10,
            border=self._border,
        )
        qr.add_data(url)
        qr.make(fit=True)
        return qr

    def to_data_url(self, url: str) -> str:
        """SVG image as a base64 ``data:`` URL, embeddable in an <img> tag."""
        img = self._build(url).make_image(image_factory=SvgPathImage)
        buf = io.BytesIO()
        img.save(buf)
        encoded = base64.b64encode(buf.getvalue()).decode("ascii")
        return f"data:image/svg+xml;base64,{encoded}"

    def to_text(self, url: str) -> str:
        """Terminal rendering, two characters per module."""
        matrix = self._build(url).get_matrix()
        black = "██"
        white = "  "
        return "\n".join(
            "".join(black if cell else white for cell in row) for row in matrix
        )
