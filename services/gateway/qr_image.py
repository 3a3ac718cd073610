"""Renders a QRIS payload as a PNG stream ready for sendPhoto."""

from __future__ import annotations

from io import BytesIO

import qrcode
import qrcode.constants
from qrcode.main import QRCode


def render_qr_png(payload: str, filename: str = "qris.png", box_size: int = 10) -> BytesIO:
    """
    Builds the QR image for a QRIS content string

    Args:
        payload: qris_content returned by the gateway
        filename: name Telegram shows for the upload
        box_size: pixels per module

    Returns:
        BytesIO positioned at 0 with ``name`` set
    """
    qr = QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=box_size,
        border=2,
    )
    qr.add_data(payload)
    qr.make(fit=True)
    image = qr.make_image(fill_color="black", back_color="white")

    stream = BytesIO()
    image.save(stream, format="PNG")
    stream.name = filename
    stream.seek(0)
    return stream
