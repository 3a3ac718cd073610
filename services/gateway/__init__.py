"""
QRIS gateway adapter
"""

from .qr_image import render_qr_png
from .qris_client import (
    Charge,
    ChargeStatus,
    QrisClient,
    normalize_status,
    parse_notification_message,
)

__all__ = [
    "Charge",
    "ChargeStatus",
    "QrisClient",
    "normalize_status",
    "parse_notification_message",
    "render_qr_png",
]
