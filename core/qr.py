"""
core/qr.py -- QR code rendering for share links and authenticator setup.

Renders SVG with the pure-Python qrcode backend (no Pillow), returned as a
base64 data URL the frontend can drop into an <img src>. Rendering is a
convenience: failures are logged and reported as None, never raised.
"""

from __future__ import annotations

import base64
import logging

import qrcode
from qrcode.image.svg import SvgPathImage

logger = logging.getLogger("zorem.qr")


def svg_data_url(payload: str) -> str | None:
    try:
        image = qrcode.make(payload, image_factory=SvgPathImage, box_size=10, border=2)
        svg = image.to_string(encoding="unicode")
    except Exception:
        logger.warning("QR rendering failed", exc_info=True)
        return None
    if isinstance(svg, str):
        svg = svg.encode("utf-8")
    return "data:image/svg+xml;base64," + base64.b64encode(svg).decode("ascii")
