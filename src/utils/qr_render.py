"""Terminal rendering of WhatsApp pairing codes."""
from __future__ import annotations

import asyncio
import io

import qrcode
from qrcode.constants import ERROR_CORRECT_L

QR_BORDER = 2


def render_ascii_qr(code: str) -> str:
    """
    Render ``code`` as a compact QR code made of half-block characters.

    Two module rows share one text row, so the result stays readable in a
    regular terminal. Colours are inverted for dark backgrounds.
    """
    qr = qrcode.QRCode(error_correction=ERROR_CORRECT_L, border=QR_BORDER)
    qr.add_data(code)
    qr.make(fit=True)

    buffer = io.StringIO()
    qr.print_ascii(out=buffer, invert=True)
    return buffer.getvalue()


async def ascii_qr(code: str) -> str:
    return await asyncio.to_thread(render_ascii_qr, code)


__all__ = ["ascii_qr", "render_ascii_qr"]
