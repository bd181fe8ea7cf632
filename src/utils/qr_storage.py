"""Helper utilities to persist QR code images."""
from __future__ import annotations

import base64
import binascii
import time
from pathlib import Path
from typing import Optional

from loguru import logger

from src.config import QR_DIR


def save_qr_image_from_base64(data_url: str, session_name: str = "default", qr_dir: Path = QR_DIR) -> Optional[str]:
    """
    Persist the pairing QR canvas to disk.

    Args:
        data_url: Base64 payload, optionally prefixed with ``data:image/...``.
        session_name: Used as filename prefix so sessions do not overwrite each other.
        qr_dir: Override output directory (primarily useful for tests).

    Returns:
        The absolute file path if the image was written successfully, else None.
    """
    if "," in data_url:
        _, base64_payload = data_url.split(",", 1)
    else:
        base64_payload = data_url

    try:
        image_bytes = base64.b64decode(base64_payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        logger.warning(f"Discarding undecodable QR image: {exc}")
        return None

    file_path = qr_dir / f"{session_name}_qr_{int(time.time())}.png"
    try:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(image_bytes)
    except OSError as exc:
        logger.warning(f"Failed to persist QR image: {exc}")
        return None

    logger.info(f"QR image saved to {file_path}")
    return str(file_path.resolve())
