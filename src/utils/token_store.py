"""Helpers for persisting WhatsApp Web session tokens to disk."""
from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from loguru import logger

from src.config import TOKENS_DIR

REQUIRED_TOKEN_KEYS = ("WABrowserId", "WASecretBundle", "WAToken1", "WAToken2")
MULTI_DEVICE_MARKER = "MultiDevice"

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]+")


def is_valid_session_token(token: Any) -> bool:
    """Structural check only: a mapping carrying every required key."""
    if not isinstance(token, Mapping) or not token:
        return False
    return all(key in token for key in REQUIRED_TOKEN_KEYS)


def is_multi_device(token: Mapping[str, Any]) -> bool:
    return token.get("WASecretBundle") == MULTI_DEVICE_MARKER


def token_path(session_name: str, tokens_dir: Path = TOKENS_DIR) -> Path:
    safe = _UNSAFE_NAME.sub("_", session_name).strip("._") or "default"
    return tokens_dir / f"{safe}.json"


def save_session_token(
    session_name: str,
    token: Mapping[str, Any],
    tokens_dir: Path = TOKENS_DIR,
) -> Optional[str]:
    """
    Write a session token captured from the page to ``tokens/<session>.json``.

    Args:
        session_name: Logical session identifier, sanitized into a filename.
        token: Storage snapshot returned by the page.
        tokens_dir: Override output directory (primarily useful for tests).

    Returns:
        Absolute string path when data is written, else None.
    """
    if not is_valid_session_token(token):
        logger.warning("Refusing to persist malformed session token for {}", session_name)
        return None

    target_path = token_path(session_name, tokens_dir)
    payload = {
        "exported_at": datetime.now(timezone.utc).isoformat(),
        "session": session_name,
        "token": dict(token),
    }

    try:
        target_path.parent.mkdir(parents=True, exist_ok=True)
        with target_path.open("w", encoding="utf-8") as handle:
            json.dump(payload, handle, ensure_ascii=False, indent=2)

        resolved = str(target_path.resolve())
        logger.info("Persisted session token {} to {}", session_name, resolved)
        return resolved
    except OSError as exc:
        logger.warning("Failed to persist session token: {}", exc)
        return None


def load_session_token(session_name: str, tokens_dir: Path = TOKENS_DIR) -> Optional[Dict[str, Any]]:
    """
    Read a previously saved token.

    Returns:
        The token mapping, or None if unavailable/invalid.
    """
    source_path = token_path(session_name, tokens_dir)
    if not source_path.exists():
        return None
    try:
        with source_path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
    except (OSError, ValueError) as exc:
        logger.warning("Failed to load session token from {}: {}", source_path, exc)
        return None

    token = data.get("token") if isinstance(data, dict) else None
    if not is_valid_session_token(token):
        logger.warning("Session token payload malformed: {}", source_path)
        return None
    return token


def remove_session_token(session_name: str, tokens_dir: Path = TOKENS_DIR) -> bool:
    target_path = token_path(session_name, tokens_dir)
    try:
        target_path.unlink()
    except FileNotFoundError:
        return False
    logger.info("Removed session token {}", target_path)
    return True
