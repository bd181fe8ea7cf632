"""Pydantic models for login responses."""
from __future__ import annotations

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, Field


class ConnectionPhase(str, Enum):
    UNPAIRED = "UNPAIRED"
    PAIRING = "PAIRING"
    CONNECTED = "CONNECTED"
    UNKNOWN = "UNKNOWN"


class LoginStatus(BaseModel):
    state: str = Field(..., description="connected / needs_qr_scan / pairing / browser_offline / unknown")
    phase: ConnectionPhase = ConnectionPhase.UNKNOWN
    message: str
    qr_code: Optional[str] = Field(default=None, description="Raw pairing code read from the page")
    qr_ascii: Optional[str] = Field(default=None, description="Terminal rendering of the pairing code")
    qr_code_file: Optional[str] = Field(
        default=None,
        description="Path to the saved QR image on disk, if generated",
    )
    token_file: Optional[str] = Field(
        default=None,
        description="Path of the session token saved after a successful pairing",
    )
    next_actions: List[str] = Field(
        default_factory=list,
        description="Suggested next actions for the operator/user",
    )
    diagnostics: List[str] = Field(default_factory=list)


class LoginStatusResponse(BaseModel):
    success: bool
    status: LoginStatus


class ConnectionState(BaseModel):
    """Single-shot readings of the in-page connection object."""

    authenticated: bool
    needs_to_scan: bool
    inside_chat: bool
    connecting_to_phone: bool
    stream_status: Optional[str] = None
