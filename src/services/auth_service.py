"""Connection phase detection for WhatsApp Web."""
from __future__ import annotations

import asyncio
from typing import Any, Mapping, Optional

from loguru import logger

from src.clients.chrome_devtools import ChromeDevToolsClient
from src.config import STATUS_POLL_INTERVAL
from src.schemas.login import ConnectionPhase
from src.services.page_query import PageQuery


STREAM_PAIRING_STATES = frozenset({"PAIRING", "RESUMING", "SYNCING"})

# One snapshot per poll so every signal belongs to the same DOM state.
INTERFACE_PROBE_SCRIPT = r"""
(() => {
  const loginWrapper = document.querySelector('body > div > div > .landing-wrapper');
  const qrCanvas = document.querySelector('canvas');
  const chat = document.querySelector('.app,.two');

  let streamStatus = null;
  try {
    streamStatus = window.WPP.whatsapp.Stream.displayInfo || null;
  } catch (e) {
    streamStatus = null;
  }

  return {
    hasLoginWrapper: Boolean(loginWrapper),
    hasQrCanvas: Boolean(qrCanvas),
    streamStatus: streamStatus,
    chatReady: Boolean(chat && chat.attributes && chat.attributes.length && chat.tabIndex),
  };
})()
"""


def classify_interface(snapshot: Optional[Mapping[str, Any]]) -> Optional[ConnectionPhase]:
    """
    Map one probe snapshot to a phase.

    Checks run in a fixed order, so a lingering QR canvas wins over a mounted
    chat pane. ``None`` means the page has not settled on a phase yet.
    """
    if not snapshot:
        return None
    if snapshot.get("hasLoginWrapper") and snapshot.get("hasQrCanvas"):
        return ConnectionPhase.UNPAIRED
    if snapshot.get("streamStatus") in STREAM_PAIRING_STATES:
        return ConnectionPhase.PAIRING
    if snapshot.get("chatReady"):
        return ConnectionPhase.CONNECTED
    return None


class StatusPoller:
    """Polls the page until it shows a definite connection phase."""

    def __init__(self, client: ChromeDevToolsClient, interval: float = STATUS_POLL_INTERVAL) -> None:
        self.client = client
        self.interval = interval

    async def query_status(self) -> Optional[ConnectionPhase]:
        """
        Block until the interface is classified.

        There is no timeout: pairing can take arbitrarily long, so callers
        bound the wait themselves (``asyncio.wait_for``). Returns ``None``
        when the page goes away or the probe throws.
        """
        polls = 0
        try:
            while True:
                polls += 1
                snapshot = await self.client.evaluate(INTERFACE_PROBE_SCRIPT)
                phase = classify_interface(snapshot)
                if phase is not None:
                    logger.debug("Interface classified as {} after {} polls", phase.value, polls)
                    return phase
                await asyncio.sleep(self.interval)
        except Exception as exc:
            logger.warning("Interface status unavailable after {} polls: {}", polls, exc)
            return None


class AuthQueries:
    """Single-shot login predicates. Faults from the page propagate unchanged."""

    def __init__(self, page: PageQuery) -> None:
        self.page = page

    async def is_authenticated(self) -> bool:
        return await self.page.is_registered()

    async def needs_to_scan(self) -> bool:
        return not await self.is_authenticated()

    async def is_inside_chat(self) -> bool:
        return await self.page.is_main_ready()

    async def is_connecting_to_phone(self) -> bool:
        """Main module loaded but not ready yet; only meaningful after pairing."""
        return await self.page.is_main_loaded() and not await self.page.is_main_ready()


__all__ = ["AuthQueries", "StatusPoller", "classify_interface"]
