"""Seeds WhatsApp Web storage with a saved session before the app boots."""
from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional

from loguru import logger

from src.clients.chrome_devtools import ChromeDevToolsClient, DevToolsError
from src.config import BANNER_FILE, NAVIGATION_TIMEOUT, SETTLE_DELAY, whatsapp_url
from src.utils.token_store import is_multi_device, is_valid_session_token


REQUEST_PAUSED = "Fetch.requestPaused"
PLACEHOLDER_TITLE = "Initializing WhatsApp"

PLACEHOLDER_HTML_TEMPLATE = """
<!doctype html>
<html lang=en>
  <head>
    <title>Initializing WhatsApp</title>
    <style>
      body {
        height: 100vh;
        display: flex;
        align-items: center;
        justify-content: center;
        font-family: arial, sans-serif;
        background-color: #e6e6e6;
      }
      img {
        display: block;
        max-width: 100%;
        max-height:100%;
      }
      h1 {
        text-align: center;
      }
    </style>
  </head>
  <body>
    <div>
      <img src="{banner}" />
      <h1>Initializing WhatsApp ...</h1>
    </div>
  </body>
</html>"""

# Resolves once IndexedDB enumeration finished and every delete was issued.
CLEAR_STORAGE_SCRIPT = r"""
(() => {
  if (document.title !== 'Initializing WhatsApp') {
    return false;
  }

  localStorage.clear();

  return Promise.resolve()
    .then(() => window.indexedDB.databases())
    .then((dbs) => {
      dbs.forEach((db) => {
        window.indexedDB.deleteDatabase(db.name);
      });
    })
    .catch(() => null)
    .then(() => true);
})()
"""

WRITE_STORAGE_SCRIPT = r"""
(session) => {
  Object.keys(session).forEach((key) => {
    localStorage.setItem(key, session[key]);
  });
  return Object.keys(session).length;
}
"""

REMEMBER_ME_SCRIPT = "localStorage.setItem('remember-me', 'true')"


def placeholder_html(banner_name: str) -> str:
    return PLACEHOLDER_HTML_TEMPLATE.replace("{banner}", banner_name)


def cache_busted(url: str, now_ms: Optional[int] = None) -> str:
    stamp = int(time.time() * 1000) if now_ms is None else now_ms
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}_={stamp}"


class SessionInjector:
    """
    Boots WhatsApp Web behind a placeholder page and restores a session.

    While bootstrapping, every document request is answered with a local
    placeholder so no WhatsApp script runs before ``localStorage`` holds the
    saved token. Sub-resources go to the network untouched. Request
    interception is always released when :meth:`bootstrap` returns or raises.
    """

    def __init__(
        self,
        client: ChromeDevToolsClient,
        *,
        target_url: Optional[str] = None,
        banner_path: Path = BANNER_FILE,
        settle_delay: float = SETTLE_DELAY,
        navigation_timeout: float = NAVIGATION_TIMEOUT,
        token_validator: Callable[[Any], bool] = is_valid_session_token,
    ) -> None:
        self.client = client
        self.target_url = target_url or whatsapp_url()
        self.banner_path = Path(banner_path)
        self.settle_delay = settle_delay
        self.navigation_timeout = navigation_timeout
        self.token_validator = token_validator
        self._banner: Optional[bytes] = None

    @property
    def banner_name(self) -> str:
        return self.banner_path.name

    def _banner_bytes(self) -> bytes:
        if self._banner is None:
            self._banner = self.banner_path.read_bytes()
        return self._banner

    async def handle_request(self, event: Dict[str, Any]) -> None:
        params = event.get("params") or {}
        request_id = params.get("requestId")
        url = (params.get("request") or {}).get("url", "")
        resource_type = (params.get("resourceType") or "").lower()

        if url.endswith(self.banner_name):
            await self.client.fulfill_request(
                request_id,
                body=self._banner_bytes(),
                content_type="image/jpeg",
            )
            return

        if resource_type != "document":
            await self.client.continue_request(request_id)
            return

        logger.debug("Serving placeholder for {}", url)
        await self.client.fulfill_request(
            request_id,
            body=placeholder_html(self.banner_name),
            content_type="text/html",
            status=200,
        )

    async def bootstrap(self, token: Optional[Mapping[str, Any]] = None, clear: bool = True) -> None:
        """
        Load the placeholder, optionally wipe storage, then write ``token``.

        Args:
            token: Storage snapshot from an earlier session. Missing or
                malformed tokens are treated as empty, which leads to a
                fresh QR pairing.
            clear: Wipe ``localStorage`` and every IndexedDB database first.
        """
        if not token or not self.token_validator(token):
            if token:
                logger.debug("Ignoring malformed session token")
            token = {}

        self.client.on(REQUEST_PAUSED, self.handle_request)
        try:
            await self.client.set_request_interception(True)

            url = cache_busted(self.target_url)
            logger.info("Loading placeholder at {}", url)
            ready = await self.client.goto(url, timeout=self.navigation_timeout)
            if not ready:
                logger.warning("Placeholder did not finish loading within {}s", self.navigation_timeout)

            if clear:
                cleared = await self.client.evaluate(CLEAR_STORAGE_SCRIPT)
                logger.debug("Browser storage cleared={}", bool(cleared))
                # deleteDatabase only queues the deletion
                await asyncio.sleep(self.settle_delay)

            if is_multi_device(token):
                logger.info("Multi-device session, skipping legacy storage replay")
            else:
                written = await self.client.call_function(WRITE_STORAGE_SCRIPT, dict(token))
                logger.debug("Wrote {} session keys to localStorage", written)

            await self.client.evaluate(REMEMBER_ME_SCRIPT)
        finally:
            self.client.off(REQUEST_PAUSED, self.handle_request)
            try:
                await self.client.set_request_interception(False)
            except DevToolsError as exc:
                logger.warning("Could not disable request interception: {}", exc)


__all__ = ["SessionInjector", "placeholder_html", "cache_busted"]
