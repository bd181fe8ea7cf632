"""Narrow view over the globals the WA-JS bridge exposes inside WhatsApp Web."""
from __future__ import annotations

from typing import Optional, Protocol

from src.clients.chrome_devtools import ChromeDevToolsClient


class PageQuery(Protocol):
    async def is_registered(self) -> bool: ...

    async def is_main_ready(self) -> bool: ...

    async def is_main_loaded(self) -> bool: ...

    async def stream_status(self) -> Optional[str]: ...


class DevToolsPageQuery:
    """Answers :class:`PageQuery` by evaluating ``WAPI``/``WPP`` in the page.

    The globals must already be injected; a missing one surfaces as
    ``EvaluationError`` from the client.
    """

    def __init__(self, client: ChromeDevToolsClient) -> None:
        self.client = client

    async def is_registered(self) -> bool:
        return bool(await self.client.evaluate("WAPI.isRegistered()"))

    async def is_main_ready(self) -> bool:
        return bool(await self.client.evaluate("WPP.conn.isMainReady()"))

    async def is_main_loaded(self) -> bool:
        return bool(await self.client.evaluate("WPP.conn.isMainLoaded()"))

    async def stream_status(self) -> Optional[str]:
        return await self.client.evaluate(
            "(window.WPP && WPP.whatsapp && WPP.whatsapp.Stream) ? WPP.whatsapp.Stream.displayInfo : null"
        )


__all__ = ["DevToolsPageQuery", "PageQuery"]
