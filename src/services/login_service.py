"""WhatsApp Web login orchestration on top of the shared Chrome session."""
from __future__ import annotations

import asyncio
from typing import Callable, Optional

import httpx
from loguru import logger
from websockets import exceptions as ws_exceptions

from src.clients.chrome_devtools import ChromeDevToolsClient, DevToolsError, PageClosedError
from src.config import (
    CHROME_USER_AGENT,
    LOGIN_WAIT_TIMEOUT,
    NAVIGATION_TIMEOUT,
    SESSION_NAME,
    SETTLE_DELAY,
    whatsapp_url,
)
from src.schemas.login import ConnectionPhase, ConnectionState, LoginStatus, LoginStatusResponse
from src.services.auth_service import AuthQueries, StatusPoller
from src.services.page_query import DevToolsPageQuery
from src.services.session_injector import SessionInjector
from src.utils.browser_guard import BrowserGuard
from src.utils.qr_render import ascii_qr
from src.utils.qr_storage import save_qr_image_from_base64
from src.utils.token_store import is_multi_device, load_session_token, remove_session_token, save_session_token


PAIRING_CODE_SCRIPT = r"""
(() => {
  const canvas = document.querySelector('canvas');
  if (!canvas) return null;
  const holder = canvas.closest('[data-ref]');
  const code = holder ? holder.getAttribute('data-ref') : null;
  if (!code) return null;
  let image = null;
  try {
    image = canvas.toDataURL('image/png');
  } catch (e) {
    image = null;
  }
  return { code: code, image: image };
})()
"""

SESSION_SNAPSHOT_SCRIPT = r"""
(() => {
  const read = (key) => localStorage.getItem(key);
  const multiDevice = Boolean(
    window.WPP && WPP.conn && WPP.conn.isMultiDevice && WPP.conn.isMultiDevice()
  );
  if (multiDevice) {
    return {
      WABrowserId: read('WABrowserId'),
      WASecretBundle: 'MultiDevice',
      WAToken1: 'MultiDevice',
      WAToken2: 'MultiDevice',
    };
  }
  return {
    WABrowserId: read('WABrowserId'),
    WASecretBundle: read('WASecretBundle'),
    WAToken1: read('WAToken1'),
    WAToken2: read('WAToken2'),
  };
})()
"""


class LoginService:
    """Restores the saved session once, then reports the live connection phase."""

    def __init__(
        self,
        browser_guard: Optional[BrowserGuard] = None,
        *,
        session_name: str = SESSION_NAME,
        client_factory: Optional[Callable[[], ChromeDevToolsClient]] = None,
        settle_delay: float = SETTLE_DELAY,
    ) -> None:
        self.entry_url = whatsapp_url()
        self.browser_guard = browser_guard or BrowserGuard()
        self.session_name = session_name
        self.settle_delay = settle_delay
        self.client_factory = client_factory or (lambda: ChromeDevToolsClient(initial_url=self.entry_url))
        self._client: Optional[ChromeDevToolsClient] = None
        self._bootstrapped = False
        self._lock = asyncio.Lock()

    async def _get_client(self) -> ChromeDevToolsClient:
        if self._client is None:
            await self.browser_guard.ensure()
            self._client = self.client_factory()
        return self._client

    async def _bootstrap(self, client: ChromeDevToolsClient, clear: bool, diagnostics: list[str]) -> None:
        token = load_session_token(self.session_name)
        diagnostics.append(f"stored_token={token is not None}")
        if clear and token and is_multi_device(token):
            # multi-device credentials live in the profile's IndexedDB
            logger.info("Multi-device token for {}, keeping browser storage", self.session_name)
            clear = False
        diagnostics.append(f"clear_storage={clear}")

        await client.set_user_agent(CHROME_USER_AGENT)
        await SessionInjector(
            client,
            target_url=self.entry_url,
            settle_delay=self.settle_delay,
        ).bootstrap(token, clear=clear)

        logger.info("Handing page over to {}", self.entry_url)
        ready = await client.goto(self.entry_url, timeout=NAVIGATION_TIMEOUT)
        diagnostics.append(f"page_ready={ready}")
        self._bootstrapped = True

    async def ensure_login_status(
        self,
        wait_timeout: float = LOGIN_WAIT_TIMEOUT,
        restore_session: bool = False,
        clear: bool = True,
    ) -> LoginStatusResponse:
        """
        Report whether WhatsApp Web is paired, restoring the saved token first.

        Args:
            wait_timeout: Upper bound for the phase detection, in seconds.
            restore_session: Re-run the storage bootstrap even if this service
                already did it once.
            clear: Wipe browser storage before writing the token. Ignored
                when the stored token is a multi-device one.
        """
        async with self._lock:
            diagnostics: list[str] = [f"entry_url={self.entry_url}", f"session={self.session_name}"]
            try:
                client = await self._get_client()
                if restore_session or not self._bootstrapped:
                    await self._bootstrap(client, clear, diagnostics)

                try:
                    phase = await asyncio.wait_for(StatusPoller(client).query_status(), timeout=wait_timeout)
                except asyncio.TimeoutError:
                    diagnostics.append("status_wait_timeout")
                    phase = None
                diagnostics.append(f"phase={phase.value if phase else None}")

                status = await self._status_for_phase(client, phase, diagnostics)
                return LoginStatusResponse(success=status.phase == ConnectionPhase.CONNECTED, status=status)
            except httpx.HTTPError as exc:
                diagnostics.append(f"http_error={exc}")
                logger.error("Chrome DevTools HTTP error: {}", exc)
                await self._drop_client()
                status = LoginStatus(
                    state="browser_offline",
                    message="Unable to reach Chrome DevTools. Please launch Chrome with --remote-debugging-port.",
                    next_actions=[
                        "Make sure Chrome runs with --remote-debugging-port=9222",
                        "Restart Chrome if the port is taken, then call ensure_login_status again",
                    ],
                    diagnostics=diagnostics,
                )
                return LoginStatusResponse(success=False, status=status)
            except PageClosedError as exc:
                return await self._websocket_failure(exc, diagnostics)
            except DevToolsError as exc:
                # the page answered, so the connection and bootstrap state stay
                diagnostics.append(f"page_error={exc}")
                logger.warning("In-page DevTools call failed: {}", exc)
                status = LoginStatus(
                    state="unknown",
                    phase=ConnectionPhase.UNKNOWN,
                    message="A WhatsApp Web page script failed. The page may still be loading.",
                    next_actions=[
                        "Retry ensure_login_status in a few seconds",
                        "Use restore_session=True if the error persists",
                    ],
                    diagnostics=diagnostics,
                )
                return LoginStatusResponse(success=False, status=status)
            except (ws_exceptions.WebSocketException, OSError, RuntimeError) as exc:
                return await self._websocket_failure(exc, diagnostics)
            except Exception as exc:  # noqa: BLE001
                diagnostics.append(f"unexpected_error={exc}")
                logger.exception("Unexpected error while probing login state")
                await self._drop_client()
                status = LoginStatus(
                    state="unknown",
                    message="Login probe failed due to an unexpected error. Please review the logs.",
                    next_actions=["Retry ensure_login_status and review the logs/ directory"],
                    diagnostics=diagnostics,
                )
                return LoginStatusResponse(success=False, status=status)

    async def _websocket_failure(self, exc: Exception, diagnostics: list[str]) -> LoginStatusResponse:
        diagnostics.append(f"ws_error={exc}")
        logger.error("Chrome DevTools websocket error: {}", exc)
        await self._drop_client()
        status = LoginStatus(
            state="browser_offline",
            message="Chrome websocket connection failed. Check the port and network.",
            next_actions=[
                "Check that the DevTools port is reachable, restart Chrome if needed",
                "Call ensure_login_status again to restore the session",
            ],
            diagnostics=diagnostics,
        )
        return LoginStatusResponse(success=False, status=status)

    async def _status_for_phase(
        self,
        client: ChromeDevToolsClient,
        phase: Optional[ConnectionPhase],
        diagnostics: list[str],
    ) -> LoginStatus:
        if phase == ConnectionPhase.CONNECTED:
            token = await client.evaluate(SESSION_SNAPSHOT_SCRIPT)
            token_file = save_session_token(self.session_name, token or {})
            diagnostics.append(f"token_saved={token_file is not None}")
            return LoginStatus(
                state="connected",
                phase=phase,
                message="WhatsApp Web is connected.",
                token_file=token_file,
                next_actions=["The session is ready for use"],
                diagnostics=diagnostics,
            )

        if phase == ConnectionPhase.UNPAIRED:
            pairing = await client.wait_for_expression(PAIRING_CODE_SCRIPT, timeout=10, interval=0.25)
            code = pairing.get("code") if pairing else None
            image = pairing.get("image") if pairing else None
            diagnostics.append(f"qr_code_found={code is not None}")
            return LoginStatus(
                state="needs_qr_scan",
                phase=phase,
                message="Scan the QR code with WhatsApp on your phone (Linked devices).",
                qr_code=code,
                qr_ascii=await ascii_qr(code) if code else None,
                qr_code_file=save_qr_image_from_base64(image, self.session_name) if image else None,
                next_actions=[
                    "Open WhatsApp > Linked devices > Link a device and scan the code",
                    "Call ensure_login_status again until the state is connected",
                ],
                diagnostics=diagnostics,
            )

        if phase == ConnectionPhase.PAIRING:
            return LoginStatus(
                state="pairing",
                phase=phase,
                message="The phone is pairing or syncing. Please wait.",
                next_actions=["Call ensure_login_status again in a few seconds"],
                diagnostics=diagnostics,
            )

        return LoginStatus(
            state="unknown",
            phase=ConnectionPhase.UNKNOWN,
            message="Unable to determine the connection phase yet.",
            next_actions=[
                "Retry ensure_login_status, the page may still be loading",
                "Use restore_session=True if the page looks stuck",
            ],
            diagnostics=diagnostics,
        )

    async def get_connection_state(self) -> ConnectionState:
        """Read the in-page connection object once; faults propagate."""
        client = await self._get_client()
        page = DevToolsPageQuery(client)
        queries = AuthQueries(page)
        return ConnectionState(
            authenticated=await queries.is_authenticated(),
            needs_to_scan=await queries.needs_to_scan(),
            inside_chat=await queries.is_inside_chat(),
            connecting_to_phone=await queries.is_connecting_to_phone(),
            stream_status=await page.stream_status(),
        )

    def forget_session(self) -> bool:
        """Drop the stored token; the next restore starts a fresh pairing."""
        self._bootstrapped = False
        return remove_session_token(self.session_name)

    async def _drop_client(self) -> None:
        client, self._client = self._client, None
        self._bootstrapped = False
        if client is None:
            return
        try:
            await asyncio.wait_for(client.close(), timeout=2)
        except Exception:
            pass

    async def close(self) -> None:
        await self._drop_client()
