"""Async client controlling Chrome via DevTools protocol."""
from __future__ import annotations

import asyncio
import base64
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Tuple, Union
from urllib.parse import quote, urlparse

import httpx
import websockets
from loguru import logger

from src.config import CHROME_REMOTE_URL


EventHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class DevToolsError(RuntimeError):
    """Raised when Chrome answers a command with an error."""


class PageClosedError(DevToolsError):
    """Raised for commands pending or issued after the page connection dropped."""


class EvaluationError(DevToolsError):
    """Raised when an in-page script throws."""


class NavigationError(DevToolsError):
    """Raised when ``Page.navigate`` reports an ``errorText``."""


class ChromeDevToolsClient:
    def __init__(
        self,
        base_url: str | None = None,
        initial_url: str = "about:blank",
    ) -> None:
        self.base_url = base_url or CHROME_REMOTE_URL
        self.initial_url = initial_url
        self.session: Any = None
        self.target_id: Optional[str] = None
        self._reused_existing = False
        self._msg_id = 0
        self._lock = asyncio.Lock()
        self._allowed_host = self._derive_host(initial_url)
        self._pending_requests: Dict[int, asyncio.Future] = {}
        self._event_handlers: Dict[str, list] = {}
        self._handler_tasks: Set[asyncio.Task] = set()
        self._read_task: Optional[asyncio.Task] = None

    @property
    def closed(self) -> bool:
        if self.session is None:
            return True
        state = getattr(self.session, "state", None)
        return getattr(state, "name", "CLOSED") in {"CLOSING", "CLOSED"}

    async def _create_target(self) -> Tuple[str, str]:
        """
        Create (or reuse) a DevTools target.

        Recent Chrome builds may reject GET on ``/json/new``, so an
        existing page from ``/json/list`` is preferred. Without a reusable
        page we fall back to ``GET /json/new?url`` and, on 405, to
        ``PUT /json/new?url``.
        """
        async with httpx.AsyncClient(trust_env=False) as client:
            list_resp = await client.get(f"{self.base_url}/json/list", timeout=5)
            list_resp.raise_for_status()
            targets = list_resp.json()

            fallback_entry: Optional[dict[str, Any]] = None
            for entry in targets:
                if entry.get("type") != "page" or not entry.get("webSocketDebuggerUrl"):
                    continue
                if not fallback_entry:
                    fallback_entry = entry
                if self._can_reuse_target(entry.get("url", "")):
                    return entry["webSocketDebuggerUrl"], "existing"

            encoded = quote(self.initial_url, safe=":/?=&%")
            get_url = f"{self.base_url}/json/new?{encoded}"

            try:
                resp = await client.get(get_url, timeout=5)
                if resp.status_code == 405:
                    resp = await client.put(get_url, timeout=5)

                resp.raise_for_status()
                data = resp.json()
                return data["webSocketDebuggerUrl"], data["id"]
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code if exc.response else None
                if status == 405 and fallback_entry:
                    logger.warning(
                        "Chrome /json/new blocked (405). Reusing existing target {} ({})",
                        fallback_entry.get("title") or fallback_entry.get("url"),
                        fallback_entry.get("id"),
                    )
                    return fallback_entry["webSocketDebuggerUrl"], fallback_entry.get("id", "existing")
                if status == 405:
                    raise DevToolsError(
                        "Chrome refused to create a new DevTools target. Open WhatsApp Web in the debug profile and retry."
                    ) from exc
                raise

    def _derive_host(self, url: str) -> Optional[str]:
        if not url or url.startswith("about:"):
            return None
        parsed = urlparse(url)
        if not parsed.hostname:
            return None
        return parsed.hostname.lower()

    def _can_reuse_target(self, target_url: str) -> bool:
        if not target_url:
            return False
        if target_url.startswith("about:blank"):
            return True
        if not self._allowed_host:
            return False
        parsed = urlparse(target_url)
        host = (parsed.hostname or "").lower()
        if not host:
            return False
        if host == self._allowed_host:
            return True
        return host.endswith(f".{self._allowed_host}")

    async def _ensure_connection_locked(self) -> None:
        if not self.closed:
            return

        ws_url, target_id = await self._create_target()
        self.target_id = target_id
        self._reused_existing = target_id == "existing"
        self.session = await websockets.connect(ws_url, close_timeout=1, max_size=None)
        logger.debug("Connected to Chrome target {}", target_id)

        self._read_task = asyncio.create_task(self._read_loop())

        for domain in ("Page.enable", "Runtime.enable", "Network.enable"):
            await self._dispatch_locked(domain)

    async def _read_loop(self) -> None:
        """Background loop to read messages from websocket."""
        try:
            async for raw in self.session:
                try:
                    data = json.loads(raw)
                except ValueError as e:
                    logger.error(f"Undecodable DevTools message: {e}")
                    continue

                msg_id = data.get("id")
                if msg_id is not None:
                    future = self._pending_requests.pop(msg_id, None)
                    if future is None or future.done():
                        continue
                    if "error" in data:
                        future.set_exception(DevToolsError(data["error"]))
                    else:
                        future.set_result(data.get("result"))
                    continue

                method = data.get("method")
                for handler in list(self._event_handlers.get(method, ())):
                    # Handlers may issue commands of their own, so they cannot
                    # run inline with the loop that delivers the responses.
                    task = asyncio.create_task(self._run_handler(method, handler, data))
                    self._handler_tasks.add(task)
                    task.add_done_callback(self._handler_tasks.discard)
        except Exception as e:
            logger.warning(f"Read loop terminated: {e}")
        finally:
            for future in self._pending_requests.values():
                if not future.done():
                    future.set_exception(PageClosedError("DevTools connection closed"))
            self._pending_requests.clear()

    async def _run_handler(self, method: str, handler: EventHandler, data: Dict[str, Any]) -> None:
        try:
            await handler(data)
        except Exception as e:
            logger.error(f"Event handler failed for {method}: {e}")

    def on(self, event: str, handler: EventHandler) -> None:
        """Register an event handler."""
        self._event_handlers.setdefault(event, []).append(handler)

    def off(self, event: str, handler: Optional[EventHandler] = None) -> None:
        """Remove one handler, or every handler of ``event`` when none is given."""
        if handler is None:
            self._event_handlers.pop(event, None)
            return
        handlers = self._event_handlers.get(event, [])
        if handler in handlers:
            handlers.remove(handler)
        if not handlers:
            self._event_handlers.pop(event, None)

    async def _dispatch_locked(self, method: str, params: Optional[Dict[str, Any]] = None) -> asyncio.Future:
        assert self.session
        self._msg_id += 1
        msg_id = self._msg_id

        payload: Dict[str, Any] = {"id": msg_id, "method": method}
        if params:
            payload["params"] = params

        future = asyncio.get_running_loop().create_future()
        self._pending_requests[msg_id] = future
        try:
            await self.session.send(json.dumps(payload))
        except Exception as exc:
            self._pending_requests.pop(msg_id, None)
            raise PageClosedError(f"Unable to send {method}: {exc}") from exc
        return future

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Any:
        # Only the write is serialized; responses arrive through the read
        # loop, so a long command (Page.navigate) never blocks event handlers.
        async with self._lock:
            await self._ensure_connection_locked()
            future = await self._dispatch_locked(method, params)
        return await future

    async def navigate(self, url: str) -> Dict[str, Any]:
        return await self.send("Page.navigate", {"url": url}) or {}

    async def goto(self, url: str, timeout: float = 30.0) -> bool:
        """Navigate and wait until the new document reports ``complete``."""
        result = await self.navigate(url)
        if result.get("errorText"):
            raise NavigationError(f"Navigation to {url} failed: {result['errorText']}")
        return await self.wait_for_ready(timeout=timeout)

    async def set_user_agent(self, user_agent: str) -> None:
        await self.send("Network.setUserAgentOverride", {"userAgent": user_agent})

    async def evaluate(self, expression: str) -> Any:
        result = await self.send(
            "Runtime.evaluate",
            {"expression": expression, "awaitPromise": True, "returnByValue": True},
        )
        details = result.get("exceptionDetails")
        if details:
            exception = details.get("exception") or {}
            message = exception.get("description") or details.get("text") or "script error"
            raise EvaluationError(message)
        remote = result.get("result", {})
        return remote.get("value")

    async def call_function(self, declaration: str, *args: Any) -> Any:
        """Evaluate ``declaration`` applied to JSON-serializable ``args``."""
        arguments = ", ".join(json.dumps(arg) for arg in args)
        return await self.evaluate(f"({declaration})({arguments})")

    async def set_request_interception(self, enabled: bool) -> None:
        if enabled:
            await self.send(
                "Fetch.enable",
                {"patterns": [{"urlPattern": "*", "requestStage": "Request"}]},
            )
        else:
            await self.send("Fetch.disable")

    async def fulfill_request(
        self,
        request_id: str,
        *,
        body: Union[bytes, str],
        content_type: str,
        status: int = 200,
    ) -> None:
        raw = body.encode("utf-8") if isinstance(body, str) else body
        await self.send(
            "Fetch.fulfillRequest",
            {
                "requestId": request_id,
                "responseCode": status,
                "responseHeaders": [{"name": "Content-Type", "value": content_type}],
                "body": base64.b64encode(raw).decode("ascii"),
            },
        )

    async def continue_request(self, request_id: str) -> None:
        await self.send("Fetch.continueRequest", {"requestId": request_id})

    async def wait_for_ready(self, timeout: float = 15.0) -> bool:
        deadline = asyncio.get_running_loop().time() + timeout
        while asyncio.get_running_loop().time() < deadline:
            try:
                ready_state = await self.evaluate("document.readyState")
            except PageClosedError:
                raise
            except DevToolsError:
                ready_state = None
            if ready_state == "complete":
                return True
            await asyncio.sleep(0.2)
        return False

    async def wait_for_expression(
        self,
        expression: str,
        timeout: Optional[float] = 10.0,
        interval: float = 0.5,
    ) -> Optional[Any]:
        """
        Evaluate ``expression`` repeatedly until it returns a truthy value.

        Args:
            expression: JavaScript snippet returning a truthy value when the condition is met.
            timeout: Maximum time to wait, ``None`` waits forever.
            interval: Delay between evaluations.

        Returns:
            The first truthy value returned by the expression, or ``None`` if timed out.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while deadline is None or loop.time() < deadline:
            try:
                result = await self.evaluate(expression)
            except PageClosedError:
                return None
            except DevToolsError:
                result = None
            if result:
                return result
            await asyncio.sleep(interval)
        return None

    async def close(self) -> None:
        for task in list(self._handler_tasks):
            task.cancel()
        self._handler_tasks.clear()

        if self.session:
            try:
                await self.session.close()
            except Exception:
                pass
        self.session = None

        if self._read_task:
            try:
                await self._read_task
            except Exception:
                pass
            self._read_task = None

        if self.target_id and not self._reused_existing:
            close_url = f"{self.base_url}/json/close/{self.target_id}"
            try:
                async with httpx.AsyncClient(trust_env=False) as client:
                    await client.get(close_url, timeout=3)
            except Exception:
                pass

        self.target_id = None
        self._reused_existing = False
