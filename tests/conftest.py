"""
Shared fixtures for the WhatsApp session tests.

``FakeDevToolsClient`` stands in for ``ChromeDevToolsClient``: it keeps an
in-memory ``localStorage`` and IndexedDB list, replays the document request
of every navigation through the registered ``Fetch.requestPaused`` handlers
while interception is on, and answers other scripts from ``responses``.
"""

from typing import Any, Dict, List, Optional
from unittest.mock import AsyncMock

import pytest

from src.clients.chrome_devtools import EvaluationError
from src.services.session_injector import (
    CLEAR_STORAGE_SCRIPT,
    PLACEHOLDER_TITLE,
    REMEMBER_ME_SCRIPT,
    REQUEST_PAUSED,
    WRITE_STORAGE_SCRIPT,
)


class FakeDevToolsClient:
    def __init__(self, title: str = PLACEHOLDER_TITLE, databases=("wawc", "model-storage")):
        self.title = title
        self.local_storage: Dict[str, Any] = {"stale-key": "stale"}
        self.databases: List[str] = list(databases)
        self.handlers: Dict[str, list] = {}
        self.interception_enabled = False
        self.interception_history: List[bool] = []
        self.navigations: List[str] = []
        self.fulfilled: List[Dict[str, Any]] = []
        self.continued: List[str] = []
        self.evaluated: List[str] = []
        self.user_agent: Optional[str] = None
        self.responses: Dict[str, Any] = {}
        self.fail_on: Optional[str] = None
        self.close = AsyncMock()
        self._request_seq = 0

    # events / interception

    def on(self, event, handler):
        self.handlers.setdefault(event, []).append(handler)

    def off(self, event, handler=None):
        handlers = self.handlers.get(event, [])
        if handler is None:
            handlers.clear()
        elif handler in handlers:
            handlers.remove(handler)

    async def emit_request(self, url: str, resource_type: str) -> str:
        self._request_seq += 1
        request_id = f"interception-job-{self._request_seq}"
        event = {
            "method": REQUEST_PAUSED,
            "params": {"requestId": request_id, "request": {"url": url}, "resourceType": resource_type},
        }
        for handler in list(self.handlers.get(REQUEST_PAUSED, [])):
            await handler(event)
        return request_id

    async def set_request_interception(self, enabled: bool) -> None:
        self.interception_enabled = enabled
        self.interception_history.append(enabled)

    async def fulfill_request(self, request_id, *, body, content_type, status=200):
        self.fulfilled.append(
            {"request_id": request_id, "body": body, "content_type": content_type, "status": status}
        )

    async def continue_request(self, request_id):
        self.continued.append(request_id)

    # navigation

    async def set_user_agent(self, user_agent: str) -> None:
        self.user_agent = user_agent

    async def goto(self, url: str, timeout: float = 30.0) -> bool:
        self.navigations.append(url)
        if self.interception_enabled:
            await self.emit_request(url, "Document")
            await self.emit_request(url.split("?")[0] + "session-banner.jpeg", "Image")
        return True

    # evaluation

    async def evaluate(self, expression: str) -> Any:
        self.evaluated.append(expression)
        if self.fail_on == expression:
            raise EvaluationError("ReferenceError: boom")
        if expression == CLEAR_STORAGE_SCRIPT:
            if self.title != PLACEHOLDER_TITLE:
                return False
            self.local_storage.clear()
            self.databases.clear()
            return True
        if expression == REMEMBER_ME_SCRIPT:
            self.local_storage["remember-me"] = "true"
            return None
        return self._respond(expression)

    async def call_function(self, declaration: str, *args: Any) -> Any:
        self.evaluated.append(declaration)
        if self.fail_on == declaration:
            raise EvaluationError("QuotaExceededError")
        if declaration == WRITE_STORAGE_SCRIPT:
            session = args[0]
            self.local_storage.update(session)
            return len(session)
        return self._respond(declaration)

    async def wait_for_expression(self, expression, timeout=10.0, interval=0.5):
        return await self.evaluate(expression)

    def _respond(self, expression: str) -> Any:
        value = self.responses.get(expression)
        if isinstance(value, list):
            value = value.pop(0) if len(value) > 1 else value[0]
        if isinstance(value, BaseException):
            raise value
        return value


@pytest.fixture
def fake_client():
    return FakeDevToolsClient()


@pytest.fixture
def banner_file(tmp_path):
    path = tmp_path / "session-banner.jpeg"
    path.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg\xff\xd9")
    return path


@pytest.fixture
def legacy_token():
    return {
        "WABrowserId": '"browser-id=="',
        "WASecretBundle": '{"key":"k","encKey":"e","macKey":"m"}',
        "WAToken1": '"token-one"',
        "WAToken2": '"token-two"',
    }


@pytest.fixture
def multi_device_token():
    return {
        "WABrowserId": '"browser-id=="',
        "WASecretBundle": "MultiDevice",
        "WAToken1": "MultiDevice",
        "WAToken2": "MultiDevice",
    }


@pytest.fixture
def make_client():
    return FakeDevToolsClient
