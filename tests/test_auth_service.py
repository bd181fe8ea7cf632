"""
Tests for connection phase detection and the single-shot auth predicates.
"""

import asyncio

import pytest

from src.clients.chrome_devtools import EvaluationError, PageClosedError
from src.schemas.login import ConnectionPhase
from src.services.auth_service import (
    INTERFACE_PROBE_SCRIPT,
    AuthQueries,
    StatusPoller,
    classify_interface,
)
from src.services.page_query import DevToolsPageQuery


def snapshot(login=False, canvas=False, stream=None, chat=False):
    return {"hasLoginWrapper": login, "hasQrCanvas": canvas, "streamStatus": stream, "chatReady": chat}


class TestClassifyInterface:
    def test_qr_screen_is_unpaired(self):
        assert classify_interface(snapshot(login=True, canvas=True)) == ConnectionPhase.UNPAIRED

    def test_unpaired_wins_over_connected(self):
        state = snapshot(login=True, canvas=True, stream="SYNCING", chat=True)
        assert classify_interface(state) == ConnectionPhase.UNPAIRED

    @pytest.mark.parametrize("stream", ["PAIRING", "RESUMING", "SYNCING"])
    def test_stream_states_are_pairing(self, stream):
        assert classify_interface(snapshot(stream=stream)) == ConnectionPhase.PAIRING

    def test_pairing_wins_over_connected(self):
        assert classify_interface(snapshot(stream="RESUMING", chat=True)) == ConnectionPhase.PAIRING

    def test_chat_pane_is_connected(self):
        assert classify_interface(snapshot(stream="CONNECTED", chat=True)) == ConnectionPhase.CONNECTED

    def test_wrapper_without_canvas_is_undecided(self):
        assert classify_interface(snapshot(login=True)) is None

    @pytest.mark.parametrize("state", [None, {}, snapshot(stream="OPENING"), snapshot(stream="CONNECTED")])
    def test_undecided(self, state):
        assert classify_interface(state) is None


class TestStatusPoller:
    @pytest.mark.asyncio
    async def test_polls_until_decided(self, fake_client):
        fake_client.responses[INTERFACE_PROBE_SCRIPT] = [
            snapshot(),
            snapshot(login=True),
            snapshot(chat=True),
        ]

        phase = await StatusPoller(fake_client, interval=0).query_status()

        assert phase == ConnectionPhase.CONNECTED
        assert fake_client.evaluated.count(INTERFACE_PROBE_SCRIPT) == 3

    @pytest.mark.asyncio
    async def test_syncing_reports_pairing(self, fake_client):
        fake_client.responses[INTERFACE_PROBE_SCRIPT] = [snapshot(stream="SYNCING")]

        assert await StatusPoller(fake_client, interval=0).query_status() == ConnectionPhase.PAIRING

    @pytest.mark.asyncio
    async def test_conflicting_dom_reports_unpaired(self, fake_client):
        fake_client.responses[INTERFACE_PROBE_SCRIPT] = [snapshot(login=True, canvas=True, chat=True)]

        assert await StatusPoller(fake_client, interval=0).query_status() == ConnectionPhase.UNPAIRED

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "error",
        [EvaluationError("TypeError: x is null"), PageClosedError("DevTools connection closed")],
    )
    async def test_faults_yield_none(self, fake_client, error):
        fake_client.responses[INTERFACE_PROBE_SCRIPT] = [snapshot(), error]

        assert await StatusPoller(fake_client, interval=0).query_status() is None

    @pytest.mark.asyncio
    async def test_wait_is_unbounded(self, fake_client):
        fake_client.responses[INTERFACE_PROBE_SCRIPT] = [snapshot()]
        poller = StatusPoller(fake_client, interval=0.01)

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(poller.query_status(), timeout=0.1)

        assert fake_client.evaluated.count(INTERFACE_PROBE_SCRIPT) > 1


class FakePageQuery:
    def __init__(self, registered=False, main_ready=False, main_loaded=False, stream=None, error=None):
        self.registered = registered
        self.main_ready = main_ready
        self.main_loaded = main_loaded
        self.stream = stream
        self.error = error
        self.calls = []

    async def _read(self, name, value):
        self.calls.append(name)
        if self.error:
            raise self.error
        return value

    async def is_registered(self):
        return await self._read("is_registered", self.registered)

    async def is_main_ready(self):
        return await self._read("is_main_ready", self.main_ready)

    async def is_main_loaded(self):
        return await self._read("is_main_loaded", self.main_loaded)

    async def stream_status(self):
        return await self._read("stream_status", self.stream)


class TestAuthQueries:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("registered", [True, False])
    async def test_needs_to_scan_negates_authenticated(self, registered):
        queries = AuthQueries(FakePageQuery(registered=registered))

        assert await queries.is_authenticated() is registered
        assert await queries.needs_to_scan() is (not registered)

    @pytest.mark.asyncio
    async def test_inside_chat(self):
        assert await AuthQueries(FakePageQuery(main_ready=True)).is_inside_chat() is True
        assert await AuthQueries(FakePageQuery(main_ready=False)).is_inside_chat() is False

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "loaded, ready, expected",
        [(True, False, True), (True, True, False), (False, False, False), (False, True, False)],
    )
    async def test_connecting_to_phone(self, loaded, ready, expected):
        queries = AuthQueries(FakePageQuery(main_loaded=loaded, main_ready=ready))

        assert await queries.is_connecting_to_phone() is expected

    @pytest.mark.asyncio
    async def test_single_shot_without_retry(self):
        page = FakePageQuery(registered=True)

        await AuthQueries(page).is_authenticated()

        assert page.calls == ["is_registered"]

    @pytest.mark.asyncio
    async def test_faults_propagate(self):
        queries = AuthQueries(FakePageQuery(error=EvaluationError("ReferenceError: WAPI is not defined")))

        with pytest.raises(EvaluationError):
            await queries.needs_to_scan()


class TestDevToolsPageQuery:
    @pytest.mark.asyncio
    async def test_reads_page_globals(self, fake_client):
        fake_client.responses["WAPI.isRegistered()"] = True
        fake_client.responses["WPP.conn.isMainReady()"] = False
        fake_client.responses["WPP.conn.isMainLoaded()"] = True
        page = DevToolsPageQuery(fake_client)

        assert await page.is_registered() is True
        assert await page.is_main_ready() is False
        assert await page.is_main_loaded() is True
        assert await page.stream_status() is None

    @pytest.mark.asyncio
    async def test_missing_bridge_raises(self, fake_client):
        fake_client.fail_on = "WAPI.isRegistered()"

        with pytest.raises(EvaluationError):
            await DevToolsPageQuery(fake_client).is_registered()
