import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from auth.errors import AuthError, AuthErrorKind, StorageError, StorageErrorKind
from auth.lastfm_api import LastFMAPIError, LastFMClient, LastFMResponseError
from auth.orchestrator import AuthOrchestrator, FlowState
from auth.session_store import MemorySessionBackend, SessionStore
from tests.lastfm_helpers import FakeBrowser


class BrokenBackend(MemorySessionBackend):
    name = "broken"

    def save(self, session) -> None:
        raise StorageError(StorageErrorKind.BACKEND_UNAVAILABLE, "Keyring unavailable.")


def _orchestrator(client, store, listener_factory, browser, *, timeout: float = 5.0):
    return AuthOrchestrator(
        client=client,
        store=store,
        host="127.0.0.1",
        port=0,
        timeout=timeout,
        open_url=browser,
        listener_factory=listener_factory,
    )


@pytest.mark.asyncio
async def test_successful_flow(fake_client, store, backend, listener_factory, alice) -> None:
    browser = FakeBrowser({"token": "abc123"})
    flow = _orchestrator(fake_client, store, listener_factory, browser)

    outcome = await flow.wait()

    assert outcome.session == alice
    assert outcome.persisted
    assert flow.state == FlowState.COMPLETED
    assert flow.pending is None
    assert flow.browser_opened
    assert fake_client.exchanged == ["abc123"]
    assert store.get() == alice
    assert backend.load() == alice
    assert not listener_factory.listeners[0].is_running

    query = parse_qs(urlsplit(flow.auth_url).query)
    assert query["api_key"] == ["test-api-key"]
    assert query["cb"] == [flow.callback_url]
    assert flow.callback_url.startswith("http://localhost:")
    assert flow.callback_url.endswith("/callback")

    response = await browser.requests[0]
    assert "Authentication Successful" in response.text


@pytest.mark.asyncio
async def test_pending_attempt_tracks_listener(fake_client, store, listener_factory) -> None:
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser(None))
    flow.launch()

    async def _awaiting():
        while flow.state != FlowState.AWAITING_USER:
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_awaiting(), timeout=5)
    listener = listener_factory.listeners[0]
    assert flow.pending is not None
    assert flow.pending.listener_port == listener.port
    assert flow.pending.deadline == pytest.approx(flow.pending.started_at + 5.0)
    assert flow.in_flight

    await flow.cancel()

    assert flow.state == FlowState.CANCELLED
    assert flow.pending is None
    assert not listener.is_running
    with pytest.raises(AuthError) as excinfo:
        await flow.wait()
    assert excinfo.value.kind == AuthErrorKind.CANCELLED


@pytest.mark.asyncio
async def test_denied_flow_leaves_session_untouched(fake_client, store, listener_factory) -> None:
    browser = FakeBrowser({"error": "access_denied", "error_description": "User denied"})
    flow = _orchestrator(fake_client, store, listener_factory, browser)

    with pytest.raises(AuthError) as excinfo:
        await flow.wait()

    assert excinfo.value.kind == AuthErrorKind.PROVIDER_ERROR
    assert "access_denied" in excinfo.value.message
    assert flow.state == FlowState.FAILED
    assert fake_client.exchanged == []
    assert store.get() is None


@pytest.mark.asyncio
async def test_callback_without_token_is_malformed(fake_client, store, listener_factory) -> None:
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser({"state": "x"}))

    with pytest.raises(AuthError) as excinfo:
        await flow.wait()

    assert excinfo.value.kind == AuthErrorKind.MALFORMED
    assert flow.state == FlowState.FAILED


@pytest.mark.asyncio
async def test_timeout_releases_listener(fake_client, store, listener_factory) -> None:
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser(None), timeout=0.2)

    with pytest.raises(AuthError) as excinfo:
        await flow.wait()

    assert excinfo.value.kind == AuthErrorKind.TIMED_OUT
    assert flow.state == FlowState.TIMED_OUT
    assert "0.2 seconds" in excinfo.value.message
    listener = listener_factory.listeners[0]
    assert not listener.is_running
    assert store.get() is None

    follow_up = listener_factory("127.0.0.1", listener.port)
    await follow_up.start()
    await follow_up.stop()


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error,kind",
    [
        (LastFMAPIError(4, "Invalid authentication token supplied"), AuthErrorKind.PROVIDER_ERROR),
        (LastFMAPIError(11, "Service Offline"), AuthErrorKind.NETWORK_ERROR),
        (LastFMResponseError("Session response missing key."), AuthErrorKind.MALFORMED),
        (httpx.ConnectError("connection refused"), AuthErrorKind.NETWORK_ERROR),
    ],
)
async def test_exchange_failures(fake_client, store, listener_factory, error, kind) -> None:
    fake_client.exchange_error = error
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser({"token": "abc123"}))

    with pytest.raises(AuthError) as excinfo:
        await flow.wait()

    assert excinfo.value.kind == kind
    assert flow.state == FlowState.FAILED
    assert store.get() is None
    assert not listener_factory.listeners[0].is_running


@pytest.mark.asyncio
async def test_storage_failure_does_not_fail_authentication(fake_client, listener_factory, alice) -> None:
    store = SessionStore(BrokenBackend())
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser({"token": "abc123"}))

    outcome = await flow.wait()

    assert outcome.session == alice
    assert not outcome.persisted
    assert outcome.storage_error.kind == StorageErrorKind.BACKEND_UNAVAILABLE
    assert flow.state == FlowState.COMPLETED
    assert store.get() == alice


@pytest.mark.asyncio
async def test_browser_failure_keeps_waiting(fake_client, store, listener_factory) -> None:
    def broken_browser(url: str) -> bool:
        raise RuntimeError("no display")

    flow = _orchestrator(fake_client, store, listener_factory, broken_browser, timeout=0.2)

    with pytest.raises(AuthError) as excinfo:
        await flow.wait()

    assert excinfo.value.kind == AuthErrorKind.TIMED_OUT
    assert not flow.browser_opened
    assert flow.auth_url is not None


@pytest.mark.asyncio
async def test_auto_open_disabled(fake_client, store, listener_factory) -> None:
    browser = FakeBrowser()
    flow = AuthOrchestrator(
        client=fake_client,
        store=store,
        host="127.0.0.1",
        port=0,
        timeout=0.2,
        auto_open=False,
        open_url=browser,
        listener_factory=listener_factory,
    )

    with pytest.raises(AuthError):
        await flow.wait()

    assert browser.opened == []


@pytest.mark.asyncio
async def test_cancel_before_launch(fake_client, store, listener_factory) -> None:
    flow = _orchestrator(fake_client, store, listener_factory, FakeBrowser())

    await flow.cancel()

    assert flow.state == FlowState.CANCELLED
    with pytest.raises(AuthError) as excinfo:
        await flow.wait()
    assert excinfo.value.kind == AuthErrorKind.CANCELLED
    assert listener_factory.listeners == []


@pytest.mark.asyncio
async def test_server_error_during_exchange_is_network_error(store, listener_factory) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="Service Unavailable")

    client = LastFMClient(
        "test-api-key",
        "shh",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    flow = _orchestrator(client, store, listener_factory, FakeBrowser({"token": "abc123"}))

    try:
        with pytest.raises(AuthError) as excinfo:
            await flow.wait()
    finally:
        await client._client.aclose()

    assert excinfo.value.kind == AuthErrorKind.NETWORK_ERROR
    assert flow.state == FlowState.FAILED
    assert store.get() is None


@pytest.mark.asyncio
async def test_authorization_url_is_announced_without_browser(
    fake_client, store, listener_factory, caplog
) -> None:
    announced: list[str] = []

    async def on_auth_url(url: str) -> None:
        announced.append(url)

    flow = AuthOrchestrator(
        client=fake_client,
        store=store,
        host="127.0.0.1",
        port=0,
        timeout=0.2,
        auto_open=False,
        open_url=FakeBrowser(),
        on_auth_url=on_auth_url,
        listener_factory=listener_factory,
    )

    with caplog.at_level("INFO", logger="scrobbler.auth"):
        with pytest.raises(AuthError):
            await flow.wait()

    assert announced == [flow.auth_url]
    assert announced[0].startswith("https://www.last.fm/api/auth/")
    assert flow.auth_url in caplog.text
    assert "Browser was not opened" in caplog.text


@pytest.mark.asyncio
async def test_failing_url_announcement_does_not_abort_flow(fake_client, store, listener_factory, alice) -> None:
    async def on_auth_url(url: str) -> None:
        raise RuntimeError("client went away")

    flow = AuthOrchestrator(
        client=fake_client,
        store=store,
        host="127.0.0.1",
        port=0,
        timeout=5.0,
        open_url=FakeBrowser({"token": "abc123"}),
        on_auth_url=on_auth_url,
        listener_factory=listener_factory,
    )

    outcome = await flow.wait()

    assert outcome.session == alice
