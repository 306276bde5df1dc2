import asyncio
from urllib.parse import parse_qs, urlsplit

import httpx

from auth.callback_listener import CallbackListener
from auth.lastfm_api import LastFMAPIError, build_authorization_url
from auth.lifecycle import SessionLifecycle
from auth.models import Session


class FakeLastFMClient:
    api_key = "test-api-key"

    def __init__(
        self,
        *,
        sessions: dict[str, Session] | None = None,
        users: dict[str, str] | None = None,
    ) -> None:
        self.sessions = sessions or {}
        self.users = users or {}
        self.exchange_error: Exception | None = None
        self.validate_error: Exception | None = None
        self.call_error: Exception | None = None
        self.call_result: dict = {"ok": True}
        self.exchanged: list[str] = []
        self.validated: list[str] = []
        self.calls: list[tuple[str, dict | None, str | None]] = []

    def authorization_url(self, callback_url: str, state: str) -> str:
        return build_authorization_url(self.api_key, callback_url, state)

    async def get_session(self, token: str) -> Session:
        self.exchanged.append(token)
        if self.exchange_error is not None:
            raise self.exchange_error
        if token not in self.sessions:
            raise LastFMAPIError(4, "Invalid authentication token supplied")
        return self.sessions[token]

    async def get_user_info(self, session_key: str) -> Session:
        self.validated.append(session_key)
        if self.validate_error is not None:
            raise self.validate_error
        if session_key not in self.users:
            raise LastFMAPIError(9, "Invalid session key - Please re-authenticate")
        return Session(session_key=session_key, display_name=self.users[session_key])

    async def call(self, method, params=None, *, session_key=None, signed=False) -> dict:
        self.calls.append((method, params, session_key))
        if self.call_error is not None:
            raise self.call_error
        return self.call_result


async def _hit_callback(url: str, query: dict[str, str]) -> httpx.Response:
    async with httpx.AsyncClient() as client:
        return await client.get(url, params=query)


class FakeBrowser:
    """Stands in for ``webbrowser.open``.

    Each call consumes the next query; a dict is sent to the callback URL
    embedded in the authorization URL, ``None`` leaves the attempt waiting.
    """

    def __init__(self, *queries) -> None:
        self.queries = list(queries)
        self.opened: list[str] = []
        self.requests: list[asyncio.Task] = []

    def __call__(self, url: str) -> bool:
        self.opened.append(url)
        query = self.queries.pop(0) if self.queries else None
        if query is None:
            return True
        callback_url = parse_qs(urlsplit(url).query)["cb"][0]
        target = callback_url.replace("localhost", "127.0.0.1")
        loop = asyncio.get_running_loop()
        self.requests.append(loop.create_task(_hit_callback(target, query)))
        return True


class RecordingListenerFactory:
    def __init__(self) -> None:
        self.listeners: list[CallbackListener] = []

    def __call__(self, host: str, port: int) -> CallbackListener:
        listener = CallbackListener(host, port)
        self.listeners.append(listener)
        return listener


async def wait_for_state(lifecycle: SessionLifecycle, state, timeout: float = 5.0):
    async def _poll():
        while True:
            attempt = lifecycle.current_attempt
            if attempt is not None and attempt.state == state:
                return attempt
            await asyncio.sleep(0.01)

    return await asyncio.wait_for(_poll(), timeout=timeout)
