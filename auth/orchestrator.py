from __future__ import annotations

import asyncio
import logging
import secrets
import time
from enum import Enum

import httpx

from auth.callback_listener import CallbackListener
from auth.errors import AuthError, AuthErrorKind, BindError, StorageError
from auth.lastfm_api import (
    SERVICE_UNAVAILABLE_CODES,
    LastFMAPIError,
    LastFMClient,
    LastFMResponseError,
)
from auth.models import (
    AuthOutcome,
    CallbackMalformed,
    CallbackProviderError,
    PendingAuthAttempt,
    Session,
)
from auth.session_store import SessionStore

LOGGER = logging.getLogger("scrobbler.auth")

DEFAULT_TIMEOUT_SECONDS = 300.0


class FlowState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    AWAITING_USER = "awaiting_user"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATES = {
    FlowState.COMPLETED,
    FlowState.FAILED,
    FlowState.TIMED_OUT,
    FlowState.CANCELLED,
}
CANCELLABLE_STATES = {
    FlowState.IDLE,
    FlowState.STARTING,
    FlowState.AWAITING_USER,
    FlowState.EXCHANGING,
}


class AuthOrchestrator:
    """Drives a single browser authorization attempt.

    An instance is created per attempt and discarded afterwards. ``launch()``
    schedules the flow, ``wait()`` returns its ``AuthOutcome`` or raises
    ``AuthError``, and ``cancel()`` aborts it from another task. The callback
    listener is stopped on every exit path.
    """

    def __init__(
        self,
        *,
        client: LastFMClient,
        store: SessionStore,
        host: str = "127.0.0.1",
        port: int = 4567,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        auto_open: bool = True,
        open_url=None,
        on_auth_url=None,
        listener_factory=CallbackListener,
    ) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.auto_open = auto_open
        self.state = FlowState.IDLE
        self.pending: PendingAuthAttempt | None = None
        self.auth_url: str | None = None
        self.callback_url: str | None = None
        self.browser_opened = False

        self._client = client
        self._store = store
        self._open_url = open_url
        self._on_auth_url = on_auth_url
        self._listener_factory = listener_factory
        self._listener: CallbackListener | None = None
        self._task: asyncio.Task | None = None
        self._cancel_requested = False

    @property
    def in_flight(self) -> bool:
        return self.state not in TERMINAL_STATES

    def launch(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.ensure_future(self._drive())
        return self._task

    async def wait(self) -> AuthOutcome:
        task = self.launch()
        try:
            return await task
        except asyncio.CancelledError:
            if self._cancel_requested:
                raise AuthError(
                    AuthErrorKind.CANCELLED,
                    "Authentication was cancelled before it completed.",
                ) from None
            raise

    async def cancel(self) -> None:
        task = self._task
        if task is None:
            self._cancel_requested = True
            self._transition(FlowState.CANCELLED)
            return
        if task.done():
            return
        if self.state in CANCELLABLE_STATES:
            self._cancel_requested = True
            task.cancel()
        await asyncio.wait({task})
        if self._cancel_requested:
            self._transition(FlowState.CANCELLED)

    # -- flow ------------------------------------------------------------------

    async def _drive(self) -> AuthOutcome:
        try:
            return await self._run_flow()
        except asyncio.CancelledError:
            if self._cancel_requested:
                self._transition(FlowState.CANCELLED)
                LOGGER.info("Browser authentication cancelled")
            raise
        finally:
            self.pending = None
            if self._listener is not None:
                await self._listener.stop()
                self._listener = None

    async def _run_flow(self) -> AuthOutcome:
        if self._cancel_requested:
            raise asyncio.CancelledError()

        self._transition(FlowState.STARTING)
        csrf_state = secrets.token_urlsafe(24)
        listener = self._listener_factory(self.host, self.port)
        self._listener = listener
        try:
            await listener.start()
        except BindError:
            self._transition(FlowState.FAILED)
            raise

        listener.arm_expectation(csrf_state)
        self.callback_url = listener.callback_url
        self.auth_url = self._client.authorization_url(self.callback_url, csrf_state)
        started_at = time.time()
        self.pending = PendingAuthAttempt(
            csrf_state=csrf_state,
            listener_port=listener.port,
            started_at=started_at,
            deadline=started_at + self.timeout,
        )
        LOGGER.info("Generated Last.fm authorization URL: %s", self.auth_url)

        if self.auto_open and self._open_url is not None:
            try:
                self.browser_opened = bool(self._open_url(self.auth_url))
            except Exception as error:
                LOGGER.warning("Could not open browser: %s", error)
        if not self.browser_opened:
            LOGGER.warning("Browser was not opened; visit %s to authorize", self.auth_url)
        if self._on_auth_url is not None:
            try:
                await self._on_auth_url(self.auth_url)
            except Exception as error:
                LOGGER.warning("Could not deliver the authorization URL: %s", error)
        LOGGER.info("Waiting for OAuth callback on %s (timeout: %ss)", self.callback_url, self.timeout)
        self._transition(FlowState.AWAITING_USER)

        try:
            result = await asyncio.wait_for(listener.await_result(), timeout=self.timeout)
        except asyncio.TimeoutError:
            self._transition(FlowState.TIMED_OUT)
            LOGGER.warning("Browser authentication timed out after %ss", self.timeout)
            raise AuthError(
                AuthErrorKind.TIMED_OUT,
                f"Authentication timed out. Complete the authorization within "
                f"{self.timeout:g} seconds and try again.",
            ) from None

        if isinstance(result, CallbackProviderError):
            self._transition(FlowState.FAILED)
            raise AuthError(
                AuthErrorKind.PROVIDER_ERROR,
                f"Last.fm rejected the authorization: {result.code} - {result.description}",
            )
        if isinstance(result, CallbackMalformed):
            self._transition(FlowState.FAILED)
            raise AuthError(AuthErrorKind.MALFORMED, f"Invalid OAuth callback: {result.reason}")
        self._transition(FlowState.EXCHANGING)
        session = await self._exchange(result.token)

        self._store.set(session)
        self._transition(FlowState.COMPLETED)
        LOGGER.info("Browser authentication completed for user %s", session.display_name)

        storage_error: StorageError | None = None
        try:
            await self._store.persist(session)
        except StorageError as error:
            LOGGER.warning("Session could not be persisted: %s", error.message)
            storage_error = error
        return AuthOutcome(session=session, storage_error=storage_error)

    async def _exchange(self, token: str) -> Session:
        try:
            return await self._client.get_session(token)
        except LastFMAPIError as error:
            self._transition(FlowState.FAILED)
            if error.code in SERVICE_UNAVAILABLE_CODES:
                raise AuthError(
                    AuthErrorKind.NETWORK_ERROR,
                    f"Last.fm is temporarily unavailable: {error.message}",
                ) from error
            raise AuthError(
                AuthErrorKind.PROVIDER_ERROR,
                f"Token exchange rejected by Last.fm: {error.message}",
            ) from error
        except LastFMResponseError as error:
            self._transition(FlowState.FAILED)
            raise AuthError(
                AuthErrorKind.MALFORMED,
                f"Token exchange returned an unexpected response: {error}",
            ) from error
        except httpx.HTTPError as error:
            self._transition(FlowState.FAILED)
            raise AuthError(
                AuthErrorKind.NETWORK_ERROR,
                f"Token exchange failed: {type(error).__name__}",
            ) from error

    def _transition(self, new_state: FlowState) -> None:
        if self.state in TERMINAL_STATES:
            return
        LOGGER.debug("Auth flow %s -> %s", self.state.value, new_state.value)
        self.state = new_state
