from __future__ import annotations

import asyncio
import logging
import webbrowser

import httpx

from auth.callback_listener import CallbackListener
from auth.errors import AuthError, AuthErrorKind, StorageError
from auth.lastfm_api import (
    INVALID_SESSION_KEY,
    SERVICE_UNAVAILABLE_CODES,
    LastFMAPIError,
    LastFMClient,
    LastFMResponseError,
)
from auth.models import AuthOutcome, AuthStatus, LogoutResult, Session
from auth.orchestrator import DEFAULT_TIMEOUT_SECONDS, AuthOrchestrator
from auth.redaction import redact
from auth.session_store import SessionStore

LOGGER = logging.getLogger("scrobbler.auth")


class SessionLifecycle:
    """Entry point used by the tool layer for everything session related.

    Owns the in-flight ``AuthOrchestrator`` (if any) and enforces that at most
    one browser authorization runs at a time: a new request, or a logout,
    cancels the current attempt and waits for its listener to shut down.
    """

    def __init__(
        self,
        *,
        store: SessionStore,
        client: LastFMClient,
        callback_host: str = "127.0.0.1",
        callback_port: int = 4567,
        auth_timeout: float = DEFAULT_TIMEOUT_SECONDS,
        listener_factory=CallbackListener,
        open_url=webbrowser.open,
    ) -> None:
        self.store = store
        self.client = client
        self.callback_host = callback_host
        self.callback_port = callback_port
        self.auth_timeout = auth_timeout
        self._listener_factory = listener_factory
        self._open_url = open_url
        self._attempt: AuthOrchestrator | None = None
        self._handoff_lock = asyncio.Lock()

    @property
    def current_attempt(self) -> AuthOrchestrator | None:
        return self._attempt

    async def authenticate_interactive(
        self,
        *,
        port: int | None = None,
        auto_open: bool = True,
        timeout: float | None = None,
        on_auth_url=None,
    ) -> AuthOutcome:
        async with self._handoff_lock:
            await self._cancel_attempt()
            attempt = AuthOrchestrator(
                client=self.client,
                store=self.store,
                host=self.callback_host,
                port=self.callback_port if port is None else port,
                timeout=self.auth_timeout if timeout is None else timeout,
                auto_open=auto_open,
                open_url=self._open_url,
                on_auth_url=on_auth_url,
                listener_factory=self._listener_factory,
            )
            self._attempt = attempt
            attempt.launch()

        try:
            return await attempt.wait()
        finally:
            if self._attempt is attempt:
                self._attempt = None

    async def adopt_session_key(self, session_key: str) -> AuthOutcome:
        session_key = (session_key or "").strip()
        if not session_key:
            raise AuthError(AuthErrorKind.INVALID_CREDENTIAL, "Session key must not be empty.")

        LOGGER.info("Validating session key %s with Last.fm", redact(session_key))
        try:
            session = await self.client.get_user_info(session_key)
        except LastFMAPIError as error:
            LOGGER.warning("Session key validation failed: %s", error)
            if error.code in SERVICE_UNAVAILABLE_CODES:
                raise AuthError(
                    AuthErrorKind.NETWORK_ERROR,
                    f"Last.fm is temporarily unavailable: {error.message}",
                ) from error
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL,
                "Last.fm did not accept the session key.",
            ) from error
        except LastFMResponseError as error:
            LOGGER.warning("Session key validation failed: %s", error)
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL,
                "Last.fm did not accept the session key.",
            ) from error
        except httpx.HTTPError as error:
            raise AuthError(
                AuthErrorKind.NETWORK_ERROR,
                f"Could not reach Last.fm to validate the session key: {type(error).__name__}",
            ) from error

        self.store.set(session)
        LOGGER.info("Session key adopted for user %s", session.display_name)
        return AuthOutcome(session=session, storage_error=await self._persist(session))

    def status(self) -> AuthStatus:
        session = self.store.get()
        if session is None:
            return AuthStatus(authenticated=False)
        return AuthStatus(authenticated=True, display_name=session.display_name)

    async def restore_from_storage(self) -> Session | None:
        session = await self.store.load_persisted()
        if session is None:
            LOGGER.info("No saved session found")
            return None
        self.store.set(session)
        LOGGER.info("Restored saved session for user %s", session.display_name)
        return session

    async def cancel_pending(self) -> None:
        async with self._handoff_lock:
            await self._cancel_attempt()

    async def logout(self) -> LogoutResult:
        await self.cancel_pending()

        previous = self.store.get()
        self.store.clear()

        storage_error: StorageError | None = None
        try:
            await self.store.delete_persisted()
        except StorageError as error:
            LOGGER.warning("Persisted session could not be removed: %s", error.message)
            storage_error = error

        previous_user = previous.display_name if previous is not None else None
        LOGGER.info("User logged out: %s", previous_user or "unknown")
        return LogoutResult(previous_user=previous_user, storage_error=storage_error)

    async def call_authenticated(self, method: str, params: dict[str, str] | None = None) -> dict:
        session = self.store.get()
        if session is None:
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL,
                "Authentication required. Use 'authenticate_browser' to authenticate.",
            )

        try:
            return await self.client.call(method, params, session_key=session.session_key)
        except LastFMAPIError as error:
            if error.code != INVALID_SESSION_KEY:
                raise
            await self._invalidate(session)
            raise AuthError(
                AuthErrorKind.INVALID_CREDENTIAL,
                "The saved Last.fm session is no longer valid. Please authenticate again.",
            ) from error

    async def _invalidate(self, session: Session) -> None:
        if not self.store.clear_if(session):
            return
        LOGGER.warning("Session for user %s was rejected by Last.fm; clearing it", session.display_name)
        try:
            await self.store.delete_persisted()
        except StorageError as error:
            LOGGER.warning("Persisted session could not be removed: %s", error.message)

    async def _persist(self, session: Session) -> StorageError | None:
        try:
            await self.store.persist(session)
        except StorageError as error:
            LOGGER.warning("Session could not be persisted: %s", error.message)
            return error
        return None

    async def _cancel_attempt(self) -> None:
        attempt = self._attempt
        if attempt is None:
            return
        if attempt.in_flight:
            LOGGER.info("Cancelling in-flight browser authentication")
        await attempt.cancel()
        if self._attempt is attempt:
            self._attempt = None
