from __future__ import annotations

import logging
import urllib.parse

import httpx

from auth.models import Session
from auth.redaction import redact_params
from auth.signature import signed_params

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
LASTFM_AUTH_URL = "https://www.last.fm/api/auth/"
INVALID_SESSION_KEY = 9
# Service offline, temporary error.
SERVICE_UNAVAILABLE_CODES = frozenset({11, 16})

LOGGER = logging.getLogger("scrobbler.auth")


class LastFMAPIError(RuntimeError):
    """Last.fm answered with an ``{"error": code, "message": ...}`` body."""

    def __init__(self, code: int, message: str) -> None:
        super().__init__(f"Last.fm error {code}: {message}")
        self.code = code
        self.message = message


class LastFMResponseError(RuntimeError):
    """The response body could not be interpreted."""


def build_authorization_url(
    api_key: str,
    callback_url: str,
    state: str,
    *,
    auth_url: str = LASTFM_AUTH_URL,
) -> str:
    query = {
        "api_key": api_key,
        "cb": callback_url,
        "state": state,
    }
    return f"{auth_url}?{urllib.parse.urlencode(query)}"


def parse_session_payload(payload: object) -> Session:
    if not isinstance(payload, dict):
        raise LastFMResponseError("Session response is not a JSON object.")
    session = payload.get("session")
    if not isinstance(session, dict):
        raise LastFMResponseError("Session response missing session object.")

    key = session.get("key")
    name = session.get("name")
    if not isinstance(key, str) or not key:
        raise LastFMResponseError("Session response missing key.")
    if not isinstance(name, str) or not name:
        raise LastFMResponseError("Session response missing name.")
    return Session(session_key=key, display_name=name)


def _decode_response(response: httpx.Response) -> dict:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict) and "error" in payload:
        code = payload.get("error")
        message = payload.get("message")
        raise LastFMAPIError(
            code if isinstance(code, int) else -1,
            message if isinstance(message, str) else "Unknown error",
        )

    if response.status_code >= 500:
        response.raise_for_status()
    if response.status_code >= 400:
        raise LastFMResponseError(f"Last.fm request failed with status {response.status_code}.")
    if not isinstance(payload, dict):
        raise LastFMResponseError("Last.fm response is not a JSON object.")
    return payload


class LastFMClient:
    def __init__(
        self,
        api_key: str,
        secret: str,
        *,
        api_url: str = LASTFM_API_URL,
        auth_url: str = LASTFM_AUTH_URL,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key
        self.api_url = api_url
        self.auth_url = auth_url
        self._secret = secret
        self._own_client = client is None
        self._client = client or httpx.AsyncClient(timeout=30)

    def authorization_url(self, callback_url: str, state: str) -> str:
        return build_authorization_url(
            self.api_key, callback_url, state, auth_url=self.auth_url
        )

    async def call(
        self,
        method: str,
        params: dict[str, str] | None = None,
        *,
        session_key: str | None = None,
        signed: bool = False,
    ) -> dict:
        query = {"method": method, "api_key": self.api_key, **(params or {})}
        if session_key is not None:
            query["sk"] = session_key
            signed = True
        if signed:
            query = signed_params(query, self._secret)
        query["format"] = "json"

        LOGGER.debug("Calling %s with %s", method, redact_params(query))
        response = await self._client.get(self.api_url, params=query)
        return _decode_response(response)

    async def get_session(self, token: str) -> Session:
        payload = await self.call("auth.getSession", {"token": token}, signed=True)
        return parse_session_payload(payload)

    async def get_user_info(self, session_key: str) -> Session:
        payload = await self.call("user.getInfo", session_key=session_key)
        user = payload.get("user")
        name = user.get("name") if isinstance(user, dict) else None
        if not isinstance(name, str) or not name:
            raise LastFMResponseError("user.getInfo response missing user name.")
        return Session(session_key=session_key, display_name=name)

    async def aclose(self) -> None:
        if self._own_client:
            await self._client.aclose()
