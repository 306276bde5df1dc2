from __future__ import annotations

from typing import TYPE_CHECKING, Annotated, Optional

from fastmcp import Context
from mcp.types import ToolAnnotations
from pydantic import Field

from auth.errors import AuthError, StorageError
from auth.lifecycle import SessionLifecycle
from auth.models import AuthOutcome

from .constants import APP_NAME, APP_VERSION, LOGGER

if TYPE_CHECKING:
    from fastmcp import FastMCP


CallbackPort = Annotated[
    int,
    Field(ge=1024, le=65535, description="Local port for the OAuth callback server."),
]

TOOL_ANNOTATIONS = {
    "authenticate_browser": ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True,
    ),
    "set_session_key": ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=True,
    ),
    "check_auth_status": ToolAnnotations(
        readOnlyHint=True,
        destructiveHint=False,
        openWorldHint=False,
    ),
    "restore_session": ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=False,
        openWorldHint=False,
    ),
    "logout": ToolAnnotations(
        readOnlyHint=False,
        destructiveHint=True,
        openWorldHint=False,
    ),
}

TOOL_DESCRIPTIONS = {
    "authenticate_browser": (
        "Authenticate with Last.fm in the browser. Starts a local callback server, "
        "opens the Last.fm authorization page and waits for you to approve access. The authorization URL is also returned "
        "so it can be opened manually."
    ),
    "set_session_key": "Authenticate with an existing Last.fm session key.",
    "check_auth_status": "Report whether a Last.fm session is active and for which user.",
    "restore_session": "Reload a previously saved Last.fm session from secure storage.",
    "logout": "Clear the current Last.fm session and remove the saved one.",
}


def failure_payload(error: AuthError | StorageError) -> dict:
    return {"success": False, "error": error.to_payload()}


def _with_storage_warning(payload: dict, storage_error: StorageError | None) -> dict:
    if storage_error is None:
        return payload
    payload["storage_error"] = storage_error.to_payload()
    payload["warning"] = "The session is active but could not be saved for future restarts."
    return payload


def outcome_payload(outcome: AuthOutcome, *, method: str) -> dict:
    username = outcome.session.display_name
    payload = {
        "success": True,
        "authenticated": True,
        "username": username,
        "method": method,
        "persisted": outcome.persisted,
        "message": f"Successfully authenticated as {username}",
    }
    return _with_storage_warning(payload, outcome.storage_error)


def build_auth_tools(lifecycle: SessionLifecycle) -> dict:
    async def authenticate_browser(
        port: Optional[CallbackPort] = None,
        auto_open: bool = True,
        ctx: Optional[Context] = None,
    ) -> dict:
        issued: list[str] = []

        async def announce(url: str) -> None:
            issued.append(url)
            if ctx is not None:
                await ctx.info(f"Open this URL to authorize with Last.fm: {url}")

        try:
            outcome = await lifecycle.authenticate_interactive(
                port=port, auto_open=auto_open, on_auth_url=announce
            )
        except AuthError as error:
            LOGGER.warning("Browser authentication failed (%s)", error.kind.value)
            payload = failure_payload(error)
        else:
            payload = outcome_payload(outcome, method="browser_oauth")
        if issued:
            payload["auth_url"] = issued[-1]
        return payload

    async def set_session_key(session_key: str) -> dict:
        try:
            outcome = await lifecycle.adopt_session_key(session_key)
        except AuthError as error:
            return failure_payload(error)
        return outcome_payload(outcome, method="session_key")

    async def check_auth_status() -> dict:
        status = lifecycle.status()
        if not status.authenticated:
            return {
                "success": True,
                "authenticated": False,
                "message": "Not authenticated. Use 'authenticate_browser' to sign in.",
            }
        return {
            "success": True,
            "authenticated": True,
            "username": status.display_name,
            "message": f"Authenticated as {status.display_name}",
        }

    async def restore_session() -> dict:
        try:
            session = await lifecycle.restore_from_storage()
        except StorageError as error:
            return failure_payload(error)
        if session is None:
            return {
                "success": True,
                "restored": False,
                "authenticated": lifecycle.status().authenticated,
                "message": "No saved session found.",
            }
        return {
            "success": True,
            "restored": True,
            "authenticated": True,
            "username": session.display_name,
            "message": f"Restored session for {session.display_name}",
        }

    async def logout() -> dict:
        result = await lifecycle.logout()
        payload = {
            "success": True,
            "logged_out": True,
            "previous_user": result.previous_user,
            "message": (
                f"Logged out {result.previous_user}"
                if result.previous_user
                else "No active session; stored credentials cleared."
            ),
        }
        if result.storage_error is not None:
            payload["storage_error"] = result.storage_error.to_payload()
            payload["warning"] = "The saved session could not be removed from storage."
        return payload

    return {
        "authenticate_browser": authenticate_browser,
        "set_session_key": set_session_key,
        "check_auth_status": check_auth_status,
        "restore_session": restore_session,
        "logout": logout,
    }


def register_auth_tools(mcp: "FastMCP", lifecycle: SessionLifecycle) -> dict:
    tools = build_auth_tools(lifecycle)
    for name, handler in tools.items():
        mcp.tool(
            name=name,
            description=TOOL_DESCRIPTIONS[name],
            annotations=TOOL_ANNOTATIONS[name],
        )(handler)
    return tools


def mount_health_route(mcp: "FastMCP") -> None:
    from starlette.requests import Request
    from starlette.responses import JSONResponse, Response

    @mcp.custom_route("/health", methods=["GET"])
    async def health_route(request: Request) -> Response:
        del request
        return JSONResponse(
            {
                "status": "ok",
                "name": APP_NAME,
                "version": APP_VERSION,
            }
        )
