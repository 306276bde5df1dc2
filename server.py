from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from auth.errors import StorageError
from auth.lastfm_api import LastFMClient
from auth.lifecycle import SessionLifecycle
from auth.session_store import SessionStore, select_backend
from scrobbler.constants import APP_NAME, LOGGER
from scrobbler.env import Settings, load_env, load_settings, setup_logging
from scrobbler.http import build_http_client
from scrobbler.mcp_app import mount_health_route, register_auth_tools

if TYPE_CHECKING:
    from fastmcp import FastMCP


def create_lifecycle(settings: Settings, *, http_client=None) -> SessionLifecycle:
    backend = select_backend(settings.session_backend, settings.config_dir)
    store = SessionStore(backend)
    LOGGER.info("Session storage backend: %s", store.backend_name)

    if http_client is None:
        http_client = build_http_client(
            timeout=settings.api_timeout,
            max_retries=settings.api_max_retries,
            debug=settings.debug,
        )
    client = LastFMClient(
        settings.api_key,
        settings.secret_key,
        api_url=settings.api_url,
        auth_url=settings.auth_url,
        client=http_client,
    )
    return SessionLifecycle(
        store=store,
        client=client,
        callback_host=settings.callback_host,
        callback_port=settings.callback_port,
        auth_timeout=settings.auth_timeout,
    )


async def restore_saved_session(lifecycle: SessionLifecycle) -> None:
    try:
        await lifecycle.restore_from_storage()
    except StorageError as error:
        LOGGER.warning(
            "Saved session could not be restored (%s): %s",
            error.kind.value,
            error.message,
        )


def build_lifespan(lifecycle: SessionLifecycle, http_client):
    @asynccontextmanager
    async def lifespan(server):
        del server
        await restore_saved_session(lifecycle)
        try:
            yield {}
        finally:
            await lifecycle.cancel_pending()
            await http_client.aclose()

    return lifespan


def create_mcp(settings: Settings | None = None) -> "FastMCP":
    from fastmcp import FastMCP

    if settings is None:
        load_env()
        settings = load_settings()
    debug_enabled = setup_logging()

    http_client = build_http_client(
        timeout=settings.api_timeout,
        max_retries=settings.api_max_retries,
        debug=debug_enabled,
    )
    lifecycle = create_lifecycle(settings, http_client=http_client)

    mcp = FastMCP(name=APP_NAME, lifespan=build_lifespan(lifecycle, http_client))
    register_auth_tools(mcp, lifecycle)
    setattr(mcp, "_lifecycle", lifecycle)
    mount_health_route(mcp)
    return mcp


def main() -> None:
    load_env()
    settings = load_settings()
    mcp = create_mcp(settings)
    if settings.transport == "stdio":
        mcp.run()
        return
    mcp.run(transport="streamable-http", host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
