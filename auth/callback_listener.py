from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import socket

import uvicorn
from starlette.applications import Starlette
from starlette.datastructures import QueryParams
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, Response
from starlette.routing import Route

from auth.errors import BindError
from auth.models import (
    CallbackMalformed,
    CallbackProviderError,
    CallbackResult,
    CallbackSuccess,
)
from auth.pages import error_page, success_page
from auth.redaction import redact_params

LOGGER = logging.getLogger("scrobbler.auth.callback")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 4567
HEALTH_PAYLOAD = {"status": "ready", "service": "lastfm-oauth-callback"}


class _EmbeddedServer(uvicorn.Server):
    # Signal handling belongs to the host process, not to this listener.
    def install_signal_handlers(self) -> None:
        return

    @contextlib.contextmanager
    def capture_signals(self):
        yield


class CallbackListener:
    """Ephemeral local HTTP server receiving the Last.fm browser redirect.

    Exactly one ``CallbackResult`` is delivered per listener through
    ``await_result()``. Later hits on ``/callback`` still get a page but
    never resolve again.
    """

    def __init__(
        self,
        host: str = DEFAULT_HOST,
        port: int = DEFAULT_PORT,
        *,
        strict_state: bool = False,
        shutdown_timeout: float = 2.0,
    ) -> None:
        self.host = host
        self.strict_state = strict_state
        self._requested_port = port
        self._shutdown_timeout = shutdown_timeout
        self._socket: socket.socket | None = None
        self._server: uvicorn.Server | None = None
        self._serve_task: asyncio.Task | None = None
        self._future: asyncio.Future | None = None
        self._claimed = False
        self._expected_state: str | None = None
        self.app = Starlette(
            routes=[
                Route("/callback", self._handle_callback, methods=["GET"]),
                Route("/health", self._handle_health, methods=["GET"]),
            ]
        )

    @property
    def port(self) -> int:
        if self._socket is not None:
            return self._socket.getsockname()[1]
        return self._requested_port

    @property
    def callback_url(self) -> str:
        return f"http://localhost:{self.port}/callback"

    @property
    def is_running(self) -> bool:
        return self._serve_task is not None and not self._serve_task.done()

    # -- lifecycle -------------------------------------------------------------

    async def start(self) -> None:
        if self._socket is not None:
            raise RuntimeError("Callback listener already started.")

        self._socket = self._bind()
        config = uvicorn.Config(
            self.app,
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
            timeout_graceful_shutdown=max(1, int(self._shutdown_timeout)),
        )
        self._server = _EmbeddedServer(config)
        self._serve_task = asyncio.create_task(self._server.serve(sockets=[self._socket]))

        while not self._server.started:
            if self._serve_task.done():
                await self.stop()
                raise BindError(f"Callback server on port {self._requested_port} failed to start.")
            await asyncio.sleep(0.01)

        LOGGER.info("OAuth callback server started on %s", self.callback_url)

    def _bind(self) -> socket.socket:
        family = socket.AF_INET6 if ":" in self.host else socket.AF_INET
        sock = socket.socket(family, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self._requested_port))
            sock.listen(16)
            sock.setblocking(False)
        except OSError as error:
            sock.close()
            LOGGER.error("Failed to bind callback server on port %s: %s", self._requested_port, error)
            raise BindError(
                f"Failed to start callback server on port {self._requested_port}: "
                f"{error.strerror or error}"
            ) from error
        return sock

    async def stop(self) -> None:
        server, task, sock = self._server, self._serve_task, self._socket
        self._server = None
        self._serve_task = None
        self._socket = None

        if self._future is not None and not self._future.done():
            self._future.cancel()

        try:
            if server is not None:
                server.should_exit = True
            if task is not None:
                try:
                    await asyncio.wait_for(task, timeout=self._shutdown_timeout + 1)
                except asyncio.TimeoutError:
                    LOGGER.warning("Callback server did not shut down in time; forced close")
                except Exception as error:
                    LOGGER.warning("Callback server exited with error: %s", error)
        finally:
            if sock is not None:
                sock.close()
                LOGGER.info("OAuth callback server stopped")

    # -- result ----------------------------------------------------------------

    def arm_expectation(self, csrf_state: str) -> None:
        self._expected_state = csrf_state

    def await_result(self) -> asyncio.Future:
        return self._ensure_future()

    def _ensure_future(self) -> asyncio.Future:
        if self._future is None:
            self._future = asyncio.get_running_loop().create_future()
        return self._future

    def _settle(self, result: CallbackResult) -> None:
        if self._claimed:
            LOGGER.info("Ignoring repeated callback; a result was already delivered")
            return
        self._claimed = True
        future = self._ensure_future()
        future.get_loop().call_soon(_resolve_once, future, result)

    # -- routes ----------------------------------------------------------------

    async def _handle_callback(self, request: Request) -> Response:
        LOGGER.info("Received OAuth callback: %s", redact_params(request.query_params))
        result = self._interpret(request.query_params)
        self._settle(result)

        if isinstance(result, CallbackSuccess):
            return HTMLResponse(success_page())
        if isinstance(result, CallbackProviderError):
            return HTMLResponse(error_page(result.code, result.description))
        return HTMLResponse(error_page("invalid_callback", result.reason))

    async def _handle_health(self, request: Request) -> Response:
        del request
        return JSONResponse(HEALTH_PAYLOAD)

    def _interpret(self, params: QueryParams) -> CallbackResult:
        error = params.get("error")
        if error:
            description = params.get("error_description") or "No description provided"
            LOGGER.error("OAuth error received: %s - %s", error, description)
            return CallbackProviderError(code=error, description=description)

        token = (params.get("token") or "").strip()
        if not token:
            LOGGER.error("Missing token parameter in OAuth callback")
            return CallbackMalformed(reason="Missing token parameter in callback.")

        state_problem = self._check_state(params.get("state"))
        if state_problem and self.strict_state:
            return CallbackMalformed(reason=state_problem)
        return CallbackSuccess(token=token)

    def _check_state(self, received: str | None) -> str | None:
        # Last.fm does not echo ``state``; outside strict mode this is advisory.
        expected = self._expected_state
        if expected is None:
            LOGGER.warning("No expected state armed for this callback")
            return "No expected state armed."
        if received is None:
            LOGGER.info("Provider did not return the state parameter")
            return "Missing state parameter."
        if received != expected:
            LOGGER.warning("State parameter mismatch")
            return "State parameter mismatch."
        LOGGER.info("State parameter validated")
        return None


def _resolve_once(future: asyncio.Future, result: CallbackResult) -> None:
    if not future.done():
        future.set_result(result)
