from __future__ import annotations

import logging
from pathlib import Path

LOGGER = logging.getLogger("scrobbler")
APP_NAME = "ScrobblerContext - Last.fm MCP Server"
APP_VERSION = "1.0.0"

LASTFM_API_URL = "https://ws.audioscrobbler.com/2.0/"
LASTFM_AUTH_URL = "https://www.last.fm/api/auth/"

DEFAULT_CALLBACK_HOST = "127.0.0.1"
DEFAULT_CALLBACK_PORT = 4567
DEFAULT_AUTH_TIMEOUT_SECONDS = 300.0
DEFAULT_CONFIG_DIR = Path.home() / ".config" / "lastfm-mcp-server"

SESSION_BACKENDS = {"auto", "keyring", "file", "memory"}
MCP_TRANSPORTS = {"stdio", "streamable-http"}
