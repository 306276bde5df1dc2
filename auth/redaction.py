from __future__ import annotations

from collections.abc import Mapping

import httpx

REDACTED = "<redacted>"
SENSITIVE_PARAMS = {"api_sig", "sk", "token", "session_key", "password"}


def redact(value: str | None) -> str:
    if not value:
        return "<empty>"
    return REDACTED


def redact_params(params: Mapping[str, str]) -> dict[str, str]:
    return {
        key: (REDACTED if key in SENSITIVE_PARAMS else value)
        for key, value in params.items()
    }


def redact_url(url: httpx.URL | str) -> str:
    parsed = httpx.URL(str(url))
    if not parsed.query:
        return str(parsed)
    cleaned = [
        (key, REDACTED if key in SENSITIVE_PARAMS else value)
        for key, value in parsed.params.multi_items()
    ]
    return str(parsed.copy_with(params=cleaned))
