from __future__ import annotations

import hashlib
from collections.abc import Mapping

UNSIGNED_PARAMS = frozenset({"format", "callback"})


def sign(params: Mapping[str, str], secret: str) -> str:
    """Compute a Last.fm ``api_sig``.

    Keys are sorted, each ``key + value`` pair is concatenated without
    separators, the shared secret is appended and the result is MD5 hashed.
    Last.fm mandates MD5 here; it is not used as a security primitive.
    """
    payload = "".join(f"{key}{params[key]}" for key in sorted(params)) + secret
    return hashlib.md5(payload.encode("utf-8"), usedforsecurity=False).hexdigest()


def signed_params(params: Mapping[str, str], secret: str) -> dict[str, str]:
    signable = {key: value for key, value in params.items() if key not in UNSIGNED_PARAMS}
    return {**params, "api_sig": sign(signable, secret)}
