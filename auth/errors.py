from __future__ import annotations

from enum import Enum


class AuthErrorKind(str, Enum):
    BIND_ERROR = "bind_error"
    PROVIDER_ERROR = "provider_error"
    MALFORMED = "malformed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    NETWORK_ERROR = "network_error"
    INVALID_CREDENTIAL = "invalid_credential"


class StorageErrorKind(str, Enum):
    BACKEND_UNAVAILABLE = "backend_unavailable"
    CORRUPT_RECORD = "corrupt_record"
    PERMISSION_DENIED = "permission_denied"


class AuthError(RuntimeError):
    def __init__(self, kind: AuthErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}


class BindError(AuthError):
    def __init__(self, message: str) -> None:
        super().__init__(AuthErrorKind.BIND_ERROR, message)


class StorageError(RuntimeError):
    def __init__(self, kind: StorageErrorKind, message: str) -> None:
        super().__init__(message)
        self.kind = kind
        self.message = message

    def to_payload(self) -> dict[str, str]:
        return {"kind": self.kind.value, "message": self.message}
