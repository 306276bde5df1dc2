from __future__ import annotations

from dataclasses import dataclass, field
from typing import Union

from auth.errors import StorageError


@dataclass(frozen=True)
class Session:
    session_key: str = field(repr=False)
    display_name: str

    def __post_init__(self) -> None:
        if not isinstance(self.session_key, str) or not self.session_key:
            raise ValueError("Session requires a non-empty session_key.")
        if not isinstance(self.display_name, str) or not self.display_name:
            raise ValueError("Session requires a non-empty display_name.")


@dataclass
class PendingAuthAttempt:
    csrf_state: str
    listener_port: int
    started_at: float
    deadline: float


@dataclass(frozen=True)
class CallbackSuccess:
    token: str = field(repr=False)


@dataclass(frozen=True)
class CallbackProviderError:
    code: str
    description: str


@dataclass(frozen=True)
class CallbackMalformed:
    reason: str


CallbackResult = Union[CallbackSuccess, CallbackProviderError, CallbackMalformed]


@dataclass(frozen=True)
class AuthOutcome:
    session: Session
    storage_error: StorageError | None = None

    @property
    def persisted(self) -> bool:
        return self.storage_error is None


@dataclass(frozen=True)
class AuthStatus:
    authenticated: bool
    display_name: str | None = None


@dataclass(frozen=True)
class LogoutResult:
    previous_user: str | None
    storage_error: StorageError | None = None
