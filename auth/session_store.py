from __future__ import annotations

import asyncio
import base64
import binascii
import contextlib
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

import keyring
import keyring.errors

from auth.errors import StorageError, StorageErrorKind
from auth.models import Session

LOGGER = logging.getLogger("scrobbler.auth.storage")

KEYRING_SERVICE = "com.lastfm.mcp-server"
SESSION_KEY_ACCOUNT = "lastfm-session-key"
USERNAME_ACCOUNT = "lastfm-username"
SESSION_KEY_FILE = "session_key"
USERNAME_FILE = "username"


class SessionBackend(ABC):
    name = "abstract"

    @abstractmethod
    def save(self, session: Session) -> None:
        raise NotImplementedError

    @abstractmethod
    def load(self) -> Session | None:
        raise NotImplementedError

    @abstractmethod
    def delete(self) -> None:
        raise NotImplementedError


def _build_session(session_key: str | None, display_name: str | None) -> Session | None:
    if session_key is None and display_name is None:
        return None
    if session_key is None or display_name is None:
        raise StorageError(StorageErrorKind.CORRUPT_RECORD, "Persisted session record is incomplete.")
    try:
        return Session(session_key=session_key, display_name=display_name)
    except ValueError as error:
        raise StorageError(StorageErrorKind.CORRUPT_RECORD, str(error)) from error


class MemorySessionBackend(SessionBackend):
    name = "memory"

    def __init__(self) -> None:
        self._record: tuple[str, str] | None = None

    def save(self, session: Session) -> None:
        self._record = (session.session_key, session.display_name)

    def load(self) -> Session | None:
        if self._record is None:
            return None
        return Session(*self._record)

    def delete(self) -> None:
        self._record = None


class KeyringSessionBackend(SessionBackend):
    """Stores the session as two secrets in the OS credential store."""

    name = "keyring"

    def __init__(self, service: str = KEYRING_SERVICE, *, backend=keyring) -> None:
        self._service = service
        self._keyring = backend

    def save(self, session: Session) -> None:
        with self._translate("save"):
            try:
                self._keyring.set_password(self._service, SESSION_KEY_ACCOUNT, session.session_key)
                self._keyring.set_password(self._service, USERNAME_ACCOUNT, session.display_name)
            except Exception:
                self._discard()
                raise

    def load(self) -> Session | None:
        with self._translate("load"):
            session_key = self._keyring.get_password(self._service, SESSION_KEY_ACCOUNT)
            display_name = self._keyring.get_password(self._service, USERNAME_ACCOUNT)
        return _build_session(session_key, display_name)

    def delete(self) -> None:
        for account in (SESSION_KEY_ACCOUNT, USERNAME_ACCOUNT):
            with self._translate("delete"):
                try:
                    self._keyring.delete_password(self._service, account)
                except keyring.errors.PasswordDeleteError:
                    # Entry already absent.
                    continue

    def _discard(self) -> None:
        # A half-written record must not outlive a failed save.
        for account in (SESSION_KEY_ACCOUNT, USERNAME_ACCOUNT):
            try:
                self._keyring.delete_password(self._service, account)
            except keyring.errors.PasswordDeleteError:
                continue
            except Exception as error:
                LOGGER.warning("Could not discard keyring entry %s: %s", account, type(error).__name__)

    @contextlib.contextmanager
    def _translate(self, action: str):
        try:
            yield
        except keyring.errors.KeyringLocked as error:
            raise StorageError(
                StorageErrorKind.PERMISSION_DENIED,
                f"Keyring is locked; could not {action} session.",
            ) from error
        except Exception as error:
            raise StorageError(
                StorageErrorKind.BACKEND_UNAVAILABLE,
                f"Keyring could not {action} session: {type(error).__name__}.",
            ) from error


class FileSessionBackend(SessionBackend):
    """Fallback for hosts without a usable keyring.

    Each field lives in its own base64-encoded file, readable by the owner
    only. Base64 is an encoding, so protection rests on the file mode.
    """

    name = "file"

    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @property
    def directory(self) -> Path:
        return self._directory

    def save(self, session: Session) -> None:
        with self._translate("save"):
            self._directory.mkdir(mode=0o700, parents=True, exist_ok=True)
            try:
                self._write(SESSION_KEY_FILE, session.session_key)
                self._write(USERNAME_FILE, session.display_name)
            except OSError:
                self._discard()
                raise

    def load(self) -> Session | None:
        with self._translate("load"):
            session_key = self._read(SESSION_KEY_FILE)
            display_name = self._read(USERNAME_FILE)
        return _build_session(session_key, display_name)

    def delete(self) -> None:
        with self._translate("delete"):
            for filename in (SESSION_KEY_FILE, USERNAME_FILE):
                (self._directory / filename).unlink(missing_ok=True)

    def _discard(self) -> None:
        for filename in (SESSION_KEY_FILE, USERNAME_FILE):
            try:
                (self._directory / filename).unlink(missing_ok=True)
            except OSError as error:
                LOGGER.warning("Could not discard session file %s: %s", filename, error.strerror or error)

    def _read(self, filename: str) -> str | None:
        path = self._directory / filename
        if not path.exists():
            return None
        raw = path.read_bytes()
        try:
            return base64.b64decode(raw.strip(), validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as error:
            raise StorageError(
                StorageErrorKind.CORRUPT_RECORD,
                f"Session file {filename} is not valid base64 text.",
            ) from error

    def _write(self, filename: str, value: str) -> None:
        path = self._directory / filename
        fd, tmp_name = tempfile.mkstemp(
            prefix=f"{path.name}.",
            suffix=".tmp",
            dir=self._directory,
        )
        tmp_path = Path(tmp_name)

        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(base64.b64encode(value.encode("utf-8")))
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    @contextlib.contextmanager
    def _translate(self, action: str):
        try:
            yield
        except PermissionError as error:
            raise StorageError(
                StorageErrorKind.PERMISSION_DENIED,
                f"Permission denied while trying to {action} session in {self._directory}.",
            ) from error
        except OSError as error:
            raise StorageError(
                StorageErrorKind.BACKEND_UNAVAILABLE,
                f"Could not {action} session in {self._directory}: {error.strerror or error}.",
            ) from error


def keyring_available() -> bool:
    try:
        backend = keyring.get_keyring()
    except Exception:
        return False
    return getattr(backend, "priority", 0) > 0


def select_backend(preference: str, config_dir: str | Path) -> SessionBackend:
    if preference == "memory":
        return MemorySessionBackend()
    if preference == "file":
        return FileSessionBackend(config_dir)
    if preference == "keyring":
        return KeyringSessionBackend()
    if preference != "auto":
        raise RuntimeError(f"Unknown session backend: {preference}")

    if keyring_available():
        LOGGER.info("Using OS keyring for session persistence")
        return KeyringSessionBackend()
    LOGGER.info("No usable keyring found; using file storage in %s", config_dir)
    return FileSessionBackend(config_dir)


class SessionStore:
    """Single owner of the in-memory session and its durable record."""

    def __init__(self, backend: SessionBackend | None = None) -> None:
        self._backend = backend or MemorySessionBackend()
        self._lock = threading.Lock()
        self._storage_lock = threading.Lock()
        self._session: Session | None = None

    @property
    def backend_name(self) -> str:
        return self._backend.name

    def get(self) -> Session | None:
        with self._lock:
            return self._session

    def set(self, session: Session) -> None:
        if not isinstance(session, Session):
            raise TypeError("SessionStore.set expects a Session.")
        with self._lock:
            self._session = session

    def clear(self) -> None:
        with self._lock:
            self._session = None

    def clear_if(self, session: Session) -> bool:
        with self._lock:
            if self._session != session:
                return False
            self._session = None
            return True

    async def persist(self, session: Session) -> None:
        await asyncio.to_thread(self._with_storage_lock, self._backend.save, session)
        LOGGER.info("Session persisted for user %s (%s)", session.display_name, self.backend_name)

    async def load_persisted(self) -> Session | None:
        return await asyncio.to_thread(self._with_storage_lock, self._backend.load)

    async def delete_persisted(self) -> None:
        await asyncio.to_thread(self._with_storage_lock, self._backend.delete)
        LOGGER.info("Persisted session removed (%s)", self.backend_name)

    def _with_storage_lock(self, operation, *args):
        with self._storage_lock:
            return operation(*args)
