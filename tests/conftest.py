import pytest

from auth.lifecycle import SessionLifecycle
from auth.models import Session
from auth.session_store import MemorySessionBackend, SessionStore
from tests.lastfm_helpers import FakeBrowser, FakeLastFMClient, RecordingListenerFactory


@pytest.fixture
def alice() -> Session:
    return Session(session_key="sk_1", display_name="alice")


@pytest.fixture
def backend() -> MemorySessionBackend:
    return MemorySessionBackend()


@pytest.fixture
def store(backend) -> SessionStore:
    return SessionStore(backend)


@pytest.fixture
def fake_client(alice) -> FakeLastFMClient:
    return FakeLastFMClient(sessions={"abc123": alice}, users={"sk_1": "alice"})


@pytest.fixture
def listener_factory() -> RecordingListenerFactory:
    return RecordingListenerFactory()


@pytest.fixture
def make_lifecycle(store, fake_client, listener_factory):
    def _make(browser=None, *, auth_timeout: float = 5.0) -> SessionLifecycle:
        return SessionLifecycle(
            store=store,
            client=fake_client,
            callback_host="127.0.0.1",
            callback_port=0,
            auth_timeout=auth_timeout,
            listener_factory=listener_factory,
            open_url=browser if browser is not None else FakeBrowser(),
        )

    return _make
