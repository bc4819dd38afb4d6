"""Shared test fixtures and configuration for exchange chat tests."""
import pytest
from fastapi.testclient import TestClient

from exchange_chat.auth import create_access_token
from exchange_chat.chat import ChatGateway, MessageStore, PresenceBroadcaster, RoomRegistry
from exchange_chat.config import SETTINGS_ENV, reset_config
from exchange_chat.exchanges import InMemoryExchangeDirectory
from exchange_chat.main import create_app


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    """Point the config loader at an empty directory for every test.

    A developer's local exchange_chat.settings.yaml must never leak into the
    tests, so defaults (including the JWT secret) are always used.
    """
    monkeypatch.setenv(SETTINGS_ENV, str(tmp_path / "exchange_chat.settings.yaml"))
    reset_config()
    yield
    reset_config()


@pytest.fixture
def exchanges():
    """Two exchanges: ex1 between alice and bob, ex2 between alice and carol."""
    directory = InMemoryExchangeDirectory()
    directory.add("ex1", "alice", "bob")
    directory.add("ex2", "alice", "carol")
    return directory


@pytest.fixture
def store(exchanges):
    store = MessageStore(exchanges, db_path=":memory:")
    yield store
    store.close()


@pytest.fixture
def gateway(exchanges, store):
    registry = RoomRegistry(exchanges)
    presence = PresenceBroadcaster(registry)
    return ChatGateway(store, registry, presence, exchanges, sweep_interval=60)


@pytest.fixture
def api_client(gateway):
    """Provide a TestClient bound to the test gateway.

    Used as a context manager so the lifespan runs and every WebSocket
    opened in a test shares the same event loop.
    """
    with TestClient(create_app(gateway)) as client:
        yield client


@pytest.fixture
def token():
    """Return a function issuing an access token for a user id."""
    return create_access_token
