import pytest

from presence_relay.app import create_app
from presence_relay.config import Settings
from presence_relay.storage import ConsentRequestStore, PresenceStore, ProfileStore, TokenInbox
from presence_relay.tokens import CapabilityTokenService

SECRET = "test-secret-do-not-use-in-production"
ALICE = "AAAAAAAA"
BOB = "BBBBBBBB"
CAROL = "CCCCCCCC"


class FakeClock:
    """Steuerbare Uhr (Sekunden seit Epoch)"""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def token_service(clock):
    return CapabilityTokenService(SECRET, clock=clock)


@pytest.fixture
def presence_store(clock):
    return PresenceStore(clock=clock)


@pytest.fixture
def request_store(clock):
    return ConsentRequestStore(clock=clock)


@pytest.fixture
def token_inbox(clock):
    return TokenInbox(clock=clock)


@pytest.fixture
def profile_store(clock):
    return ProfileStore(clock=clock)


@pytest.fixture
def settings():
    return Settings(server_secret=SECRET)


@pytest.fixture
def app(settings, clock):
    """Flask Test-App mit frischem Relay und FakeClock"""
    flask_app = create_app(settings, clock=clock)
    flask_app.config["TESTING"] = True
    return flask_app


@pytest.fixture
def relay(app):
    return app.extensions["relay"]


@pytest.fixture
def client(app):
    """Flask Test-Client"""
    return app.test_client()
