import pytest

from outfit_studio.accounts import AccountGateway
from outfit_studio.generator import ImageGenerator
from tests.fakes import FakeGenaiClient, FakeIdentity, FakeModels, InMemoryProfileStore


@pytest.fixture
def gemini_key(monkeypatch):
    monkeypatch.setenv("GEMINI_API_KEY", "test-key")
    return "test-key"


@pytest.fixture
def fake_models():
    return FakeModels()


@pytest.fixture
def generator(gemini_key, fake_models):
    return ImageGenerator(client_factory=lambda api_key: FakeGenaiClient(fake_models), timeout=5)


@pytest.fixture
def store():
    return InMemoryProfileStore()


@pytest.fixture
def identity():
    return FakeIdentity()


@pytest.fixture
def gateway(identity, store):
    return AccountGateway(identity=identity, store=store, starting_credits=10, profile_timeout=0.5)
