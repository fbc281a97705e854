import os

# Console-only logging while testing; must be set before historia modules load
os.environ["HISTORIA_LOG_DIR"] = "-"

import pytest

from historia.config.settings import Settings
from historia.memory.gateway import PersistenceGateway
from historia.memory.identity import Identity, StaticIdentityProvider
from historia.memory.repository import SQLiteConversationStore
from historia.personas.catalog import Persona, PersonaCatalog


@pytest.fixture
def settings(tmp_path):
    return Settings(
        api_key="test-key",
        base_url="https://llm.example.test/openai/v1",
        min_request_interval=0.0,
        db_path=str(tmp_path / "historia.db"),
    )


@pytest.fixture
def catalog():
    return PersonaCatalog.from_json()


@pytest.fixture
def socrates(catalog):
    return catalog.get("socrates")


@pytest.fixture
def user():
    return Identity(user_id="user-1", display_name="Ada", email="ada@example.test")


@pytest.fixture
def identity(user):
    return StaticIdentityProvider(user)


@pytest.fixture
def store(tmp_path):
    s = SQLiteConversationStore(tmp_path / "store.db")
    s.initialize()
    return s


@pytest.fixture
def gateway(store, identity):
    return PersistenceGateway(store, identity)


@pytest.fixture
def make_persona():
    def _make(persona_id="plato", name="Plato", **extra):
        return Persona(id=persona_id, name=name, **extra)

    return _make
