import pytest

from historia.config.settings import DEFAULT_MODEL, load_settings
from historia.core.factory import build_session
from historia.memory.identity import Identity
from historia.memory.repository import SQLiteConversationStore


@pytest.fixture
def env(monkeypatch, tmp_path):
    for name in [
        "HISTORIA_MODEL", "HISTORIA_VISION_MODEL", "HISTORIA_TEMPERATURE", "HISTORIA_MAX_TOKENS",
        "HISTORIA_HISTORY_PAIRS", "HISTORIA_STORE", "SUPABASE_URL", "SUPABASE_KEY", "HISTORIA_BASE_URL",
    ]:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GROQ_API_KEY", "gsk-test")
    monkeypatch.setenv("HISTORIA_DB_PATH", str(tmp_path / "data" / "h.db"))
    return monkeypatch


def test_defaults(env):
    s = load_settings()
    assert s.model == DEFAULT_MODEL
    assert s.temperature == 0.7
    assert s.max_tokens == 400
    assert s.history_pairs == 10
    assert s.store == "sqlite"


def test_bad_values_fall_back_or_clamp(env):
    env.setenv("HISTORIA_TEMPERATURE", "hot")
    env.setenv("HISTORIA_MAX_TOKENS", "999999")
    env.setenv("HISTORIA_HISTORY_PAIRS", "-3")
    env.setenv("HISTORIA_STORE", "mongo")

    s = load_settings()
    assert s.temperature == 0.7
    assert s.max_tokens == 8192
    assert s.history_pairs == 0
    assert s.store == "sqlite"


def test_missing_key_raises(env):
    env.delenv("GROQ_API_KEY")
    with pytest.raises(RuntimeError):
        load_settings()


def test_supabase_needs_url_and_key(env):
    env.setenv("HISTORIA_STORE", "supabase")
    with pytest.raises(RuntimeError):
        load_settings()


def test_build_session_wires_sqlite_store(env):
    s = load_settings()
    s.min_request_interval = 0.0
    with build_session(s, Identity("u1")) as session:
        assert isinstance(session._gateway.store, SQLiteConversationStore)
        assert session._gateway.store.ping()
        assert session.debug_status()["user_id"] == "u1"
